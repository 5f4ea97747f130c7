"""
Configuration settings for the network editor and simulation driver.
This file serves as the single source of truth for solver codes, defaults and precision.
"""
from pathlib import Path
from typing import Final, Dict, List, Any

# Paths
BASE_DIR: Final[Path] = Path(__file__).parent.parent
PROJECTS_DIR: Final[Path] = BASE_DIR / "projects"

# EPANET toolkit count codes (ENgetcount)
EN_NODECOUNT: Final[int] = 0
EN_TANKCOUNT: Final[int] = 1
EN_LINKCOUNT: Final[int] = 2

# EPANET node parameter codes (ENgetnodevalue)
EN_DEMAND: Final[int] = 9
EN_HEAD: Final[int] = 10
EN_PRESSURE: Final[int] = 11

# EPANET link parameter codes (ENgetlinkvalue)
EN_FLOW: Final[int] = 8
EN_VELOCITY: Final[int] = 9
EN_HEADLOSS: Final[int] = 10
EN_STATUS: Final[int] = 11

# Link status collapse: any solver status code at or above this is reported as "Open"
OPEN_STATUS_THRESHOLD: Final[int] = 1

# Display precision of simulation results (decimal places)
RESULT_PRECISION: Final[int] = 2
HEADLOSS_PRECISION: Final[int] = 4

# Temporary solver files
SOLVER_FILE_EXTENSIONS: Final[List[str]] = ['.inp', '.rpt', '.bin']

# Component types
NODE_TYPES: Final[List[str]] = ['junction', 'tank', 'reservoir']
LINK_TYPES: Final[List[str]] = ['pipe', 'pump', 'valve']
VALVE_TYPES: Final[List[str]] = ['PRV', 'PSV', 'PBV', 'FCV', 'TCV', 'GPV']

# Id generation: "<PREFIX>-<counter>", counters start here and never go back
ID_COUNTER_START: Final[int] = 100
ID_PREFIXES: Final[Dict[str, str]] = {
    'junction': 'J',
    'tank': 'T',
    'reservoir': 'R',
    'pipe': 'P',
    'pump': 'PU',
    'valve': 'V',
}

# Default attributes applied on interactive placement
COMPONENT_DEFAULTS: Final[Dict[str, Dict[str, Any]]] = {
    'junction': {
        'elevation': 100.0,
        'demand': 0.0,
    },
    'tank': {
        'elevation': 120.0,
        'init_level': 10.0,
        'min_level': 0.0,
        'max_level': 20.0,
        'diameter': 30.0,
        'min_volume': 0.0,
    },
    'reservoir': {
        'elevation': 150.0,
        'head': 100.0,
    },
    'pipe': {
        'diameter': 100.0,
        'roughness': 130.0,
        'minor_loss': 0.0,
        'status': 'open',
    },
    'pump': {
        'power': 10.0,
        'speed': 1.0,
        'status': 'open',
    },
    'valve': {
        'diameter': 100.0,
        'valve_type': 'PRV',
        'setting': 40.0,
        'minor_loss': 0.0,
        'status': 'open',
    },
}

# Length of the short link created when a pump/valve is inserted on a pipe
INSERTED_LINK_LENGTH: Final[float] = 1.0

# Project settings (EPANET [OPTIONS] / [TIMES])
DEFAULT_SETTINGS: Final[Dict[str, Any]] = {
    'title': 'Untitled Project',
    'units': 'LPS',
    'headloss': 'H-W',
    'specific_gravity': 1.0,
    'viscosity': 1.0,
    'trials': 40,
    'accuracy': 0.001,
    'demand_multiplier': 1.0,
    'duration': 0,
    'hydraulic_timestep': 3600,  # 1 hour in seconds
    'pattern_timestep': 3600,
    'projection': 'EPSG:3857',
}

DEFAULT_PATTERN_ID: Final[str] = '1'
DEFAULT_PATTERN_MULTIPLIERS: Final[List[float]] = [
    0.5, 0.5, 0.6, 0.7, 0.9, 1.2, 1.5, 1.3, 1.1, 1.0, 0.9, 0.8,
    0.7, 0.6, 0.5, 0.5, 0.6, 0.8, 1.1, 1.4, 1.2, 1.0, 0.8, 0.6,
]

# Scenario comparison line colors (red, purple, amber, green)
SCENARIO_COLORS: Final[List[str]] = ['#ef4444', '#8b5cf6', '#f59e0b', '#10b981']

# Project file format version
PROJECT_VERSION: Final[int] = 1
