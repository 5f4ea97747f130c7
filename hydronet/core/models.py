"""
Network entities and project-level data.

Nodes and links reference each other only through string ids resolved by the
GraphStore. The discriminant fields `node_type` and `link_type` select which
subtype attributes are meaningful.
"""
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional, Tuple, Any

import numpy as np

from .config import NODE_TYPES, LINK_TYPES, DEFAULT_SETTINGS

Coordinate = Tuple[float, float]


def geometry_length(coordinates: List[Coordinate]) -> float:
    """Planar length of a polyline."""
    if len(coordinates) < 2:
        return 0.0
    pts = np.asarray(coordinates, dtype=float)
    return float(np.sum(np.hypot(np.diff(pts[:, 0]), np.diff(pts[:, 1]))))


@dataclass
class NetworkNode:
    """A point component: junction, tank or reservoir.

    Attributes:
        id: Stable id, unique within the project session
        node_type: 'junction' | 'tank' | 'reservoir'
        position: (x, y) map coordinate
        elevation: Ground elevation (tank bottom for tanks)
        demand: Base demand (junctions)
        pattern: Demand pattern id (junctions) or head pattern id (reservoirs)
        head: Total head (reservoirs)
        init_level, min_level, max_level, diameter, min_volume: Tank geometry
        connected_links: Ids of the links incident to this node
    """
    id: str
    node_type: str
    position: Coordinate
    elevation: float = 0.0
    demand: float = 0.0
    pattern: Optional[str] = None
    head: Optional[float] = None
    init_level: Optional[float] = None
    min_level: Optional[float] = None
    max_level: Optional[float] = None
    diameter: Optional[float] = None
    min_volume: Optional[float] = None
    connected_links: List[str] = field(default_factory=list)
    label: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.node_type not in NODE_TYPES:
            raise ValueError(f"Unknown node type: {self.node_type!r}")
        self.position = (float(self.position[0]), float(self.position[1]))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['position'] = list(self.position)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkNode":
        data = dict(data)
        data['position'] = tuple(data['position'])
        data['connected_links'] = list(data.get('connected_links', []))
        return cls(**data)


@dataclass
class NetworkLink:
    """A line component connecting two nodes: pipe, pump or valve.

    `geometry` is the ordered coordinate list; its first and last points
    coincide with the start and end node positions.
    """
    id: str
    link_type: str
    start_node_id: str
    end_node_id: str
    geometry: List[Coordinate] = field(default_factory=list)
    length: Optional[float] = None
    diameter: Optional[float] = None
    roughness: Optional[float] = None
    minor_loss: float = 0.0
    status: str = 'open'
    # pump
    curve_id: Optional[str] = None
    power: Optional[float] = None
    speed: float = 1.0
    pattern: Optional[str] = None
    # valve
    valve_type: Optional[str] = None
    setting: Optional[float] = None
    is_preview: bool = False
    label: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.link_type not in LINK_TYPES:
            raise ValueError(f"Unknown link type: {self.link_type!r}")
        self.geometry = [(float(x), float(y)) for x, y in self.geometry]

    @property
    def endpoints(self) -> Tuple[str, str]:
        return self.start_node_id, self.end_node_id

    def other_end(self, node_id: str) -> str:
        """Return the endpoint opposite to `node_id`."""
        return self.end_node_id if self.start_node_id == node_id else self.start_node_id

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['geometry'] = [list(c) for c in self.geometry]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkLink":
        data = dict(data)
        data['geometry'] = [tuple(c) for c in data.get('geometry', [])]
        return cls(**data)


@dataclass
class VisualLink:
    """Schematic connector drawn for a pump or valve. Display only."""
    id: str
    parent_link_id: str
    link_type: str
    coordinates: List[Coordinate] = field(default_factory=list)


@dataclass
class TimePattern:
    id: str
    multipliers: List[float]
    description: str = ''


@dataclass
class PumpCurve:
    id: str
    points: List[Tuple[float, float]]
    curve_type: str = 'PUMP'
    description: str = ''


@dataclass
class NetworkControl:
    """Simple EPANET control.

    control_type 'TIMER' switches at `value` seconds; 'LOW LEVEL' and
    'HI LEVEL' switch when `node_id` goes below/above `value`.
    """
    link_id: str
    status: str
    control_type: str
    value: float
    node_id: Optional[str] = None

    def to_inp_line(self) -> str:
        if self.control_type == 'TIMER':
            hours = self.value / 3600.0
            return f"LINK {self.link_id} {self.status.upper()} AT TIME {hours:g}"
        if self.control_type in ('LOW LEVEL', 'HI LEVEL'):
            condition = 'BELOW' if self.control_type == 'LOW LEVEL' else 'ABOVE'
            return f"LINK {self.link_id} {self.status.upper()} IF NODE {self.node_id} {condition} {self.value:g}"
        raise ValueError(f"Unknown control type: {self.control_type!r}")


@dataclass
class ProjectSettings:
    """Global hydraulic options and time settings."""
    title: str = DEFAULT_SETTINGS['title']
    units: str = DEFAULT_SETTINGS['units']
    headloss: str = DEFAULT_SETTINGS['headloss']
    specific_gravity: float = DEFAULT_SETTINGS['specific_gravity']
    viscosity: float = DEFAULT_SETTINGS['viscosity']
    trials: int = DEFAULT_SETTINGS['trials']
    accuracy: float = DEFAULT_SETTINGS['accuracy']
    demand_multiplier: float = DEFAULT_SETTINGS['demand_multiplier']
    duration: int = DEFAULT_SETTINGS['duration']
    hydraulic_timestep: int = DEFAULT_SETTINGS['hydraulic_timestep']
    pattern_timestep: int = DEFAULT_SETTINGS['pattern_timestep']
    projection: str = DEFAULT_SETTINGS['projection']

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
