"""
Simulation results: per-step snapshots, the run history, playback cursor and
saved scenarios for comparison.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Any

import numpy as np
import pandas as pd

from .config import SCENARIO_COLORS
from .exceptions import NotFound

logger = logging.getLogger(__name__)

NODE_FIELDS = ('head', 'pressure', 'demand')
LINK_FIELDS = ('flow', 'velocity', 'headloss', 'status')


@dataclass(frozen=True)
class NodeResult:
    head: float
    pressure: float
    demand: float


@dataclass(frozen=True)
class LinkResult:
    flow: float
    velocity: float
    headloss: float
    status: str  # "Open" | "Closed"


@dataclass(frozen=True)
class SimulationSnapshot:
    """Results for every node and link at one simulated instant."""
    time: int
    nodes: Dict[str, NodeResult]
    links: Dict[str, LinkResult]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'time': self.time,
            'nodes': {nid: {'id': nid, **vars(r)} for nid, r in self.nodes.items()},
            'links': {lid: {'id': lid, **vars(r)} for lid, r in self.links.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationSnapshot":
        nodes = {nid: NodeResult(*(r[f] for f in NODE_FIELDS)) for nid, r in data['nodes'].items()}
        links = {lid: LinkResult(*(r[f] for f in LINK_FIELDS)) for lid, r in data['links'].items()}
        return cls(int(data['time']), nodes, links)


class SimulationHistory:
    """
    Ordered time series of snapshots from one run. Immutable once built;
    a re-run produces a new history instead of patching this one.
    """
    def __init__(self, timestamps: Sequence[int], snapshots: Sequence[SimulationSnapshot]):
        if len(timestamps) != len(snapshots):
            raise ValueError(
                f"History needs one snapshot per timestamp ({len(timestamps)} != {len(snapshots)})"
            )
        if not timestamps:
            raise ValueError("History needs at least one snapshot")
        if any(b < a for a, b in zip(timestamps, timestamps[1:])):
            raise ValueError("History timestamps must be non-decreasing")
        self._timestamps: Tuple[int, ...] = tuple(int(t) for t in timestamps)
        self._snapshots: Tuple[SimulationSnapshot, ...] = tuple(snapshots)

    @property
    def timestamps(self) -> Tuple[int, ...]:
        return self._timestamps

    @property
    def snapshots(self) -> Tuple[SimulationSnapshot, ...]:
        return self._snapshots

    def __len__(self) -> int:
        return len(self._snapshots)

    def __getitem__(self, index: int) -> SimulationSnapshot:
        return self._snapshots[index]

    def node_series(self, node_id: str, field_name: str) -> pd.Series:
        """Time series of one node result field, indexed by time in seconds."""
        if field_name not in NODE_FIELDS:
            raise ValueError(f"Unknown node field: {field_name}")
        values = [
            getattr(s.nodes[node_id], field_name) if node_id in s.nodes else np.nan
            for s in self._snapshots
        ]
        return pd.Series(values, index=pd.Index(self._timestamps, name='time'), name=node_id)

    def link_series(self, link_id: str, field_name: str, magnitude: bool = False) -> pd.Series:
        """Time series of one link result field. `magnitude` takes abs() of flows."""
        if field_name not in LINK_FIELDS:
            raise ValueError(f"Unknown link field: {field_name}")
        values = [
            getattr(s.links[link_id], field_name) if link_id in s.links else np.nan
            for s in self._snapshots
        ]
        series = pd.Series(values, index=pd.Index(self._timestamps, name='time'), name=link_id)
        if magnitude and field_name != 'status':
            series = series.abs()
        return series

    def to_frame(self, kind: str, field_name: str) -> pd.DataFrame:
        """Table of one field for all nodes or links: rows are times, columns are ids."""
        if kind == 'node':
            rows = [{nid: getattr(r, field_name) for nid, r in s.nodes.items()} for s in self._snapshots]
        elif kind == 'link':
            rows = [{lid: getattr(r, field_name) for lid, r in s.links.items()} for s in self._snapshots]
        else:
            raise ValueError(f"kind must be 'node' or 'link', got {kind!r}")
        return pd.DataFrame(rows, index=pd.Index(self._timestamps, name='time'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamps': list(self._timestamps),
            'snapshots': [s.to_dict() for s in self._snapshots],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationHistory":
        return cls(data['timestamps'], [SimulationSnapshot.from_dict(s) for s in data['snapshots']])


class PlaybackCursor:
    """
    Passive cursor over a completed history. An external fixed-interval
    timer drives playback by calling `advance()`.
    """
    def __init__(self, history: SimulationHistory):
        self.history = history
        self.current_index = 0

    def set_index(self, index: int) -> None:
        """Seek to `index`; out-of-range values are ignored."""
        if 0 <= index < len(self.history):
            self.current_index = index

    def advance(self) -> int:
        """Step forward, wrapping to 0 after the last snapshot."""
        self.current_index = (self.current_index + 1) % len(self.history)
        return self.current_index

    @property
    def current(self) -> SimulationSnapshot:
        return self.history[self.current_index]

    @property
    def current_time(self) -> int:
        return self.history.timestamps[self.current_index]


@dataclass(frozen=True)
class SnapshotStats:
    time: int
    min_pressure: float
    max_pressure: float
    min_velocity: float
    max_velocity: float


def snapshot_stats(snapshot: SimulationSnapshot) -> SnapshotStats:
    """Pressure and velocity ranges of one snapshot (zeros when empty)."""
    pressures = [r.pressure for r in snapshot.nodes.values()]
    velocities = [r.velocity for r in snapshot.links.values()]
    return SnapshotStats(
        time=snapshot.time,
        min_pressure=float(min(pressures)) if pressures else 0.0,
        max_pressure=float(max(pressures)) if pressures else 0.0,
        min_velocity=float(min(velocities)) if velocities else 0.0,
        max_velocity=float(max(velocities)) if velocities else 0.0,
    )


def history_report(history: SimulationHistory) -> pd.DataFrame:
    """Long-format table with one row per element per time step."""
    rows = []
    for t, snap in zip(history.timestamps, history.snapshots):
        for nid, r in snap.nodes.items():
            rows.append({'time_hr': t / 3600.0, 'kind': 'node', 'id': nid,
                         'pressure': r.pressure, 'head': r.head, 'demand': r.demand})
        for lid, r in snap.links.items():
            rows.append({'time_hr': t / 3600.0, 'kind': 'link', 'id': lid,
                         'flow': r.flow, 'velocity': r.velocity,
                         'headloss': r.headloss, 'status': r.status})
    columns = ['time_hr', 'kind', 'id', 'pressure', 'head', 'demand',
               'flow', 'velocity', 'headloss', 'status']
    return pd.DataFrame(rows, columns=columns)


def export_report_csv(history: SimulationHistory, path: Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    history_report(history).to_csv(path, index=False)
    logger.info(f"Saved simulation report to {path}")
    return path


# =============================================================================
# Scenarios
# =============================================================================

@dataclass
class Scenario:
    id: str
    name: str
    history: SimulationHistory
    color: str
    timestamp: float = field(default_factory=time.time)
    is_visible: bool = True


class ScenarioStore:
    """Saved run results kept side by side for comparison charts."""
    def __init__(self):
        self.scenarios: List[Scenario] = []

    def add_scenario(self, name: str, history: SimulationHistory) -> Scenario:
        color = SCENARIO_COLORS[len(self.scenarios) % len(SCENARIO_COLORS)]
        scenario = Scenario(id=uuid.uuid4().hex[:8], name=name, history=history, color=color)
        self.scenarios.append(scenario)
        return scenario

    def get(self, scenario_id: str) -> Scenario:
        for scenario in self.scenarios:
            if scenario.id == scenario_id:
                return scenario
        raise NotFound(scenario_id)

    def remove_scenario(self, scenario_id: str) -> None:
        scenario = self.get(scenario_id)
        self.scenarios.remove(scenario)

    def toggle_visibility(self, scenario_id: str) -> bool:
        scenario = self.get(scenario_id)
        scenario.is_visible = not scenario.is_visible
        return scenario.is_visible

    def visible(self) -> List[Scenario]:
        return [s for s in self.scenarios if s.is_visible]

    def compare(self, kind: str, element_id: str, field_name: str) -> pd.DataFrame:
        """One column per visible scenario for a single element and field."""
        columns = {}
        for scenario in self.visible():
            if kind == 'node':
                columns[scenario.name] = scenario.history.node_series(element_id, field_name)
            else:
                columns[scenario.name] = scenario.history.link_series(element_id, field_name)
        return pd.DataFrame(columns)

    def clear(self) -> None:
        self.scenarios = []
