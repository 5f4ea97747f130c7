"""
Test Configuration and Fixtures
================================

Shared pytest fixtures for the network editor and simulation driver.

Usage:
    pytest tests/                    # Run all tests
    pytest tests/ -m "not integration"  # Skip tests that call EPANET
"""

from typing import Dict, List, Optional, Tuple

import pytest

from hydronet.core.config import (
    EN_DEMAND,
    EN_HEAD,
    EN_PRESSURE,
    EN_FLOW,
    EN_VELOCITY,
    EN_HEADLOSS,
    EN_STATUS,
)
from hydronet.core.engine import HydraulicSolver
from hydronet.core.graph_store import GraphStore
from hydronet.core.topology import TopologyManager


# =============================================================================
# Scripted solver
# =============================================================================

_NODE_CODES = {EN_HEAD: 0, EN_PRESSURE: 1, EN_DEMAND: 2}
_LINK_CODES = {EN_FLOW: 0, EN_VELOCITY: 1, EN_HEADLOSS: 2, EN_STATUS: 3}


class FakeSolver(HydraulicSolver):
    """Replays a fixed list of (time, advance) steps with constant results."""

    def __init__(
        self,
        steps: List[Tuple[int, int]] = ((0, 0),),
        nodes: Optional[Dict[str, Tuple[float, float, float]]] = None,
        links: Optional[Dict[str, Tuple[float, float, float, float]]] = None,
        open_error: Optional[Exception] = None,
        fail_at_step: Optional[int] = None,
        gate=None,
    ):
        self.steps = list(steps)
        self.nodes = nodes if nodes is not None else {
            'J1': (100.0, 0.004, 0.0),
            'J2': (100.0, 20.0049, 0.0),
        }
        self.links = links if links is not None else {
            'P1': (0.0, 0.0, 0.0, 1),
        }
        self.open_error = open_error
        self.fail_at_step = fail_at_step
        self.gate = gate
        self.inp_text: Optional[str] = None
        self.close_calls = 0
        self._i = 0

    def open(self, inp_text: str) -> None:
        self.inp_text = inp_text
        if self.open_error is not None:
            raise self.open_error

    def run_step(self) -> int:
        if self.gate is not None:
            self.gate.wait()
        if self._i == self.fail_at_step:
            raise RuntimeError("hydraulic equations could not be solved")
        return self.steps[self._i][0]

    def next_step(self) -> int:
        advance = self.steps[self._i][1]
        self._i += 1
        return advance

    def node_ids(self) -> List[str]:
        return list(self.nodes)

    def link_ids(self) -> List[str]:
        return list(self.links)

    def node_value(self, index: int, code: int) -> float:
        return self.nodes[self.node_ids()[index - 1]][_NODE_CODES[code]]

    def link_value(self, index: int, code: int) -> float:
        return self.links[self.link_ids()[index - 1]][_LINK_CODES[code]]

    def report(self) -> Optional[str]:
        return "Error 200: one or more errors detected in input file" if self.open_error else None

    def close(self) -> None:
        self.close_calls += 1

    @property
    def closed(self) -> bool:
        return self.close_calls > 0


class FakeSolverFactory:
    """Solver factory recording every solver it creates."""

    def __init__(self, **script):
        self.script = script
        self.created: List[FakeSolver] = []

    def __call__(self) -> FakeSolver:
        solver = FakeSolver(**self.script)
        self.created.append(solver)
        return solver


@pytest.fixture
def fake_solver_factory():
    """Build a FakeSolverFactory: fake_solver_factory(steps=[(0, 3600), (3600, 0)])."""
    return FakeSolverFactory


# =============================================================================
# Network Fixtures
# =============================================================================

@pytest.fixture
def store() -> GraphStore:
    return GraphStore()


@pytest.fixture
def manager(store) -> TopologyManager:
    return TopologyManager(store)


@pytest.fixture
def two_junctions(manager) -> TopologyManager:
    """J1 (elevation 100) and J2 (elevation 80) joined by pipe P1, no source."""
    manager.add_node('junction', (0.0, 0.0), node_id='J1', elevation=100.0)
    manager.add_node('junction', (100.0, 0.0), node_id='J2', elevation=80.0)
    manager.add_link('pipe', 'J1', 'J2', link_id='P1')
    return manager


@pytest.fixture
def fed_network(manager) -> TopologyManager:
    """Reservoir R1 feeding J1 and J2 in series through P1 and P2."""
    manager.add_node('reservoir', (0.0, 0.0), node_id='R1', head=100.0, elevation=100.0)
    manager.add_node('junction', (100.0, 0.0), node_id='J1', elevation=50.0, demand=1.0)
    manager.add_node('junction', (200.0, 0.0), node_id='J2', elevation=40.0, demand=2.0)
    manager.add_link('pipe', 'R1', 'J1', link_id='P1', diameter=150.0)
    manager.add_link('pipe', 'J1', 'J2', link_id='P2', diameter=100.0)
    return manager
