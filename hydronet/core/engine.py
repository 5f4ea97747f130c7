"""
Simulation Driver for the hydraulic network editor.

Serializes a frozen copy of the Graph Store to EPANET input, then steps the
EPANET 2.2 toolkit (through WNTR's ENepanet binding) one hydraulic event at
a time, collecting a SimulationSnapshot per event into a SimulationHistory.
"""
import logging
import os
import tempfile
import time
import uuid
import weakref
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from multiprocessing import TimeoutError as PoolTimeoutError
from multiprocessing.pool import ThreadPool
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from wntr.epanet.toolkit import ENepanet

from .config import (
    EN_NODECOUNT,
    EN_LINKCOUNT,
    EN_DEMAND,
    EN_HEAD,
    EN_PRESSURE,
    EN_FLOW,
    EN_VELOCITY,
    EN_HEADLOSS,
    EN_STATUS,
    OPEN_STATUS_THRESHOLD,
    RESULT_PRECISION,
    HEADLOSS_PRECISION,
    SOLVER_FILE_EXTENSIONS,
)
from .exceptions import (
    EmptyNetworkError,
    HydroNetError,
    SolverError,
    SolverOpenError,
    SolverStepError,
    SimulationTimeout,
)
from .graph_store import GraphStore
from .history import (
    LinkResult,
    NodeResult,
    PlaybackCursor,
    SimulationHistory,
    SimulationSnapshot,
)
from .serializer import serialize

logger = logging.getLogger(__name__)
logging.getLogger('wntr.epanet.toolkit').setLevel(logging.ERROR)


# =============================================================================
# Solver binding
# =============================================================================

class HydraulicSolver(ABC):
    """Open/init/step/query/close protocol the driver needs from a solver."""

    @abstractmethod
    def open(self, inp_text: str) -> None:
        """Load the network and initialize hydraulics at t=0."""

    @abstractmethod
    def run_step(self) -> int:
        """Solve hydraulics at the current time, returning that time in seconds."""

    @abstractmethod
    def next_step(self) -> int:
        """Advance to the next hydraulic event, returning the step length (0 when done)."""

    @abstractmethod
    def node_ids(self) -> List[str]:
        ...

    @abstractmethod
    def link_ids(self) -> List[str]:
        ...

    @abstractmethod
    def node_value(self, index: int, code: int) -> float:
        """Value of a node parameter; `index` is 1-based as in the toolkit."""

    @abstractmethod
    def link_value(self, index: int, code: int) -> float:
        ...

    def report(self) -> Optional[str]:
        """Solver report text, if the solver produced one."""
        return None

    @abstractmethod
    def close(self) -> None:
        """Release every resource. Must be safe to call more than once."""


class _ToolkitHandle:
    """
    Owns the ENepanet project and its temp files. Kept separate from
    EpanetSolver so the finalizer can release it without referencing the
    solver object itself.
    """
    def __init__(self, prefix: Path):
        self.prefix = prefix
        self.en: Optional[ENepanet] = None
        self.hydraulics_open = False

    def path(self, ext: str) -> str:
        return f"{self.prefix}{ext}"

    def release(self) -> None:
        if self.en is not None:
            if self.hydraulics_open:
                try:
                    self.en.ENcloseH()
                except Exception as e:
                    logger.warning(f"ENcloseH failed during cleanup: {e}")
                self.hydraulics_open = False
            try:
                self.en.ENclose()
            except Exception as e:
                logger.warning(f"ENclose failed during cleanup: {e}")
            self.en = None

        # Clean up temp files to avoid disk space issues
        for ext in SOLVER_FILE_EXTENSIONS:
            temp_file = self.path(ext)
            if os.path.exists(temp_file):
                try:
                    os.remove(temp_file)
                except OSError as e:
                    logger.warning(f"Could not remove {temp_file}: {e}")


class EpanetSolver(HydraulicSolver):
    """
    EPANET 2.2 toolkit session through WNTR's ENepanet binding.

    Each instance writes its input under a unique file prefix so several
    runs can coexist. If the owner drops the solver without calling
    close(), the finalizer still closes the toolkit handle.
    """
    def __init__(self, work_dir: Optional[Path] = None):
        work_dir = Path(work_dir) if work_dir else Path(tempfile.gettempdir())
        self._handle = _ToolkitHandle(work_dir / f"temp_{uuid.uuid4().hex[:8]}")
        self._finalizer = weakref.finalize(self, self._handle.release)

    def open(self, inp_text: str) -> None:
        handle = self._handle
        inp_file = handle.path('.inp')
        with open(inp_file, 'w') as f:
            f.write(inp_text)
        try:
            handle.en = ENepanet()
            handle.en.ENopen(inp_file, handle.path('.rpt'), handle.path('.bin'))
            handle.en.ENopenH()
            handle.hydraulics_open = True
            handle.en.ENinitH(0)
        except Exception as e:
            raise SolverOpenError(str(e), details=self.report()) from e

    def run_step(self) -> int:
        try:
            return int(self._handle.en.ENrunH())
        except Exception as e:
            raise SolverStepError(str(e), details=self.report()) from e

    def next_step(self) -> int:
        try:
            return int(self._handle.en.ENnextH())
        except Exception as e:
            raise SolverStepError(str(e), details=self.report()) from e

    def node_ids(self) -> List[str]:
        en = self._handle.en
        return [en.ENgetnodeid(i) for i in range(1, en.ENgetcount(EN_NODECOUNT) + 1)]

    def link_ids(self) -> List[str]:
        en = self._handle.en
        return [en.ENgetlinkid(i) for i in range(1, en.ENgetcount(EN_LINKCOUNT) + 1)]

    def node_value(self, index: int, code: int) -> float:
        return float(self._handle.en.ENgetnodevalue(index, code))

    def link_value(self, index: int, code: int) -> float:
        return float(self._handle.en.ENgetlinkvalue(index, code))

    def report(self) -> Optional[str]:
        rpt_file = self._handle.path('.rpt')
        if not os.path.exists(rpt_file):
            return None
        with open(rpt_file, 'r', errors='replace') as f:
            text = f.read().strip()
        return text or None

    def close(self) -> None:
        self._finalizer()

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive


# =============================================================================
# Driver
# =============================================================================

class SimulationState(Enum):
    IDLE = "idle"
    OPENING = "opening"
    STEPPING = "stepping"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    """Result of one synchronous step: the snapshot and the time to the next event."""
    snapshot: SimulationSnapshot
    advance: int

    @property
    def done(self) -> bool:
        return self.advance <= 0


def _round(value: float, places: int = RESULT_PRECISION) -> float:
    return round(float(value), places)


class SimulationDriver:
    """
    Explicit state machine over one solver handle:

        IDLE -> OPENING -> STEPPING -> COMPLETED
                   |           |
                   +-> FAILED <+

    `run()` is the usual entry point. `open()`, `step()` and `finish()`
    expose the same machine one transition at a time.
    """
    def __init__(self, solver_factory: Callable[[], HydraulicSolver] = EpanetSolver):
        self.solver_factory = solver_factory
        self.state = SimulationState.IDLE
        self.error: Optional[SolverError] = None
        self._solver: Optional[HydraulicSolver] = None
        self._timestamps: List[int] = []
        self._snapshots: List[SimulationSnapshot] = []

    def run(self, graph: GraphStore) -> SimulationHistory:
        """Simulate a frozen copy of `graph` and return its history.

        Raises:
            EmptyNetworkError: If the graph has no nodes (no solver is allocated)
            SolverOpenError: If the solver rejects the network
            SolverStepError: If the solver fails mid-run
        """
        frozen = graph if graph.is_frozen else graph.freeze()
        inp_text = serialize(frozen)
        return self.run_inp(inp_text)

    def run_inp(self, inp_text: str) -> SimulationHistory:
        """Simulate already serialized INP text."""
        self.open(inp_text)
        try:
            while not self.step().done:
                pass
            return self.finish()
        finally:
            self._release()

    def open(self, inp_text: str) -> None:
        self.state = SimulationState.OPENING
        self.error = None
        self._timestamps, self._snapshots = [], []
        self._solver = self.solver_factory()
        try:
            self._solver.open(inp_text)
        except SolverError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = SolverOpenError(str(e), details=self._solver.report())
            self._fail(error)
            raise error from e
        self.state = SimulationState.STEPPING
        logger.debug("Solver opened, hydraulics initialized at t=0")

    def step(self) -> StepOutcome:
        """Solve at the current time, record a snapshot and ask for the next event."""
        if self.state is not SimulationState.STEPPING:
            raise RuntimeError(f"Cannot step a simulation in state {self.state.value}")
        solver = self._solver
        try:
            t = solver.run_step()
            snapshot = self._collect(solver, t)
            self._timestamps.append(t)
            self._snapshots.append(snapshot)
            advance = solver.next_step()
        except SolverError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = SolverStepError(str(e), details=solver.report())
            self._fail(error)
            raise error from e
        return StepOutcome(snapshot=snapshot, advance=advance)

    def finish(self) -> SimulationHistory:
        if self.state is not SimulationState.STEPPING or not self._snapshots:
            raise RuntimeError(f"Cannot finish a simulation in state {self.state.value}")
        self._release()
        history = SimulationHistory(self._timestamps, self._snapshots)
        self.state = SimulationState.COMPLETED
        logger.info(f"Simulation completed: {len(history)} time step(s)")
        return history

    def _collect(self, solver: HydraulicSolver, t: int) -> SimulationSnapshot:
        nodes: Dict[str, NodeResult] = {}
        for i, node_id in enumerate(solver.node_ids(), start=1):
            nodes[node_id] = NodeResult(
                head=_round(solver.node_value(i, EN_HEAD)),
                pressure=_round(solver.node_value(i, EN_PRESSURE)),
                demand=_round(solver.node_value(i, EN_DEMAND)),
            )

        links: Dict[str, LinkResult] = {}
        for i, link_id in enumerate(solver.link_ids(), start=1):
            status_code = solver.link_value(i, EN_STATUS)
            links[link_id] = LinkResult(
                flow=_round(solver.link_value(i, EN_FLOW)),
                velocity=_round(solver.link_value(i, EN_VELOCITY)),
                headloss=_round(solver.link_value(i, EN_HEADLOSS), HEADLOSS_PRECISION),
                status="Open" if status_code >= OPEN_STATUS_THRESHOLD else "Closed",
            )
        return SimulationSnapshot(time=t, nodes=nodes, links=links)

    def _fail(self, error: SolverError) -> None:
        self.state = SimulationState.FAILED
        self.error = error
        logger.error(f"Simulation failed: {error}")
        self._release()

    def _release(self) -> None:
        if self._solver is not None:
            self._solver.close()
            self._solver = None


# =============================================================================
# Callers
# =============================================================================

def simulate(
    request: Dict[str, Any],
    solver_factory: Callable[[], HydraulicSolver] = EpanetSolver,
) -> Tuple[int, Dict[str, Any]]:
    """
    Transport-agnostic simulation endpoint.

    Returns (status_code, body). A request without INP text is rejected
    with 400 before any solver is created; solver failures give 500.
    """
    inp_text = request.get('inp') if request else None
    if not inp_text:
        return 400, {'error': "No INP data"}

    driver = SimulationDriver(solver_factory)
    try:
        history = driver.run_inp(inp_text)
    except SolverError as e:
        details = str(e)
        if e.details:
            details = f"{details}\n{e.details}"
        return 500, {'error': "Simulation failed", 'details': details}

    body = history.to_dict()
    body['generatedAt'] = int(time.time() * 1000)
    return 200, body


def run_with_timeout(
    graph: GraphStore,
    timeout: float,
    solver_factory: Callable[[], HydraulicSolver] = EpanetSolver,
) -> SimulationHistory:
    """
    Run the driver on a worker thread and give up after `timeout` seconds.

    The abandoned run keeps stepping in the background and releases its
    solver handle when it ends.

    Raises:
        SimulationTimeout: If the run did not complete in time
    """
    frozen = graph.freeze()
    driver = SimulationDriver(solver_factory)
    pool = ThreadPool(processes=1)
    try:
        pending = pool.apply_async(driver.run, (frozen,))
        return pending.get(timeout=timeout)
    except PoolTimeoutError:
        logger.error(f"Simulation timed out after {timeout}s")
        raise SimulationTimeout(timeout)
    finally:
        pool.close()


class SimulationSession:
    """
    Current simulation result of an editing session.

    A failed run records the error but keeps the previous history and
    cursor, so playback of the last good result continues.
    """
    def __init__(self, solver_factory: Callable[[], HydraulicSolver] = EpanetSolver,
                 timeout: Optional[float] = None):
        self.solver_factory = solver_factory
        self.timeout = timeout
        self.status = SimulationState.IDLE
        self.history: Optional[SimulationHistory] = None
        self.cursor: Optional[PlaybackCursor] = None
        self.error: Optional[str] = None

    def run(self, graph: GraphStore) -> bool:
        """Simulate `graph`; status stays IDLE when there is nothing to simulate."""
        self.error = None
        try:
            if self.timeout is not None:
                history = run_with_timeout(graph, self.timeout, self.solver_factory)
            else:
                history = SimulationDriver(self.solver_factory).run(graph)
        except EmptyNetworkError as e:
            self.status = SimulationState.IDLE
            self.error = str(e)
            logger.warning(f"Nothing to simulate: {e}")
            return False
        except HydroNetError as e:
            self.status = SimulationState.FAILED
            self.error = str(e)
            logger.error(f"Simulation run failed, keeping previous results: {e}")
            return False

        self.history = history
        self.cursor = PlaybackCursor(history)
        self.status = SimulationState.COMPLETED
        return True

    def reset(self) -> None:
        self.status = SimulationState.IDLE
        self.history = None
        self.cursor = None
        self.error = None
