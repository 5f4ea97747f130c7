"""
Error kinds raised by the topology engine and the simulation driver.
"""
from typing import Optional


class HydroNetError(Exception):
    """Base class for all network editing and simulation errors."""


class NotFound(HydroNetError, KeyError):
    """Raised when an operation references an id absent from the graph store."""
    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(entity_id)

    def __str__(self) -> str:
        return f"Entity not found: {self.entity_id!r}"


class InvalidTopology(HydroNetError, ValueError):
    """Raised when a mutation would violate a connectivity invariant.

    The graph store is left untouched when this is raised.
    """


class EmptyNetworkError(HydroNetError):
    """Raised when a simulation or export is requested on a network with zero nodes."""
    def __init__(self, message: str = "Network is empty. Cannot run simulation."):
        super().__init__(message)


class SolverError(HydroNetError):
    """Base class for failures reported by the hydraulic solver."""
    def __init__(self, message: str, details: Optional[str] = None):
        self.details = details
        super().__init__(message)


class SolverOpenError(SolverError):
    """The solver rejected the network while opening or initializing."""


class SolverStepError(SolverError):
    """The solver failed while stepping through the simulation."""


class SimulationTimeout(HydroNetError):
    """An externally imposed deadline expired before the run completed."""
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Simulation did not complete within {timeout:.1f}s")
