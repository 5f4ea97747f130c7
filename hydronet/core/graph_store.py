"""
Graph Store: authoritative in-memory container of network nodes and links.

The store is a flat keyed container plus geometry and project data. It holds
no connectivity rules of its own; every write is permitted so that the
TopologyManager can run multi-step mutations before invariants are checked.
"""
import copy
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Set, Union

from .config import DEFAULT_PATTERN_ID, DEFAULT_PATTERN_MULTIPLIERS
from .exceptions import NotFound
from .models import (
    NetworkNode,
    NetworkLink,
    VisualLink,
    TimePattern,
    PumpCurve,
    NetworkControl,
    ProjectSettings,
)

logger = logging.getLogger(__name__)

Entity = Union[NetworkNode, NetworkLink]
ChangeListener = Callable[[Set[str], bool], None]


@dataclass
class _StoreState:
    """Deep copy of the mutable network content, used by undo/redo."""
    entities: Dict[str, Entity]
    visual_links: Dict[str, VisualLink] = field(default_factory=dict)


def _default_patterns() -> Dict[str, TimePattern]:
    return {
        DEFAULT_PATTERN_ID: TimePattern(
            DEFAULT_PATTERN_ID, list(DEFAULT_PATTERN_MULTIPLIERS), 'Default Diurnal'
        )
    }


class GraphStore:
    """
    Keyed container of nodes and links with project settings, patterns,
    curves, controls and the display-only companion lines of pumps/valves.

    Listeners registered with `subscribe` receive `(changed_ids, links_changed)`
    after every write, or once at the end of a `batch()` block.
    """
    def __init__(self):
        self._entities: Dict[str, Entity] = {}
        self._visual_links: Dict[str, VisualLink] = {}
        self.settings = ProjectSettings()
        self.patterns: Dict[str, TimePattern] = _default_patterns()
        self.curves: Dict[str, PumpCurve] = {}
        self.controls: List[NetworkControl] = []

        self._listeners: List[ChangeListener] = []
        self._batch_depth = 0
        self._pending_ids: Set[str] = set()
        self._pending_links = False
        self._frozen = False

        self._past: List[_StoreState] = []
        self._future: List[_StoreState] = []

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    def get(self, entity_id: str) -> Entity:
        """Return the node or link with this id, raising NotFound if absent."""
        try:
            return self._entities[entity_id]
        except KeyError:
            raise NotFound(entity_id) from None

    def upsert(self, entity: Entity) -> None:
        """Insert or replace an entity by id."""
        self._check_writable()
        self._entities[entity.id] = entity
        self._notify({entity.id}, isinstance(entity, NetworkLink))

    def remove(self, entity_id: str) -> Entity:
        """Remove and return an entity, raising NotFound if absent."""
        self._check_writable()
        entity = self._entities.pop(entity_id, None)
        if entity is None:
            raise NotFound(entity_id)
        self._notify({entity_id}, isinstance(entity, NetworkLink))
        return entity

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self) -> Iterator[Entity]:
        return iter(list(self._entities.values()))

    # ------------------------------------------------------------------
    # Typed views
    # ------------------------------------------------------------------

    def nodes(self) -> List[NetworkNode]:
        return [e for e in self._entities.values() if isinstance(e, NetworkNode)]

    def links(self) -> List[NetworkLink]:
        return [e for e in self._entities.values() if isinstance(e, NetworkLink)]

    def get_node(self, node_id: str) -> NetworkNode:
        entity = self._entities.get(node_id)
        if not isinstance(entity, NetworkNode):
            raise NotFound(node_id)
        return entity

    def get_link(self, link_id: str) -> NetworkLink:
        entity = self._entities.get(link_id)
        if not isinstance(entity, NetworkLink):
            raise NotFound(link_id)
        return entity

    def has_node(self, node_id: str) -> bool:
        return isinstance(self._entities.get(node_id), NetworkNode)

    def has_link(self, link_id: str) -> bool:
        return isinstance(self._entities.get(link_id), NetworkLink)

    def find_by_type(self, component_type: str) -> List[Entity]:
        return [
            e for e in self._entities.values()
            if getattr(e, 'node_type', None) == component_type
            or getattr(e, 'link_type', None) == component_type
        ]

    @property
    def node_count(self) -> int:
        return sum(1 for e in self._entities.values() if isinstance(e, NetworkNode))

    # ------------------------------------------------------------------
    # Companion visual links (keyed by parent link id)
    # ------------------------------------------------------------------

    def add_visual_link(self, visual: VisualLink) -> None:
        self._check_writable()
        self._visual_links[visual.parent_link_id] = visual

    def get_visual_link(self, parent_link_id: str) -> Optional[VisualLink]:
        return self._visual_links.get(parent_link_id)

    def remove_visual_link(self, parent_link_id: str) -> Optional[VisualLink]:
        self._check_writable()
        return self._visual_links.pop(parent_link_id, None)

    def visual_links(self) -> List[VisualLink]:
        return list(self._visual_links.values())

    # ------------------------------------------------------------------
    # Project data
    # ------------------------------------------------------------------

    def set_pattern(self, pattern: TimePattern) -> None:
        self.patterns[pattern.id] = pattern

    def delete_pattern(self, pattern_id: str) -> None:
        if self.patterns.pop(pattern_id, None) is None:
            raise NotFound(pattern_id)

    def set_curve(self, curve: PumpCurve) -> None:
        self.curves[curve.id] = curve

    def delete_curve(self, curve_id: str) -> None:
        if self.curves.pop(curve_id, None) is None:
            raise NotFound(curve_id)

    def add_control(self, control: NetworkControl) -> None:
        self.controls.append(control)

    def remove_control(self, index: int) -> NetworkControl:
        return self.controls.pop(index)

    def update_settings(self, **changes) -> None:
        for key, value in changes.items():
            if not hasattr(self.settings, key):
                raise AttributeError(f"Unknown project setting: {key}")
            setattr(self.settings, key, value)

    def clear(self) -> None:
        """Reset to an empty project with default settings."""
        self._check_writable()
        had_links = any(isinstance(e, NetworkLink) for e in self._entities.values())
        removed = set(self._entities)
        self._entities.clear()
        self._visual_links.clear()
        self.settings = ProjectSettings()
        self.patterns = _default_patterns()
        self.curves = {}
        self.controls = []
        self._past.clear()
        self._future.clear()
        self._notify(removed, had_links)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @contextmanager
    def batch(self):
        """Defer change notifications until the outermost block exits."""
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._pending_ids:
                ids, links_changed = self._pending_ids, self._pending_links
                self._pending_ids, self._pending_links = set(), False
                self._dispatch(ids, links_changed)

    def _notify(self, ids: Set[str], links_changed: bool) -> None:
        if self._batch_depth > 0:
            self._pending_ids |= ids
            self._pending_links = self._pending_links or links_changed
            return
        self._dispatch(ids, links_changed)

    def _dispatch(self, ids: Set[str], links_changed: bool) -> None:
        for listener in list(self._listeners):
            listener(set(ids), links_changed)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def freeze(self) -> "GraphStore":
        """Return an immutable deep copy that will not observe later edits."""
        frozen = GraphStore()
        frozen._entities = copy.deepcopy(self._entities)
        frozen._visual_links = copy.deepcopy(self._visual_links)
        frozen.settings = copy.deepcopy(self.settings)
        frozen.patterns = copy.deepcopy(self.patterns)
        frozen.curves = copy.deepcopy(self.curves)
        frozen.controls = copy.deepcopy(self.controls)
        frozen._frozen = True
        return frozen

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def _check_writable(self) -> None:
        if self._frozen:
            raise RuntimeError("Cannot modify a frozen graph snapshot")

    # ------------------------------------------------------------------
    # Undo / redo
    # ------------------------------------------------------------------

    def _capture(self) -> _StoreState:
        return _StoreState(copy.deepcopy(self._entities), copy.deepcopy(self._visual_links))

    def _restore(self, state: _StoreState) -> None:
        changed = set(self._entities) | set(state.entities)
        self._entities = state.entities
        self._visual_links = state.visual_links
        self._notify(changed, True)

    def snapshot(self) -> None:
        """Record the current network so the next mutation can be undone."""
        self._past.append(self._capture())
        self._future.clear()

    def undo(self) -> bool:
        if not self._past:
            return False
        self._future.insert(0, self._capture())
        self._restore(self._past.pop())
        logger.debug(f"Undo: {len(self._past)} states remaining")
        return True

    def redo(self) -> bool:
        if not self._future:
            return False
        self._past.append(self._capture())
        self._restore(self._future.pop(0))
        return True

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)
