"""
Topology Manager: every network mutation goes through here.

Enforces the connectivity invariants of the GraphStore:
  1. No link references a non-existent node.
  2. A node's `connected_links` is exactly the set of links whose endpoints
     reference it.
  3. Deleting a node removes all incident links and updates the other endpoints.
  4. Deleting a link strips it from both endpoints without deleting the nodes.
  5. Ids are never reused within a session.

Validation happens before the store is touched, so a rejected operation never
leaves a partial mutation behind.
"""
import logging
import math
import re
from dataclasses import dataclass, field, fields
from typing import Container, Dict, Iterable, List, Optional, Set, Tuple, Any

import numpy as np

from .config import (
    COMPONENT_DEFAULTS,
    ID_COUNTER_START,
    ID_PREFIXES,
    INSERTED_LINK_LENGTH,
    LINK_TYPES,
    NODE_TYPES,
)
from .exceptions import InvalidTopology, NotFound
from .graph_store import GraphStore
from .models import (
    Coordinate,
    NetworkLink,
    NetworkNode,
    VisualLink,
    geometry_length,
)

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r'^[A-Za-z]+-(\d+)$')


@dataclass
class CascadePreview:
    """Read-only summary of what deleting an entity would remove."""
    entity_id: str
    will_cascade: bool
    link_count: int = 0
    link_ids: List[str] = field(default_factory=list)
    message: str = ''


def closest_point_on_polyline(
    geometry: List[Coordinate], coordinate: Coordinate
) -> Tuple[int, Coordinate, float]:
    """Project a coordinate onto a polyline.

    Returns:
        (segment_index, closest_point, distance) where the point lies on the
        segment geometry[segment_index] -> geometry[segment_index + 1].
    """
    if len(geometry) < 2:
        raise InvalidTopology("Polyline needs at least 2 coordinates")
    p = np.asarray(coordinate, dtype=float)
    best = (-1, (0.0, 0.0), math.inf)
    for i in range(len(geometry) - 1):
        a = np.asarray(geometry[i], dtype=float)
        b = np.asarray(geometry[i + 1], dtype=float)
        ab = b - a
        denom = float(np.dot(ab, ab))
        t = 0.0 if denom == 0 else float(np.clip(np.dot(p - a, ab) / denom, 0.0, 1.0))
        q = a + t * ab
        dist = float(np.hypot(*(p - q)))
        if dist < best[2]:
            best = (i, (float(q[0]), float(q[1])), dist)
    return best


def _split_attrs(cls, attrs: Dict[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Separate dataclass field values from free-form properties."""
    names = {f.name for f in fields(cls)}
    known = {k: v for k, v in attrs.items() if k in names}
    extra = {k: v for k, v in attrs.items() if k not in names}
    return known, extra


class IdGenerator:
    """Per-type counters producing ids like 'J-100', 'P-101'. Never goes backwards."""
    def __init__(self):
        self.counters: Dict[str, int] = {t: ID_COUNTER_START for t in ID_PREFIXES}
        self.used: Set[str] = set()

    def observe(self, entity_id: str, component_type: Optional[str] = None) -> None:
        """Mark an existing id as used and advance its type counter past it."""
        self.used.add(entity_id)
        match = _ID_PATTERN.match(entity_id)
        if match and component_type in self.counters:
            num = int(match.group(1))
            if num >= self.counters[component_type]:
                self.counters[component_type] = num + 1

    def next_id(self, component_type: str, taken: Container[str] = ()) -> str:
        """Next unused id for the type, also skipping anything in `taken`."""
        prefix = ID_PREFIXES[component_type]
        while True:
            candidate = f"{prefix}-{self.counters[component_type]}"
            self.counters[component_type] += 1
            if candidate not in self.used and candidate not in taken:
                self.used.add(candidate)
                return candidate


class TopologyManager:
    """
    Owns all mutations of a GraphStore instance passed in by the caller.

    Also tracks the editor selection, which is cleared whenever a destructive
    operation deletes a selected id.
    """
    def __init__(self, store: GraphStore):
        self.store = store
        self.ids = IdGenerator()
        self.selection: List[str] = []
        self.adopt_existing_ids()

    # ------------------------------------------------------------------
    # Id bookkeeping
    # ------------------------------------------------------------------

    def adopt_existing_ids(self) -> None:
        """Register ids already present in the store (after import or load)."""
        for entity in self.store:
            kind = getattr(entity, 'node_type', None) or getattr(entity, 'link_type', None)
            self.ids.observe(entity.id, kind)

    def _check_id_available(self, requested: Optional[str]) -> None:
        if requested is not None and (requested in self.ids.used or requested in self.store):
            raise InvalidTopology(f"Id {requested!r} has already been used in this session")

    def _claim_id(self, component_type: str, requested: Optional[str]) -> str:
        if requested is None:
            return self.ids.next_id(component_type, self.store)
        self._check_id_available(requested)
        self.ids.observe(requested, component_type)
        return requested

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select(self, ids: Iterable[str]) -> None:
        ids = list(ids)
        for entity_id in ids:
            if entity_id not in self.store:
                raise NotFound(entity_id)
        self.selection = ids

    def clear_selection(self) -> None:
        self.selection = []

    def _clear_selection_if(self, deleted: Set[str]) -> None:
        if any(entity_id in deleted for entity_id in self.selection):
            self.selection = []

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def add_node(
        self,
        node_type: str,
        position: Coordinate,
        node_id: Optional[str] = None,
        **attrs
    ) -> NetworkNode:
        """Place a new junction, tank or reservoir."""
        if node_type not in NODE_TYPES:
            raise InvalidTopology(f"Unknown node type: {node_type!r}")
        self._check_id_available(node_id)
        self.store.snapshot()
        return self._create_node(node_type, position, node_id, **attrs)

    def add_link(
        self,
        link_type: str,
        start_node_id: str,
        end_node_id: str,
        geometry: Optional[List[Coordinate]] = None,
        link_id: Optional[str] = None,
        **attrs
    ) -> NetworkLink:
        """Connect two existing nodes with a pipe, pump or valve."""
        if link_type not in LINK_TYPES:
            raise InvalidTopology(f"Unknown link type: {link_type!r}")
        self._check_endpoints(start_node_id, end_node_id)
        if geometry is not None and len(geometry) < 2:
            raise InvalidTopology("Link geometry needs at least 2 coordinates")
        self._check_id_available(link_id)
        self.store.snapshot()
        with self.store.batch():
            return self._create_link(link_type, start_node_id, end_node_id, geometry, link_id, **attrs)

    def _create_node(self, node_type, position, node_id=None, **attrs) -> NetworkNode:
        values = {**COMPONENT_DEFAULTS[node_type], **attrs}
        known, extra = _split_attrs(NetworkNode, values)
        for reserved in ('id', 'node_type', 'position', 'connected_links'):
            known.pop(reserved, None)
        new_id = self._claim_id(node_type, node_id)
        node = NetworkNode(
            id=new_id,
            node_type=node_type,
            position=position,
            connected_links=[],
            **known,
        )
        node.properties.update(extra)
        if node.label is None:
            node.label = new_id
        self.store.upsert(node)
        logger.debug(f"Added {node_type} {new_id} at {node.position}")
        return node

    def _create_link(self, link_type, start_node_id, end_node_id, geometry=None, link_id=None, **attrs) -> NetworkLink:
        start = self.store.get_node(start_node_id)
        end = self.store.get_node(end_node_id)
        values = {**COMPONENT_DEFAULTS[link_type], **attrs}
        known, extra = _split_attrs(NetworkLink, values)
        for reserved in ('id', 'link_type', 'start_node_id', 'end_node_id', 'geometry'):
            known.pop(reserved, None)

        coords = list(geometry) if geometry else [start.position, end.position]
        coords[0] = start.position
        coords[-1] = end.position

        new_id = self._claim_id(link_type, link_id)
        link = NetworkLink(
            id=new_id,
            link_type=link_type,
            start_node_id=start_node_id,
            end_node_id=end_node_id,
            geometry=coords,
            **known,
        )
        link.properties.update(extra)
        if link.label is None:
            link.label = new_id
        if link.link_type == 'pipe' and link.length is None:
            link.length = geometry_length(link.geometry)

        self.store.upsert(link)
        self._attach(start, new_id)
        self._attach(end, new_id)

        if link_type in ('pump', 'valve'):
            self.store.add_visual_link(self._visual_for(link))
        logger.debug(f"Added {link_type} {new_id}: {start_node_id} -> {end_node_id}")
        return link

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def get_cascade_preview(self, entity_id: str) -> CascadePreview:
        """Describe what deleting `entity_id` would remove, without mutating."""
        entity = self.store.get(entity_id)
        if isinstance(entity, NetworkNode):
            link_ids = self._incident_link_ids(entity)
            if link_ids:
                return CascadePreview(
                    entity_id=entity_id,
                    will_cascade=True,
                    link_count=len(link_ids),
                    link_ids=link_ids,
                    message=(
                        f"This node has {len(link_ids)} connected link(s). "
                        f"All connected links will also be deleted."
                    ),
                )
        return CascadePreview(entity_id=entity_id, will_cascade=False)

    def delete_node(self, node_id: str) -> Set[str]:
        """Delete a node and every link incident to it.

        Returns:
            Ids of all deleted entities (the node and the cascaded links)
        """
        self.store.get_node(node_id)
        self.store.snapshot()
        with self.store.batch():
            deleted = self._delete_node(node_id)
        self._clear_selection_if(deleted)
        logger.info(f"Deleted node {node_id} ({len(deleted) - 1} cascaded link(s))")
        return deleted

    def delete_link(self, link_id: str) -> Set[str]:
        """Delete a link and detach it from its endpoints. Nodes are kept."""
        self.store.get_link(link_id)
        self.store.snapshot()
        with self.store.batch():
            deleted = self._delete_link(link_id)
        self._clear_selection_if(deleted)
        logger.info(f"Deleted link {link_id}")
        return deleted

    def delete_many(self, ids: Iterable[str]) -> Set[str]:
        """Delete each id in order.

        Ids already removed by an earlier cascade in the same call are skipped.
        Every id must exist when the call starts.
        """
        ids = list(ids)
        for entity_id in ids:
            self.store.get(entity_id)
        self.store.snapshot()
        deleted: Set[str] = set()
        with self.store.batch():
            for entity_id in ids:
                if entity_id in deleted:
                    continue
                entity = self.store.get(entity_id)
                if isinstance(entity, NetworkNode):
                    deleted |= self._delete_node(entity_id)
                else:
                    deleted |= self._delete_link(entity_id)
        self._clear_selection_if(deleted)
        logger.info(f"Deleted {len(deleted)} entities")
        return deleted

    def _delete_node(self, node_id: str) -> Set[str]:
        node = self.store.get_node(node_id)
        deleted: Set[str] = set()
        for link_id in self._incident_link_ids(node):
            link = self.store.get_link(link_id)
            other_id = link.other_end(node_id)
            if other_id != node_id and self.store.has_node(other_id):
                self._detach(self.store.get_node(other_id), link_id)
            self._remove_companions(link_id)
            self.store.remove(link_id)
            deleted.add(link_id)
            logger.debug(f"Cascade deleted link: {link_id}")
        self._remove_companions(node_id)
        self.store.remove(node_id)
        deleted.add(node_id)
        return deleted

    def _delete_link(self, link_id: str) -> Set[str]:
        link = self.store.get_link(link_id)
        for node_id in dict.fromkeys(link.endpoints):
            if self.store.has_node(node_id):
                node = self.store.get_node(node_id)
                self._detach(node, link_id)
                if not node.connected_links:
                    logger.warning(f"Node {node_id} is isolated after deleting {link_id}")
        self._remove_companions(link_id)
        self.store.remove(link_id)
        return {link_id}

    def _remove_companions(self, entity_id: str) -> None:
        if self.store.remove_visual_link(entity_id) is not None:
            logger.debug(f"Visual link line removed for {entity_id}")

    # ------------------------------------------------------------------
    # Reconnection and geometry edits
    # ------------------------------------------------------------------

    def reconnect_link(
        self,
        link_id: str,
        new_start: Optional[str] = None,
        new_end: Optional[str] = None
    ) -> NetworkLink:
        """Move one or both endpoints of a link to other existing nodes."""
        link = self.store.get_link(link_id)
        start_id = new_start if new_start is not None else link.start_node_id
        end_id = new_end if new_end is not None else link.end_node_id
        self._check_endpoints(start_id, end_id)
        if (start_id, end_id) == link.endpoints:
            return link

        self.store.snapshot()
        with self.store.batch():
            if (start_id, end_id) == (link.end_node_id, link.start_node_id):
                link.geometry = list(reversed(link.geometry))
            old_ends = set(link.endpoints)
            link.start_node_id, link.end_node_id = start_id, end_id
            for node_id in old_ends - {start_id, end_id}:
                if self.store.has_node(node_id):
                    self._detach(self.store.get_node(node_id), link_id)
            for node_id in (start_id, end_id):
                self._attach(self.store.get_node(node_id), link_id)
            self._sync_link_geometry(link)
        logger.info(f"Reconnected {link_id}: {start_id} -> {end_id}")
        return link

    def move_node(self, node_id: str, position: Coordinate) -> NetworkNode:
        """Drag a node, carrying the endpoints of its incident links along."""
        node = self.store.get_node(node_id)
        self.store.snapshot()
        with self.store.batch():
            node.position = (float(position[0]), float(position[1]))
            self.store.upsert(node)
            for link_id in node.connected_links:
                self._sync_link_geometry(self.store.get_link(link_id))
        return node

    def reverse_link(self, link_id: str) -> NetworkLink:
        """Swap the start and end of a link and reverse its geometry."""
        link = self.store.get_link(link_id)
        self.store.snapshot()
        link.start_node_id, link.end_node_id = link.end_node_id, link.start_node_id
        link.geometry = list(reversed(link.geometry))
        visual = self.store.get_visual_link(link_id)
        if visual is not None:
            visual.coordinates = list(reversed(visual.coordinates))
        self.store.upsert(link)
        return link

    def add_vertex(self, link_id: str, coordinate: Coordinate) -> int:
        """Insert a vertex on the segment closest to `coordinate`.

        Returns:
            Index of the new vertex in the link geometry
        """
        link = self.store.get_link(link_id)
        segment, point, _ = closest_point_on_polyline(link.geometry, coordinate)
        self.store.snapshot()
        index = segment + 1
        link.geometry.insert(index, point)
        self._refresh_length(link)
        self.store.upsert(link)
        return index

    def delete_vertex(self, link_id: str, index: int) -> Coordinate:
        """Remove an interior vertex. Endpoints are bound to nodes and stay."""
        link = self.store.get_link(link_id)
        if len(link.geometry) <= 2:
            raise InvalidTopology("Cannot delete vertex: link needs at least 2 vertices")
        if not 0 < index < len(link.geometry) - 1:
            raise InvalidTopology(f"Vertex {index} of {link_id} is not an interior vertex")
        self.store.snapshot()
        removed = link.geometry.pop(index)
        self._refresh_length(link)
        self.store.upsert(link)
        return removed

    def split_pipe(
        self,
        link_id: str,
        coordinate: Coordinate,
        node_type: str = 'junction'
    ) -> Tuple[NetworkNode, NetworkLink, NetworkLink]:
        """Insert a node on a pipe, replacing the pipe with two new pipes."""
        pipe = self.store.get_link(link_id)
        if pipe.link_type != 'pipe':
            raise InvalidTopology(f"{link_id} is a {pipe.link_type}, only pipes can be split")
        if node_type not in NODE_TYPES:
            raise InvalidTopology(f"Unknown node type: {node_type!r}")
        segment, point, _ = closest_point_on_polyline(pipe.geometry, coordinate)
        if point in (pipe.geometry[0], pipe.geometry[-1]):
            raise InvalidTopology("Split point coincides with a pipe endpoint")

        inherited = self._pipe_attributes(pipe)
        first_geom = pipe.geometry[:segment + 1] + [point]
        second_geom = [point] + pipe.geometry[segment + 1:]
        start_id, end_id = pipe.endpoints

        self.store.snapshot()
        with self.store.batch():
            self._delete_link(link_id)
            node = self._create_node(node_type, point)
            first = self._create_link('pipe', start_id, node.id, first_geom, **inherited)
            second = self._create_link('pipe', node.id, end_id, second_geom, **inherited)
        self._clear_selection_if({link_id})
        logger.info(f"Split {link_id} at {node.id} into {first.id}, {second.id}")
        return node, first, second

    def insert_link_on_pipe(
        self,
        link_id: str,
        coordinate: Coordinate,
        link_type: str
    ) -> Tuple[NetworkLink, NetworkNode, NetworkNode]:
        """Cut a pipe and bridge the gap with a short pump or valve.

        Returns:
            (link, start_junction, end_junction)
        """
        pipe = self.store.get_link(link_id)
        if pipe.link_type != 'pipe':
            raise InvalidTopology(f"{link_id} is a {pipe.link_type}, only pipes can be split")
        if link_type not in ('pump', 'valve'):
            raise InvalidTopology(f"Only pumps and valves can be inserted, got {link_type!r}")
        segment, point, _ = closest_point_on_polyline(pipe.geometry, coordinate)
        a = np.asarray(pipe.geometry[segment], dtype=float)
        b = np.asarray(pipe.geometry[segment + 1], dtype=float)
        angle = math.atan2(b[1] - a[1], b[0] - a[0])
        half = INSERTED_LINK_LENGTH / 2
        start_pt = (point[0] - math.cos(angle) * half, point[1] - math.sin(angle) * half)
        end_pt = (point[0] + math.cos(angle) * half, point[1] + math.sin(angle) * half)

        inherited = self._pipe_attributes(pipe)
        start_id, end_id = pipe.endpoints

        self.store.snapshot()
        with self.store.batch():
            self._delete_link(link_id)
            j_start = self._create_node('junction', start_pt)
            j_end = self._create_node('junction', end_pt)
            self._create_link('pipe', start_id, j_start.id, pipe.geometry[:segment + 1] + [start_pt], **inherited)
            self._create_link('pipe', j_end.id, end_id, [end_pt] + pipe.geometry[segment + 1:], **inherited)
            link = self._create_link(link_type, j_start.id, j_end.id)
        self._clear_selection_if({link_id})
        return link, j_start, j_end

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> bool:
        restored = self.store.undo()
        if restored:
            self.clear_selection()
        return restored

    def redo(self) -> bool:
        restored = self.store.redo()
        if restored:
            self.clear_selection()
        return restored

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def rebuild_connectivity(self) -> None:
        """Recompute every node's connected_links from the link endpoints.

        Pumps and valves missing their visual link get one.
        """
        with self.store.batch():
            nodes = {n.id: n for n in self.store.nodes()}
            for node in nodes.values():
                node.connected_links = []
            for link in self.store.links():
                for node_id in dict.fromkeys(link.endpoints):
                    if node_id in nodes:
                        nodes[node_id].connected_links.append(link.id)
            for node in nodes.values():
                self.store.upsert(node)
            for link in self.store.links():
                if link.link_type in ('pump', 'valve') and self.store.get_visual_link(link.id) is None:
                    self.store.add_visual_link(self._visual_for(link))

    def isolated_nodes(self) -> List[str]:
        return [n.id for n in self.store.nodes() if not n.connected_links]

    def check_invariants(self) -> List[str]:
        """Return a description of every invariant violation (empty if consistent)."""
        problems: List[str] = []
        incident: Dict[str, List[str]] = {n.id: [] for n in self.store.nodes()}

        for link in self.store.links():
            for node_id in dict.fromkeys(link.endpoints):
                if node_id not in incident:
                    problems.append(f"Link {link.id} references missing node {node_id}")
                else:
                    incident[node_id].append(link.id)
            if self.store.has_node(link.start_node_id) and self.store.has_node(link.end_node_id):
                if link.geometry and (
                    link.geometry[0] != self.store.get_node(link.start_node_id).position
                    or link.geometry[-1] != self.store.get_node(link.end_node_id).position
                ):
                    problems.append(f"Link {link.id} geometry does not end on its nodes")

        for node in self.store.nodes():
            listed = node.connected_links
            if len(listed) != len(set(listed)):
                problems.append(f"Node {node.id} lists a link more than once")
            stale = set(listed) - set(incident[node.id])
            missing = set(incident[node.id]) - set(listed)
            if stale:
                problems.append(f"Node {node.id} lists stale links {sorted(stale)}")
            if missing:
                problems.append(f"Node {node.id} is missing links {sorted(missing)}")
        return problems

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_endpoints(self, start_id: str, end_id: str) -> None:
        for node_id in (start_id, end_id):
            if not self.store.has_node(node_id):
                raise InvalidTopology(f"Node {node_id!r} does not exist")
        if start_id == end_id:
            raise InvalidTopology(f"A link cannot start and end at the same node ({start_id})")

    def _incident_link_ids(self, node: NetworkNode) -> List[str]:
        ids = [lid for lid in node.connected_links if self.store.has_link(lid)]
        for link in self.store.links():
            if node.id in link.endpoints and link.id not in ids:
                ids.append(link.id)
        return ids

    def _attach(self, node: NetworkNode, link_id: str) -> None:
        if link_id not in node.connected_links:
            node.connected_links.append(link_id)
            self.store.upsert(node)

    def _detach(self, node: NetworkNode, link_id: str) -> None:
        if link_id in node.connected_links:
            node.connected_links = [lid for lid in node.connected_links if lid != link_id]
            self.store.upsert(node)

    def _sync_link_geometry(self, link: NetworkLink) -> None:
        start = self.store.get_node(link.start_node_id)
        end = self.store.get_node(link.end_node_id)
        if len(link.geometry) < 2:
            link.geometry = [start.position, end.position]
        else:
            link.geometry[0] = start.position
            link.geometry[-1] = end.position
        visual = self.store.get_visual_link(link.id)
        if visual is not None:
            visual.coordinates = [start.position, end.position]
        self._refresh_length(link)
        self.store.upsert(link)

    @staticmethod
    def _visual_for(link: NetworkLink) -> VisualLink:
        return VisualLink(
            id=f"{link.id}-visual",
            parent_link_id=link.id,
            link_type=link.link_type,
            coordinates=[link.geometry[0], link.geometry[-1]],
        )

    @staticmethod
    def _refresh_length(link: NetworkLink) -> None:
        if link.link_type == 'pipe':
            link.length = geometry_length(link.geometry)

    @staticmethod
    def _pipe_attributes(pipe: NetworkLink) -> Dict[str, Any]:
        return {
            'diameter': pipe.diameter,
            'roughness': pipe.roughness,
            'minor_loss': pipe.minor_loss,
            'status': pipe.status,
        }
