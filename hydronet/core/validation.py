"""
Pre-simulation checks over the Graph Store.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from .graph_store import GraphStore
from .models import NetworkNode

logger = logging.getLogger(__name__)

REQUIRED_PROPERTIES: Dict[str, List[str]] = {
    'junction': ['elevation'],
    'tank': ['elevation', 'init_level', 'diameter'],
    'reservoir': ['head'],
    'pipe': ['diameter', 'length', 'roughness'],
    'pump': [],
    'valve': ['diameter', 'valve_type', 'setting'],
}


@dataclass(frozen=True)
class ValidationIssue:
    level: str              # "error" | "warning"
    kind: str
    message: str
    entity_ids: List[str] = field(default_factory=list)
    hint: Optional[str] = None


@dataclass
class NetworkValidation:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.level == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.level == "warning"]

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_network(store: GraphStore) -> NetworkValidation:
    """
    Check a network for problems the solver is likely to reject.

    Orphaned nodes, disconnected components and missing properties are
    warnings. Dangling link references, broken geometries and pumps without
    a curve or power are errors.
    """
    result = NetworkValidation()

    orphans = find_orphaned_nodes(store)
    if orphans:
        result.issues.append(ValidationIssue(
            "warning", "orphaned_nodes",
            f"{len(orphans)} orphaned node(s) found (no connected links)",
            orphans,
        ))

    components = find_components(store)
    if len(components) > 1:
        result.issues.append(ValidationIssue(
            "warning", "disconnected_network",
            f"Network has {len(components)} disconnected components",
        ))

    dangling = [
        link.id for link in store.links()
        if not store.has_node(link.start_node_id) or not store.has_node(link.end_node_id)
    ]
    if dangling:
        result.issues.append(ValidationIssue(
            "error", "missing_nodes",
            f"{len(dangling)} link(s) have missing node references",
            dangling,
        ))

    invalid = find_invalid_geometries(store)
    if invalid:
        result.issues.append(ValidationIssue(
            "error", "invalid_geometry",
            f"{len(invalid)} feature(s) have invalid geometries",
            invalid,
        ))

    missing = find_missing_properties(store)
    if missing:
        result.issues.append(ValidationIssue(
            "warning", "missing_properties",
            f"{len(missing)} feature(s) missing required properties",
            missing,
            hint="Fill in the highlighted attributes before running a simulation.",
        ))

    unpowered = find_unpowered_pumps(store)
    if unpowered:
        result.issues.append(ValidationIssue(
            "error", "pump_without_curve",
            f"{len(unpowered)} pump(s) have neither a head curve nor a power rating",
            unpowered,
            hint="Set curve_id or power on each pump.",
        ))

    if not any(n.node_type in ('tank', 'reservoir') for n in store.nodes()) and store.node_count:
        result.issues.append(ValidationIssue(
            "warning", "no_source",
            "Network has no tank or reservoir; the solver needs a fixed-head node",
        ))

    logger.info(f"Validation: {len(result.errors)} error(s), {len(result.warnings)} warning(s)")
    return result


def find_orphaned_nodes(store: GraphStore) -> List[str]:
    return [n.id for n in store.nodes() if not n.connected_links]


def find_components(store: GraphStore) -> List[List[str]]:
    """Connected components of the node graph, found by BFS over connected_links."""
    visited = set()
    components: List[List[str]] = []
    for start in store.nodes():
        if start.id in visited:
            continue
        component = []
        queue = deque([start.id])
        visited.add(start.id)
        while queue:
            node_id = queue.popleft()
            component.append(node_id)
            node: NetworkNode = store.get_node(node_id)
            for link_id in node.connected_links:
                if not store.has_link(link_id):
                    continue
                other = store.get_link(link_id).other_end(node_id)
                if store.has_node(other) and other not in visited:
                    visited.add(other)
                    queue.append(other)
        components.append(component)
    return components


def find_invalid_geometries(store: GraphStore) -> List[str]:
    bad = []
    for node in store.nodes():
        if not np.all(np.isfinite(node.position)):
            bad.append(node.id)
    for link in store.links():
        coords = np.asarray(link.geometry, dtype=float)
        if len(coords) < 2 or not np.all(np.isfinite(coords)):
            bad.append(link.id)
    return bad


def find_unpowered_pumps(store: GraphStore) -> List[str]:
    """Pumps with neither a head curve nor a fixed power (EPANET rejects these)."""
    return [
        link.id for link in store.links()
        if link.link_type == 'pump' and link.curve_id is None and link.power is None
    ]


def find_missing_properties(store: GraphStore) -> List[str]:
    missing = []
    for entity in store:
        kind = getattr(entity, 'node_type', None) or getattr(entity, 'link_type', None)
        if any(getattr(entity, prop, None) is None for prop in REQUIRED_PROPERTIES.get(kind, [])):
            missing.append(entity.id)
    return missing
