"""
Vertex Index: addressable points of every pipe's geometry.

Purely derived from the GraphStore link set and recomputed from scratch
whenever a link changes. Never patched incrementally.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .graph_store import GraphStore
from .models import Coordinate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VertexRecord:
    parent_link_id: str
    index: int
    coordinate: Coordinate
    is_endpoint: bool


def build_vertex_index(store: GraphStore) -> List[VertexRecord]:
    """One record per coordinate of every non-preview pipe, in link order."""
    records: List[VertexRecord] = []
    for link in store.links():
        if link.link_type != 'pipe' or link.is_preview:
            continue
        last = len(link.geometry) - 1
        for index, coord in enumerate(link.geometry):
            records.append(VertexRecord(
                parent_link_id=link.id,
                index=index,
                coordinate=coord,
                is_endpoint=index in (0, last),
            ))
    return records


class VertexIndex:
    """Keeps `records` in sync with a GraphStore by rebuilding on link changes."""
    def __init__(self, store: GraphStore):
        self.store = store
        self.records: List[VertexRecord] = []
        self._tree: Optional[cKDTree] = None
        self.rebuild()
        store.subscribe(self._on_change)

    def _on_change(self, changed_ids: Set[str], links_changed: bool) -> None:
        if links_changed:
            self.rebuild()

    def rebuild(self) -> List[VertexRecord]:
        self.records = build_vertex_index(self.store)
        self._tree = None
        logger.debug(f"Vertex index rebuilt: {len(self.records)} vertices")
        return self.records

    def detach(self) -> None:
        self.store.unsubscribe(self._on_change)

    def for_link(self, link_id: str) -> List[VertexRecord]:
        return [r for r in self.records if r.parent_link_id == link_id]

    def nearest_vertex(
        self, coordinate: Coordinate, tolerance: float
    ) -> Optional[Tuple[VertexRecord, float]]:
        """Closest vertex within `tolerance` map units, or None."""
        if not self.records:
            return None
        if self._tree is None:
            self._tree = cKDTree(np.asarray([r.coordinate for r in self.records], dtype=float))
        dist, best = self._tree.query(np.asarray(coordinate, dtype=float), distance_upper_bound=tolerance)
        if not np.isfinite(dist):
            return None
        return self.records[int(best)], float(dist)

    def __len__(self) -> int:
        return len(self.records)
