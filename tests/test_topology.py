"""
Tests for the Topology Manager: connectivity invariants under editing.
"""

import numpy as np
import pytest

from hydronet.core.exceptions import InvalidTopology, NotFound
from hydronet.core.graph_store import GraphStore
from hydronet.core.models import NetworkNode
from hydronet.core.topology import TopologyManager, closest_point_on_polyline


def _star(manager):
    """Hub H with spokes to A, B, C."""
    manager.add_node('junction', (0, 0), node_id='H')
    for name, pos in (('A', (10, 0)), ('B', (0, 10)), ('C', (-10, 0))):
        manager.add_node('junction', pos, node_id=name)
        manager.add_link('pipe', 'H', name, link_id=f"P{name}")


class TestCreation:

    def test_generated_ids_use_prefix_and_counter(self, manager):
        j1 = manager.add_node('junction', (0, 0))
        j2 = manager.add_node('junction', (1, 0))
        t = manager.add_node('tank', (2, 0))
        p = manager.add_link('pipe', j1.id, j2.id)
        pu = manager.add_link('pump', j2.id, t.id)
        assert (j1.id, j2.id, t.id, p.id, pu.id) == ('J-100', 'J-101', 'T-100', 'P-100', 'PU-100')

    def test_counters_skip_past_loaded_ids(self):
        store = GraphStore()
        store.upsert(NetworkNode(id='J-150', node_type='junction', position=(0, 0)))
        manager = TopologyManager(store)
        assert manager.add_node('junction', (1, 1)).id == 'J-151'

    def test_generated_id_skips_entities_written_behind_the_manager(self, manager):
        manager.store.upsert(NetworkNode(id='J-100', node_type='junction', position=(5, 5)))
        node = manager.add_node('junction', (1, 1))
        assert node.id == 'J-101'
        assert manager.store.get_node('J-100').position == (5.0, 5.0)

    def test_component_defaults_applied(self, manager):
        node = manager.add_node('junction', (0, 0))
        assert node.elevation == 100.0
        assert node.demand == 0.0
        assert node.connected_links == []

    def test_unknown_attributes_go_to_properties(self, manager):
        node = manager.add_node('junction', (0, 0), zone='north')
        assert node.properties == {'zone': 'north'}

    def test_link_geometry_snaps_to_nodes_and_sets_length(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        manager.add_node('junction', (30, 40), node_id='B')
        link = manager.add_link('pipe', 'A', 'B', geometry=[(1, 1), (30, 0), (29, 39)])
        assert link.geometry[0] == (0.0, 0.0)
        assert link.geometry[-1] == (30.0, 40.0)
        assert link.length == pytest.approx(30.0 + 40.0)
        assert link.id in manager.store.get_node('A').connected_links
        assert link.id in manager.store.get_node('B').connected_links

    def test_pump_and_valve_get_visual_link(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        manager.add_node('junction', (5, 0), node_id='B')
        pump = manager.add_link('pump', 'A', 'B')
        visual = manager.store.get_visual_link(pump.id)
        assert visual.id == f"{pump.id}-visual"
        assert visual.coordinates == [(0.0, 0.0), (5.0, 0.0)]

    def test_link_to_unknown_node_rejected_without_mutation(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        before = len(manager.store)
        with pytest.raises(InvalidTopology):
            manager.add_link('pipe', 'A', 'ghost')
        assert len(manager.store) == before
        assert manager.store.get_node('A').connected_links == []

    def test_self_loop_rejected(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        with pytest.raises(InvalidTopology):
            manager.add_link('pipe', 'A', 'A')

    def test_reused_id_rejected_without_snapshot(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        assert manager.store.undo()
        manager.store.redo()
        depth = len(manager.store._past)
        with pytest.raises(InvalidTopology):
            manager.add_node('junction', (1, 1), node_id='A')
        assert len(manager.store._past) == depth


class TestDeletion:

    def test_delete_node_cascades(self, two_junctions):
        """Deleting J1 removes P1 and strips it from J2."""
        deleted = two_junctions.delete_node('J1')
        store = two_junctions.store
        assert deleted == {'J1', 'P1'}
        assert 'P1' not in store
        assert 'P1' not in store.get_node('J2').connected_links
        assert two_junctions.check_invariants() == []

    def test_cascade_completeness(self, manager):
        _star(manager)
        manager.delete_node('H')
        store = manager.store
        for name in 'ABC':
            assert f"P{name}" not in store
            assert store.get_node(name).connected_links == []

    def test_delete_missing_node_raises(self, manager):
        with pytest.raises(NotFound):
            manager.delete_node('nope')

    def test_delete_link_keeps_isolated_nodes(self, two_junctions):
        deleted = two_junctions.delete_link('P1')
        store = two_junctions.store
        assert deleted == {'P1'}
        assert store.has_node('J1') and store.has_node('J2')
        assert sorted(two_junctions.isolated_nodes()) == ['J1', 'J2']

    def test_cascade_preview_is_read_only(self, manager):
        _star(manager)
        preview = manager.get_cascade_preview('H')
        assert preview.will_cascade
        assert preview.link_count == 3
        assert sorted(preview.link_ids) == ['PA', 'PB', 'PC']
        assert 'PA' in manager.store
        assert not manager.get_cascade_preview('PA').will_cascade

    def test_delete_many_tolerates_cascaded_ids(self, manager):
        _star(manager)
        deleted = manager.delete_many(['H', 'PA', 'B'])
        assert deleted == {'H', 'PA', 'PB', 'PC', 'B'}
        assert manager.check_invariants() == []

    def test_delete_many_with_unknown_id_changes_nothing(self, manager):
        _star(manager)
        with pytest.raises(NotFound):
            manager.delete_many(['PA', 'ghost'])
        assert 'PA' in manager.store

    def test_visual_link_removed_before_primary(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        manager.add_node('junction', (5, 0), node_id='B')
        valve = manager.add_link('valve', 'A', 'B')
        store = manager.store
        seen = []
        original_remove = store.remove

        def tracking_remove(entity_id):
            seen.append((entity_id, store.get_visual_link(entity_id)))
            return original_remove(entity_id)

        store.remove = tracking_remove
        manager.delete_node('A')
        assert seen[0] == (valve.id, None)

    def test_selection_cleared_when_selected_id_deleted(self, two_junctions):
        two_junctions.select(['P1'])
        two_junctions.delete_node('J1')
        assert two_junctions.selection == []

    def test_selection_kept_when_unrelated(self, manager):
        _star(manager)
        manager.select(['A'])
        manager.delete_link('PB')
        assert manager.selection == ['A']

    def test_ids_not_reused_after_delete(self, manager):
        node = manager.add_node('junction', (0, 0))
        manager.delete_node(node.id)
        assert manager.add_node('junction', (0, 0)).id != node.id


class TestReconnect:

    def test_reconnect_moves_connectivity(self, manager):
        _star(manager)
        manager.reconnect_link('PA', new_end='B')
        store = manager.store
        assert store.get_link('PA').endpoints == ('H', 'B')
        assert 'PA' not in store.get_node('A').connected_links
        assert 'PA' in store.get_node('B').connected_links
        assert store.get_link('PA').geometry[-1] == store.get_node('B').position
        assert manager.check_invariants() == []

    def test_swapping_endpoints_keeps_bends_in_order(self, manager):
        manager.add_node('junction', (0, 0), node_id='A')
        manager.add_node('junction', (100, 0), node_id='B')
        bends = [(0, 0), (30, 10), (70, -10), (100, 0)]
        manager.add_link('pipe', 'A', 'B', geometry=bends, link_id='P')

        link = manager.reconnect_link('P', new_start='B', new_end='A')
        assert link.endpoints == ('B', 'A')
        assert link.geometry == [(100.0, 0.0), (70.0, -10.0), (30.0, 10.0), (0.0, 0.0)]
        assert manager.check_invariants() == []

    def test_reconnect_to_unknown_node_rejected(self, manager):
        _star(manager)
        with pytest.raises(InvalidTopology):
            manager.reconnect_link('PA', new_start='ghost')
        assert manager.store.get_link('PA').endpoints == ('H', 'A')

    def test_reconnect_self_loop_rejected(self, manager):
        _star(manager)
        with pytest.raises(InvalidTopology):
            manager.reconnect_link('PA', new_end='H')
        assert manager.check_invariants() == []


class TestGeometryEdits:

    def test_move_node_drags_link_endpoints(self, two_junctions):
        two_junctions.move_node('J2', (0.0, 50.0))
        link = two_junctions.store.get_link('P1')
        assert link.geometry[-1] == (0.0, 50.0)
        assert link.length == pytest.approx(50.0)

    def test_reverse_link(self, two_junctions):
        link = two_junctions.reverse_link('P1')
        assert link.endpoints == ('J2', 'J1')
        assert link.geometry[0] == (100.0, 0.0)
        assert two_junctions.check_invariants() == []

    def test_add_and_delete_vertex(self, two_junctions):
        index = two_junctions.add_vertex('P1', (50.0, 5.0))
        link = two_junctions.store.get_link('P1')
        assert index == 1
        assert link.geometry[1] == (50.0, 0.0)

        with pytest.raises(InvalidTopology):
            two_junctions.delete_vertex('P1', 0)
        assert two_junctions.delete_vertex('P1', 1) == (50.0, 0.0)
        with pytest.raises(InvalidTopology):
            two_junctions.delete_vertex('P1', 1)

    def test_split_pipe(self, two_junctions):
        node, first, second = two_junctions.split_pipe('P1', (40.0, 3.0))
        store = two_junctions.store
        assert 'P1' not in store
        assert node.position == (40.0, 0.0)
        assert first.endpoints == ('J1', node.id)
        assert second.endpoints == (node.id, 'J2')
        assert first.length + second.length == pytest.approx(100.0)
        assert first.diameter == second.diameter == 100.0
        assert two_junctions.check_invariants() == []

    def test_split_at_endpoint_rejected(self, two_junctions):
        with pytest.raises(InvalidTopology):
            two_junctions.split_pipe('P1', (-5.0, 0.0))
        assert 'P1' in two_junctions.store

    def test_insert_valve_on_pipe(self, two_junctions):
        valve, j_start, j_end = two_junctions.insert_link_on_pipe('P1', (50.0, 0.0), 'valve')
        assert valve.link_type == 'valve'
        assert j_start.position == pytest.approx((49.5, 0.0))
        assert j_end.position == pytest.approx((50.5, 0.0))
        assert two_junctions.store.get_visual_link(valve.id) is not None
        assert len(two_junctions.store.links()) == 3
        assert two_junctions.check_invariants() == []

    def test_closest_point_on_polyline(self):
        segment, point, dist = closest_point_on_polyline([(0, 0), (10, 0), (10, 10)], (12, 5))
        assert segment == 1
        assert point == (10.0, 5.0)
        assert dist == pytest.approx(2.0)


class TestUndo:

    def test_undo_restores_cascade(self, two_junctions):
        two_junctions.delete_node('J1')
        assert two_junctions.undo()
        store = two_junctions.store
        assert 'J1' in store and 'P1' in store
        assert two_junctions.check_invariants() == []
        assert two_junctions.redo()
        assert 'J1' not in store


class TestRebuildConnectivity:

    def test_rebuild_from_endpoints(self, manager):
        _star(manager)
        for node in manager.store.nodes():
            node.connected_links = []
        assert manager.check_invariants() != []
        manager.rebuild_connectivity()
        assert manager.check_invariants() == []


class TestInvariantFuzzing:
    """Random add / delete / reconnect sequences keep every invariant after every step."""

    @pytest.mark.parametrize("seed", range(5))
    def test_random_operations(self, seed):
        rng = np.random.default_rng(seed)
        manager = TopologyManager(GraphStore())
        store = manager.store
        for _ in range(10):
            manager.add_node('junction', tuple(rng.uniform(0, 100, 2)))

        for _ in range(200):
            nodes = [n.id for n in store.nodes()]
            links = [l.id for l in store.links()]
            op = rng.integers(0, 5)
            try:
                if op == 0:
                    manager.add_node(str(rng.choice(['junction', 'tank', 'reservoir'])),
                                     tuple(rng.uniform(0, 100, 2)))
                elif op == 1 and len(nodes) >= 2:
                    a, b = rng.choice(nodes, 2, replace=False)
                    manager.add_link(str(rng.choice(['pipe', 'pump', 'valve'])), str(a), str(b))
                elif op == 2 and nodes:
                    manager.delete_node(str(rng.choice(nodes)))
                elif op == 3 and links:
                    manager.delete_link(str(rng.choice(links)))
                elif op == 4 and links and nodes:
                    manager.reconnect_link(str(rng.choice(links)), new_end=str(rng.choice(nodes)))
            except InvalidTopology:
                pass
            assert manager.check_invariants() == []
            assert {v.parent_link_id for v in store.visual_links()} <= {l.id for l in store.links()}
