"""
Tests for simulation history, playback cursor, statistics and scenarios.
"""

import math

import pandas as pd
import pytest

from hydronet.core.config import SCENARIO_COLORS
from hydronet.core.exceptions import NotFound
from hydronet.core.history import (
    LinkResult,
    NodeResult,
    PlaybackCursor,
    ScenarioStore,
    SimulationHistory,
    SimulationSnapshot,
    export_report_csv,
    snapshot_stats,
)


def _snapshot(t, pressure=50.0, flow=2.0):
    return SimulationSnapshot(
        time=t,
        nodes={
            'J1': NodeResult(head=100.0, pressure=pressure, demand=1.0),
            'J2': NodeResult(head=90.0, pressure=pressure - 10, demand=0.5),
        },
        links={'P1': LinkResult(flow=flow, velocity=0.5, headloss=0.0123, status="Open")},
    )


@pytest.fixture
def history():
    times = [0, 3600, 7200]
    return SimulationHistory(times, [_snapshot(t, 50.0 + i, -1.0 - i) for i, t in enumerate(times)])


class TestHistory:

    def test_lengths_must_match(self):
        with pytest.raises(ValueError):
            SimulationHistory([0, 3600], [_snapshot(0)])

    def test_must_not_be_empty(self):
        with pytest.raises(ValueError):
            SimulationHistory([], [])

    def test_timestamps_non_decreasing(self):
        with pytest.raises(ValueError):
            SimulationHistory([3600, 0], [_snapshot(3600), _snapshot(0)])
        assert len(SimulationHistory([0, 0], [_snapshot(0), _snapshot(0)])) == 2

    def test_node_series(self, history):
        series = history.node_series('J1', 'pressure')
        assert isinstance(series, pd.Series)
        assert list(series.index) == [0, 3600, 7200]
        assert list(series) == [50.0, 51.0, 52.0]

    def test_missing_element_gives_nan(self, history):
        assert history.node_series('ghost', 'head').isna().all()

    def test_link_series_magnitude(self, history):
        assert list(history.link_series('P1', 'flow')) == [-1.0, -2.0, -3.0]
        assert list(history.link_series('P1', 'flow', magnitude=True)) == [1.0, 2.0, 3.0]

    def test_unknown_field_rejected(self, history):
        with pytest.raises(ValueError):
            history.node_series('J1', 'flow')

    def test_to_frame(self, history):
        frame = history.to_frame('node', 'pressure')
        assert frame.shape == (3, 2)
        assert frame.loc[3600, 'J2'] == 41.0

    def test_dict_round_trip(self, history):
        restored = SimulationHistory.from_dict(history.to_dict())
        assert restored.timestamps == history.timestamps
        assert restored.snapshots == history.snapshots


class TestPlaybackCursor:

    def test_advance_wraps_to_start(self, history):
        cursor = PlaybackCursor(history)
        visited = [cursor.advance() for _ in range(len(history))]
        assert visited == [1, 2, 0]
        assert cursor.current is history[0]

    def test_out_of_range_seek_ignored(self, history):
        cursor = PlaybackCursor(history)
        cursor.set_index(2)
        cursor.set_index(-1)
        assert cursor.current_index == 2
        cursor.set_index(len(history))
        assert cursor.current_index == 2
        assert cursor.current_time == 7200


class TestStats:

    def test_snapshot_stats(self):
        stats = snapshot_stats(_snapshot(0, pressure=30.0))
        assert (stats.min_pressure, stats.max_pressure) == (20.0, 30.0)
        assert stats.max_velocity == 0.5

    def test_empty_snapshot_stats(self):
        stats = snapshot_stats(SimulationSnapshot(0, {}, {}))
        assert stats.min_pressure == stats.max_velocity == 0.0

    def test_report_csv(self, history, tmp_path):
        path = export_report_csv(history, tmp_path / "out" / "report.csv")
        report = pd.read_csv(path)
        assert len(report) == 3 * 3
        assert list(report['time_hr'].unique()) == [0.0, 1.0, 2.0]
        link_rows = report[report['kind'] == 'link']
        assert set(link_rows['status']) == {"Open"}
        assert math.isnan(link_rows['pressure'].iloc[0])


class TestScenarioStore:

    def test_colors_cycle(self, history):
        scenarios = ScenarioStore()
        added = [scenarios.add_scenario(f"run {i}", history) for i in range(5)]
        assert [s.color for s in added] == SCENARIO_COLORS + SCENARIO_COLORS[:1]

    def test_toggle_and_remove(self, history):
        scenarios = ScenarioStore()
        first = scenarios.add_scenario("base", history)
        second = scenarios.add_scenario("closed valve", history)
        assert scenarios.toggle_visibility(first.id) is False
        assert scenarios.visible() == [second]

        scenarios.remove_scenario(second.id)
        with pytest.raises(NotFound):
            scenarios.remove_scenario(second.id)
        scenarios.clear()
        assert scenarios.scenarios == []

    def test_compare(self, history):
        scenarios = ScenarioStore()
        scenarios.add_scenario("a", history)
        scenarios.add_scenario("b", history)
        frame = scenarios.compare('node', 'J1', 'pressure')
        assert list(frame.columns) == ['a', 'b']
        assert list(frame['b']) == [50.0, 51.0, 52.0]
