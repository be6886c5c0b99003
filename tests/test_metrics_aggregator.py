"""
Tests for conversion / dropoff metrics derived from reached-sets.
"""

import pytest

from core.calculator import aggregate_metrics, format_duration, percentage
from models import Filter, Step, StepType


def _steps(count: int) -> list[Step]:
    return [Step(index=i + 1, type=StepType.EVENT, target=f"e{i + 1}", name=f"Step {i + 1}") for i in range(count)]


@pytest.mark.basic
class TestMetricsAggregator:
    def test_three_session_scenario(self):
        result = aggregate_metrics([{"A", "B", "C"}, {"A", "B"}, {"A"}], _steps(3))

        assert result.total_users_entered == 3
        assert result.total_users_completed == 1
        assert result.overall_conversion_rate == 33.33

        first, second, third = result.steps_analytics
        assert (first.users, first.conversion_rate, first.dropoffs, first.dropoff_rate) == (3, 100.0, 0, 0.0)
        assert (second.users, second.conversion_rate, second.dropoffs, second.dropoff_rate) == (2, 66.67, 1, 33.33)
        assert (third.users, third.conversion_rate, third.dropoffs, third.dropoff_rate) == (1, 50.0, 1, 50.0)
        assert all(s.total_users == 3 for s in result.steps_analytics)

        assert result.biggest_dropoff_step == 3
        assert result.biggest_dropoff_rate == 50.0

    def test_step_names_and_numbers(self):
        result = aggregate_metrics([{"A"}, {"A"}], _steps(2))

        assert [s.step_number for s in result.steps_analytics] == [1, 2]
        assert [s.step_name for s in result.steps_analytics] == ["Step 1", "Step 2"]

    def test_biggest_dropoff_tie_resolves_to_earliest_step(self):
        result = aggregate_metrics([{"A", "B", "C", "D"}, {"A", "B"}, {"A"}], _steps(3))

        assert result.steps_analytics[1].dropoff_rate == 50.0
        assert result.steps_analytics[2].dropoff_rate == 50.0
        assert result.biggest_dropoff_step == 2

    def test_completion_time_is_not_computed(self):
        result = aggregate_metrics([{"A"}, {"A"}], _steps(2))

        assert result.avg_completion_time == 0
        assert result.avg_completion_time_formatted == "0s"
        assert all(s.avg_time_to_complete == 0 for s in result.steps_analytics)

    def test_dropped_filters_are_reported(self):
        dropped = [Filter(field="not_a_real_field", operator="equals", value="x")]

        result = aggregate_metrics([{"A"}, set()], _steps(2), dropped)

        assert result.dropped_filters == dropped
        assert result.to_dict()["dropped_filters"] == [
            {"field": "not_a_real_field", "operator": "equals", "value": "x"}
        ]


@pytest.mark.edge_case
class TestMetricsEdgeCases:
    def test_no_sessions(self):
        result = aggregate_metrics([set(), set(), set()], _steps(3))

        assert result.total_users_entered == 0
        assert result.total_users_completed == 0
        assert result.overall_conversion_rate == 0
        assert [s.users for s in result.steps_analytics] == [0, 0, 0]
        assert result.steps_analytics[0].conversion_rate == 100.0
        assert [s.conversion_rate for s in result.steps_analytics[1:]] == [0.0, 0.0]
        assert [s.dropoff_rate for s in result.steps_analytics] == [0.0, 0.0, 0.0]
        assert result.biggest_dropoff_step == 2
        assert result.biggest_dropoff_rate == 0.0

    def test_goal_converts_fully(self):
        result = aggregate_metrics([{"A", "B"}], _steps(1))

        assert result.overall_conversion_rate == 100.0
        assert result.biggest_dropoff_step == 1
        assert result.biggest_dropoff_rate == 0.0

    def test_result_serialises_without_nulls(self):
        data = aggregate_metrics([set(), set()], _steps(2)).to_dict()

        assert None not in data.values()
        assert len(data["steps_analytics"]) == 2


@pytest.mark.basic
class TestHelpers:
    @pytest.mark.parametrize(
        "numerator, denominator, expected",
        [(2, 3, 66.67), (1, 3, 33.33), (1, 2, 50.0), (1, 32, 3.13), (1, 8, 12.5), (5, 0, 0.0), (0, 0, 0.0)],
    )
    def test_percentage(self, numerator, denominator, expected):
        assert percentage(numerator, denominator) == expected

    @pytest.mark.parametrize(
        "seconds, expected", [(0, "0s"), (45, "45s"), (65, "1m 5s"), (3720, "1h 2m")]
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_half_hundredths_round_up(self):
        reached = [{f"s{i}" for i in range(32)}, {"s0"}]

        result = aggregate_metrics(reached, _steps(2))

        assert result.steps_analytics[1].conversion_rate == 3.13
        assert result.steps_analytics[1].dropoff_rate == 96.88
        assert result.overall_conversion_rate == 3.13
