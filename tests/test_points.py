"""Tests for the delivery points formula."""

from datetime import UTC, datetime, timedelta

import pytest

from wastewarden.db.models.base import DeliveryPriority, FoodCondition, Urgency
from wastewarden.services.deliveries import calculate_points, priority_for

ASSIGNED = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
ESTIMATE = ASSIGNED + timedelta(hours=1)


class TestCalculatePoints:
    """Base 10 + priority + condition + on-time - 2 per issue, floored at 0."""

    def test_best_case(self):
        points = calculate_points(
            DeliveryPriority.URGENT,
            FoodCondition.EXCELLENT,
            ESTIMATE - timedelta(minutes=5),
            ESTIMATE,
            0,
        )
        assert points == 45

    def test_one_issue_costs_two(self):
        points = calculate_points(
            DeliveryPriority.URGENT,
            FoodCondition.EXCELLENT,
            ESTIMATE - timedelta(minutes=5),
            ESTIMATE,
            1,
        )
        assert points == 43

    def test_completion_at_estimate_is_on_time(self):
        points = calculate_points(DeliveryPriority.LOW, None, ESTIMATE, ESTIMATE, 0)
        assert points == 20

    def test_late_completion(self):
        points = calculate_points(
            DeliveryPriority.HIGH,
            FoodCondition.GOOD,
            ESTIMATE + timedelta(seconds=1),
            ESTIMATE,
            0,
        )
        assert points == 25

    @pytest.mark.parametrize(
        ("priority", "expected"),
        [
            (DeliveryPriority.URGENT, 25),
            (DeliveryPriority.HIGH, 20),
            (DeliveryPriority.MEDIUM, 15),
            (DeliveryPriority.LOW, 10),
        ],
    )
    def test_priority_bonus(self, priority, expected):
        late = ESTIMATE + timedelta(hours=1)
        assert calculate_points(priority, None, late, ESTIMATE, 0) == expected

    @pytest.mark.parametrize(
        ("condition", "bonus"),
        [
            (FoodCondition.EXCELLENT, 10),
            (FoodCondition.GOOD, 5),
            (FoodCondition.FAIR, 0),
            (FoodCondition.POOR, 0),
        ],
    )
    def test_condition_bonus(self, condition, bonus):
        late = ESTIMATE + timedelta(hours=1)
        assert calculate_points(DeliveryPriority.LOW, condition, late, ESTIMATE, 0) == 10 + bonus

    def test_never_negative(self):
        late = ESTIMATE + timedelta(hours=1)
        assert calculate_points(DeliveryPriority.LOW, FoodCondition.POOR, late, ESTIMATE, 20) == 0

    def test_missing_estimate_defaults_to_an_hour_after_assignment(self):
        on_time = calculate_points(
            DeliveryPriority.LOW,
            None,
            ASSIGNED + timedelta(minutes=59),
            None,
            0,
            assigned_at=ASSIGNED,
        )
        late = calculate_points(
            DeliveryPriority.LOW,
            None,
            ASSIGNED + timedelta(minutes=61),
            None,
            0,
            assigned_at=ASSIGNED,
        )
        assert (on_time, late) == (20, 10)

    def test_no_estimate_and_no_assignment_is_late(self):
        assert calculate_points(DeliveryPriority.LOW, None, ASSIGNED, None, 0) == 10


class TestPriorityFor:
    @pytest.mark.parametrize(
        ("urgency", "priority"),
        [
            (Urgency.CRITICAL, DeliveryPriority.URGENT),
            (Urgency.HIGH, DeliveryPriority.HIGH),
            (Urgency.MEDIUM, DeliveryPriority.MEDIUM),
            (Urgency.LOW, DeliveryPriority.MEDIUM),
        ],
    )
    def test_mapping(self, urgency, priority):
        assert priority_for(urgency) == priority
