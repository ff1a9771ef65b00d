"""Webhook retry schedule and attempt state machine."""

import pytest

from paysettle.services.webhooks.retry import (
    MAX_ATTEMPTS,
    PRODUCTION_SCHEDULE,
    TEST_SCHEDULE,
    backoff_seconds,
    next_delivery_state,
    schedule_for,
)


@pytest.mark.parametrize("attempt,expected", [(1, 60), (2, 300), (3, 1800), (4, 7200), (5, 7200), (9, 7200)])
def test_production_backoff(attempt, expected):
    assert backoff_seconds(attempt, PRODUCTION_SCHEDULE) == expected


def test_test_schedule_is_selected_by_flag():
    assert schedule_for(True) == TEST_SCHEDULE
    assert schedule_for(False) == PRODUCTION_SCHEDULE
    assert [backoff_seconds(n, TEST_SCHEDULE) for n in range(1, 5)] == [5, 10, 15, 20]


def test_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        backoff_seconds(0)


def test_delivered_attempt_finishes_log():
    assert next_delivery_state(1, delivered=True) == ("success", None)
    assert next_delivery_state(MAX_ATTEMPTS, delivered=True) == ("success", None)


def test_failed_attempts_stay_pending_until_the_fifth():
    states = [next_delivery_state(n, delivered=False) for n in range(1, MAX_ATTEMPTS + 1)]

    assert states == [
        ("pending", 60),
        ("pending", 300),
        ("pending", 1800),
        ("pending", 7200),
        ("failed", None),
    ]
