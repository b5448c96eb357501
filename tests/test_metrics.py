from __future__ import annotations

import time

from presence.metrics import (
    increment_deduplicated,
    increment_escalations,
    increment_reconnect_attempts,
    metrics_snapshot,
    record_error,
    record_redemption,
    reset_metrics_for_tests,
)


def test_metrics_snapshot_counts():
    reset_metrics_for_tests()
    record_redemption("recorded")
    record_redemption("recorded")
    record_redemption("already_redeemed")
    record_redemption("expired_credential")
    record_redemption("store_unavailable")
    increment_deduplicated()
    increment_escalations(2)
    increment_reconnect_attempts(3)
    record_error(time.time() - 4000)  # pruned from 1h window
    record_error(time.time())

    snap = metrics_snapshot()
    assert snap["redemptions_recorded"] == 2
    assert snap["redemptions_conflicted"] == 1
    assert snap["redemptions_failed"] == 2
    assert snap["notifications_deduplicated"] == 1
    assert snap["escalations_sent"] == 2
    assert snap["reconnect_attempts"] == 3
    assert snap["errors_last_hour"] == 1


def test_negative_increments_ignored():
    increment_escalations(-5)
    assert metrics_snapshot()["escalations_sent"] == 0
