"""Unit tests for retry back-off."""

from __future__ import annotations

from gdbuild.jobs.dispatcher import compute_retry_delay


def test_backoff_grows_geometrically_and_is_capped() -> None:
  delays = [compute_retry_delay(attempt, retry_delay_seconds=2.0, backoff_multiplier=2.0, max_delay=60) for attempt in range(1, 8)]
  assert delays == [2.0, 4.0, 8.0, 16.0, 32.0, 60, 60]


def test_multiplier_of_one_keeps_delay_flat() -> None:
  assert compute_retry_delay(5, retry_delay_seconds=1.5, backoff_multiplier=1.0, max_delay=60) == 1.5
