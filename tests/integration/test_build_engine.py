"""End-to-end build scenarios against a fake GDevelop CLI."""

from __future__ import annotations

import zipfile
from pathlib import Path

import anyio
import pytest

from gdbuild.core.errors import AdmissionRejectedError, EngineNotRunningError, GameJsonValidationError, InvalidSessionError, JobNotFoundError
from gdbuild.engine import BuildEngine
from gdbuild.services.events import RecordingUsageEventSink
from tests.support import make_game, wait_for_terminal, wait_until


@pytest.mark.anyio
async def test_preview_cache_miss_runs_cli_once(settings, cli_calls) -> None:
  """A never-seen document is built exactly once and yields a preview directory."""
  events = RecordingUsageEventSink()
  async with BuildEngine(settings, events=events) as engine:
    job = await engine.submit("preview", "session-a", make_game("Fresh Game"))
    assert job.cache_hit is False
    job = await wait_for_terminal(engine.status, job.job_id)

  assert job.status == "succeeded"
  assert job.attempt == 1
  assert job.result_path is not None
  assert (Path(job.result_path) / "index.html").is_file()
  assert Path(job.stdout_ref).read_text().strip() == "Export completed"
  assert cli_calls() == ["ok"]
  [event] = events.events
  assert (event.kind, event.success, event.attempts) == ("preview", True, 1)


@pytest.mark.anyio
async def test_missing_binary_fails_without_retry(settings, cli_calls) -> None:
  events = RecordingUsageEventSink()
  async with BuildEngine(settings, events=events) as engine:
    job = await engine.submit("preview", "session-b", make_game("Broken", behavior="enoent"))
    job = await wait_for_terminal(engine.status, job.job_id)

  assert job.status == "failed"
  assert job.attempt == 1
  assert job.exit_code == 1
  assert job.last_error.category == "missing_binary"
  assert job.last_error.is_retryable() is False
  assert job.debug["stderr"] == "ENOENT: gdexport not found"
  assert cli_calls() == ["enoent"]
  assert events.events[0].error_category == "missing_binary"


@pytest.mark.anyio
async def test_timeouts_are_retried_until_success(make_settings, cli_calls) -> None:
  settings = make_settings(max_retries="3")
  async with BuildEngine(settings) as engine:
    job = await engine.submit("preview", "session-c", make_game("Slow Start", behavior="timeout-twice"))
    job = await wait_for_terminal(engine.status, job.job_id)

  assert job.status == "succeeded"
  assert job.attempt == 3
  assert job.max_attempts == 4
  assert cli_calls() == ["timeout-twice"] * 3


@pytest.mark.anyio
async def test_retryable_failures_stop_at_max_attempts(make_settings, cli_calls) -> None:
  settings = make_settings(max_retries="1")
  async with BuildEngine(settings) as engine:
    job = await engine.submit("preview", "session-c2", make_game("Busy", behavior="busy"))
    job = await wait_for_terminal(engine.status, job.job_id)

  assert job.status == "failed"
  assert job.attempt == 2
  assert job.last_error.category == "transient"
  assert len(cli_calls()) == 2


@pytest.mark.anyio
async def test_pool_size_bounds_concurrent_runs(make_settings) -> None:
  settings = make_settings(process_pool_size="3")
  async with BuildEngine(settings) as engine:
    jobs = [await engine.submit("preview", f"session-d{index}", make_game(f"Game {index}", behavior="slow")) for index in range(4)]
    assert [job.status for job in jobs] == ["running", "running", "running", "queued"]

    peak = 0
    while not all(job.is_terminal for job in jobs):
      running = sum(1 for job in jobs if job.status == "running")
      peak = max(peak, running)
      assert engine.pool.statistics()["busy"] <= 3
      await anyio.sleep(0.01)

  assert peak == 3
  assert all(job.status == "succeeded" for job in jobs)


@pytest.mark.anyio
async def test_repeated_export_is_served_from_cache(settings, cli_calls) -> None:
  events = RecordingUsageEventSink()
  game = make_game("Cached Export")
  async with BuildEngine(settings, events=events) as engine:
    first = await engine.submit("export", "session-e", game)
    first = await wait_for_terminal(engine.status, first.job_id)
    second = await engine.submit("export", "session-e", game)

  assert first.status == "succeeded"
  assert first.result_path.endswith(".zip")
  assert Path(first.result_path).is_file()
  assert second.status == "succeeded"
  assert second.cache_hit is True
  assert second.result_path == first.result_path
  assert cli_calls() == ["ok"]
  assert len(events.events) == 1


@pytest.mark.anyio
async def test_exports_with_different_options_keep_separate_packages(settings, cli_calls) -> None:
  game = make_game("Option Export")
  async with BuildEngine(settings) as engine:
    minified = await engine.submit("export", "session-e2", game, options={"minify": True})
    minified = await wait_for_terminal(engine.status, minified.job_id)
    readable = await engine.submit("export", "session-e2", game, options={"minify": False})
    readable = await wait_for_terminal(engine.status, readable.job_id)
    again = await engine.submit("export", "session-e2", game, options={"minify": True})

  assert minified.status == readable.status == "succeeded"
  assert minified.result_path != readable.result_path
  assert Path(minified.result_path).is_file()
  assert Path(readable.result_path).is_file()
  assert again.cache_hit is True
  assert again.result_path == minified.result_path
  with zipfile.ZipFile(again.result_path) as archive:
    assert "--minify true" in archive.read("cli-args.txt").decode()
  with zipfile.ZipFile(readable.result_path) as archive:
    assert "--minify" not in archive.read("cli-args.txt").decode()
  assert cli_calls() == ["ok", "ok"]


@pytest.mark.anyio
async def test_swept_export_is_rebuilt_instead_of_served_from_cache(settings, cli_calls) -> None:
  game = make_game("Swept Export")
  async with BuildEngine(settings) as engine:
    first = await engine.submit("export", "session-e3", game)
    first = await wait_for_terminal(engine.status, first.job_id)
    Path(first.result_path).unlink()
    second = await engine.submit("export", "session-e3", game)
    assert second.cache_hit is False
    second = await wait_for_terminal(engine.status, second.job_id)

  assert second.status == "succeeded"
  assert second.result_path == first.result_path
  assert Path(second.result_path).is_file()
  assert cli_calls() == ["ok", "ok"]


@pytest.mark.anyio
async def test_identical_in_flight_submissions_share_a_job(settings, cli_calls) -> None:
  game = make_game("Shared", behavior="slow")
  async with BuildEngine(settings) as engine:
    first = await engine.submit("preview", "session-f", game)
    second = await engine.submit("preview", "session-f", game)
    assert second is first
    await wait_for_terminal(engine.status, first.job_id)
  assert cli_calls() == ["slow"]


@pytest.mark.anyio
async def test_cancel_only_affects_waiting_jobs(make_settings) -> None:
  settings = make_settings(process_pool_size="1")
  events = RecordingUsageEventSink()
  async with BuildEngine(settings, events=events) as engine:
    running = await engine.submit("preview", "session-g", make_game("Running", behavior="slow"))
    waiting = await engine.submit("preview", "session-g", make_game("Waiting"))
    assert waiting.status == "queued"

    assert engine.cancel(waiting.job_id) is True
    assert engine.status(waiting.job_id).status == "cancelled"
    assert engine.cancel(running.job_id) is False
    assert engine.cancel(waiting.job_id) is False
    await wait_for_terminal(engine.status, running.job_id)

  assert running.status == "succeeded"
  assert [event.job_id for event in events.events] == [running.job_id]


@pytest.mark.anyio
async def test_cancelling_a_retrying_job_stops_further_attempts(make_settings, cli_calls) -> None:
  settings = make_settings(retry_delay="0.5", max_retries="2")
  events = RecordingUsageEventSink()
  async with BuildEngine(settings, events=events) as engine:
    job = await engine.submit("preview", "session-g2", make_game("Busy Retry", behavior="busy"))
    await wait_until(lambda: job.status == "retrying")
    assert job.next_attempt_at is not None

    assert engine.cancel(job.job_id) is True
    assert job.status == "cancelled"
    assert job.next_attempt_at is None
    assert engine.statistics()["queues"]["retrying"] == 0
    # Outlast the back-off; a live timer would start attempt 2 here.
    await anyio.sleep(1.0)
    assert job.status == "cancelled"
    assert job.attempt == 1
    assert engine.cancel(job.job_id) is False

  assert cli_calls() == ["busy"]
  assert events.events == []


@pytest.mark.anyio
async def test_recycled_slot_resumes_a_stalled_retry(make_settings, cli_calls) -> None:
  settings = make_settings(process_pool_size="1", max_retries="2")
  async with BuildEngine(settings) as engine:
    job = await engine.submit("preview", "session-g3", make_game("Killed Once", behavior="sigkill-once"))
    await wait_until(lambda: job.status == "queued" and job.attempt == 2)
    assert engine.pool.statistics()["unhealthy"] == 1
    await anyio.sleep(0.1)
    assert job.status == "queued"

    report = await engine.refresh_health()
    assert report.pool["unhealthy"] == 0
    job = await wait_for_terminal(engine.status, job.job_id)

  assert job.status == "succeeded"
  assert job.attempt == 2
  assert cli_calls() == ["sigkill-once", "sigkill-once"]


@pytest.mark.anyio
async def test_admission_rejects_beyond_in_flight_limit(make_settings) -> None:
  settings = make_settings(max_concurrent_operations="1")
  async with BuildEngine(settings) as engine:
    first = await engine.submit("preview", "session-h", make_game("First", behavior="slow"))
    with pytest.raises(AdmissionRejectedError) as excinfo:
      await engine.submit("preview", "session-h", make_game("Second"))
    assert excinfo.value.limit == 1
    await wait_for_terminal(engine.status, first.job_id)
    # Capacity frees once the first job finishes.
    third = await engine.submit("preview", "session-h", make_game("Third"))
    await wait_for_terminal(engine.status, third.job_id)


@pytest.mark.anyio
async def test_invalid_game_json_is_rejected_with_fallback_after_repeats(settings, cli_calls) -> None:
  broken = make_game("Broken")
  broken["layouts"] = []
  async with BuildEngine(settings) as engine:
    with pytest.raises(GameJsonValidationError) as first:
      await engine.submit("preview", "session-i", broken)
    assert first.value.suggestions == []
    with pytest.raises(GameJsonValidationError) as second:
      await engine.submit("preview", "session-i", broken)
    assert "Start with a basic game template." in second.value.suggestions
    assert any(error.startswith("layouts") for error in second.value.errors)
  assert cli_calls() == []


@pytest.mark.anyio
async def test_repeated_failures_attach_fallback_suggestions(settings) -> None:
  async with BuildEngine(settings) as engine:
    first = await engine.submit("export", "session-j", make_game("Corrupt 1", behavior="corrupt"))
    first = await wait_for_terminal(engine.status, first.job_id)
    second = await engine.submit("export", "session-j", make_game("Corrupt 2", behavior="corrupt"))
    second = await wait_for_terminal(engine.status, second.job_id)

  assert first.last_error.category == "corrupt_project"
  assert first.attempt == 1
  assert first.fallback_suggestions == []
  assert "Try exporting without mobile optimization." in second.fallback_suggestions


@pytest.mark.anyio
async def test_missing_index_is_a_corrupt_project(settings) -> None:
  async with BuildEngine(settings) as engine:
    job = await engine.submit("preview", "session-k", make_game("Empty Output", behavior="no-index"))
    job = await wait_for_terminal(engine.status, job.job_id)
  assert job.status == "failed"
  assert job.exit_code == 0
  assert job.last_error.category == "corrupt_project"


@pytest.mark.anyio
async def test_hung_cli_is_killed_at_the_timeout(make_settings) -> None:
  settings = make_settings(preview_timeout="1", max_retries="0")
  async with BuildEngine(settings) as engine:
    job = await engine.submit("preview", "session-l", make_game("Hang", behavior="hang"))
    job = await wait_for_terminal(engine.status, job.job_id, timeout=20)
  assert job.status == "failed"
  assert job.exit_code == 124
  assert job.last_error.category == "timeout"


@pytest.mark.anyio
async def test_engine_guards_and_lookups(make_settings) -> None:
  engine = BuildEngine(make_settings())
  with pytest.raises(EngineNotRunningError):
    await engine.submit("preview", "session-m", make_game())
  async with engine:
    with pytest.raises(InvalidSessionError):
      await engine.submit("preview", "../escape", make_game())
    with pytest.raises(JobNotFoundError):
      engine.status("missing")
    stats = engine.statistics()
    assert stats["pool"]["pool_size"] == 3
    assert stats["queues"]["in_flight"] == 0
    summary = await engine.run_maintenance()
    assert summary["jobs_pruned"] == 0

  disabled = BuildEngine(make_settings(enabled="false"))
  async with disabled:
    with pytest.raises(EngineNotRunningError):
      await disabled.submit("preview", "session-m", make_game())
