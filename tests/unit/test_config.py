"""Unit tests for environment-driven settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from gdbuild.config import load_settings


def test_defaults_match_documented_values() -> None:
  settings = load_settings({})
  assert settings.cli_path == "gdexport"
  assert settings.build_timeout == 300
  assert settings.preview_timeout == 120
  assert settings.preview_cache_ttl_minutes == 120
  assert settings.max_retries == 3
  assert settings.max_attempts == 4
  assert settings.process_pool_size == 3
  assert settings.max_concurrent_operations == 5
  assert settings.memory_limit == 512 * 1024**2
  assert settings.disk_space_threshold == 1024**3
  assert settings.error_tracking_duration == 86400
  assert settings.cleanup_interval == 3600
  assert settings.export_queue == "gdevelop-exports"
  assert settings.preview_queue == "gdevelop-previews"
  assert settings.templates["platformer"] == "platformer.json"


def test_storage_paths_resolve_under_root() -> None:
  settings = load_settings({"GDEVELOP_STORAGE_ROOT": "/srv/data"})
  assert settings.sessions_dir == Path("/srv/data/gdevelop/sessions")
  assert settings.exports_dir == Path("/srv/data/gdevelop/exports")
  assert settings.templates_dir == Path("/srv/data/gdevelop/templates")


def test_sizes_and_durations_accept_units() -> None:
  settings = load_settings({"GDEVELOP_MEMORY_LIMIT": "1GB", "GDEVELOP_MAX_EXPORT_SIZE": "50M", "GDEVELOP_ERROR_TRACKING_DURATION": "2 hours", "GDEVELOP_PREVIEW_CLEANUP_INTERVAL": "15m"})
  assert settings.memory_limit == 1024**3
  assert settings.max_export_size == 50 * 1024**2
  assert settings.error_tracking_duration == 7200
  assert settings.cleanup_interval == 900


def test_timeout_for_is_bounded_by_process_timeout() -> None:
  settings = load_settings({"GDEVELOP_BUILD_TIMEOUT": "600", "GDEVELOP_PROCESS_TIMEOUT": "200"})
  assert settings.timeout_for("export") == 200
  assert settings.timeout_for("preview") == 120
  assert settings.queue_name_for("preview") == "gdevelop-previews"


@pytest.mark.parametrize(
  "env",
  [
    {"GDEVELOP_EXPORT_COMPRESSION_LEVEL": "ultra"},
    {"GDEVELOP_EXPORT_QUEUE": "builds", "GDEVELOP_PREVIEW_QUEUE": "builds"},
    {"GDEVELOP_PROCESS_POOL_SIZE": "0"},
    {"GDEVELOP_MAX_RETRIES": "many"},
    {"GDEVELOP_MEMORY_LIMIT": "12 parsecs"},
  ],
)
def test_invalid_values_raise(env: dict[str, str]) -> None:
  with pytest.raises(ValueError):
    load_settings(env)


def test_boolean_flags_parse() -> None:
  settings = load_settings({"GDEVELOP_ENABLED": "off", "GDEVELOP_CACHE_ENABLED": "0", "GDEVELOP_DEBUG": "yes"})
  assert settings.enabled is False
  assert settings.cache_enabled is False
  assert settings.debug is True
