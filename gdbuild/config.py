"""Build engine configuration loaded from environment variables."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

from gdbuild.utils.env import apply_env_file, env_file_path

apply_env_file(env_file_path())

_SIZE_UNITS = {"": 1, "B": 1, "K": 1024, "KB": 1024, "M": 1024**2, "MB": 1024**2, "G": 1024**3, "GB": 1024**3, "T": 1024**4, "TB": 1024**4}
_DURATION_UNITS = {
  "": 1,
  "s": 1,
  "sec": 1,
  "second": 1,
  "seconds": 1,
  "m": 60,
  "min": 60,
  "minute": 60,
  "minutes": 60,
  "h": 3600,
  "hour": 3600,
  "hours": 3600,
  "d": 86400,
  "day": 86400,
  "days": 86400,
}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")
_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")

# Project templates shipped with the service, keyed by template id.
DEFAULT_TEMPLATES: dict[str, str] = {"platformer": "platformer.json", "tower_defense": "tower_defense.json", "puzzle": "puzzle.json", "arcade": "arcade.json"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the GDevelop build engine."""

  environment: str
  debug: bool
  enabled: bool
  # CLI binaries
  cli_path: str
  core_tools_path: str
  # Storage layout
  storage_root: Path
  templates_path: str
  sessions_path: str
  exports_path: str
  templates: dict[str, str] = field(hash=False)
  # Build and preview
  build_timeout: int
  preview_timeout: int
  preview_cache_ttl_minutes: int
  preview_caching_enabled: bool
  export_cleanup_hours: int
  max_export_size: int
  export_minify: bool
  export_mobile_optimized: bool
  export_compression_level: str
  cleanup_interval: int
  # Error recovery
  max_retries: int
  retry_delay_seconds: float
  backoff_multiplier: float
  enable_fallback_suggestions: bool
  error_tracking_duration: int
  check_cli_availability: bool
  check_disk_space: bool
  check_memory_usage: bool
  check_active_sessions: bool
  check_error_rate: bool
  health_check_timeout: int
  # Process pool
  process_pool_size: int
  process_timeout: int
  # Cache tiers
  cache_enabled: bool
  template_cache_ttl: int
  game_structure_cache_ttl: int
  validation_cache_ttl: int
  assets_cache_ttl: int
  # Queues
  export_queue: str
  preview_queue: str
  queue_retry_attempts: int
  queue_retry_delay: int
  # Monitoring
  monitoring_enabled: bool
  metrics_ttl: int
  metrics_history_limit: int
  performance_alerts_enabled: bool
  slow_operation_threshold: float
  health_check_interval: int
  # Resource limits
  max_concurrent_operations: int
  memory_limit: int
  disk_space_threshold: int
  # Logging
  log_dir: Path
  log_level: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool

  @property
  def templates_dir(self) -> Path:
    return self.storage_root / self.templates_path

  @property
  def sessions_dir(self) -> Path:
    return self.storage_root / self.sessions_path

  @property
  def exports_dir(self) -> Path:
    return self.storage_root / self.exports_path

  @property
  def max_attempts(self) -> int:
    """Total executions allowed per job, the first run plus retries."""
    return self.max_retries + 1

  def timeout_for(self, kind: str) -> int:
    """Return the wall-clock process budget for a build kind, bounded by the pool timeout."""
    kind_timeout = self.preview_timeout if kind == "preview" else self.build_timeout
    return min(kind_timeout, self.process_timeout)

  def queue_name_for(self, kind: str) -> str:
    return self.preview_queue if kind == "preview" else self.export_queue


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _parse_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 1) -> int:
  raw = _optional_str(env.get(name))
  if raw is None:
    return default
  try:
    value = int(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be an integer, got {raw!r}.") from exc
  if value < minimum:
    raise ValueError(f"{name} must be >= {minimum}.")
  return value


def _parse_float(env: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0) -> float:
  raw = _optional_str(env.get(name))
  if raw is None:
    return default
  try:
    value = float(raw)
  except ValueError as exc:
    raise ValueError(f"{name} must be a number, got {raw!r}.") from exc
  if value < minimum:
    raise ValueError(f"{name} must be >= {minimum}.")
  return value


def _parse_size(raw: str | int, *, name: str) -> int:
  """Convert sizes such as ``512M``, ``1GB`` or ``1048576`` into bytes."""

  if isinstance(raw, int):
    return raw

  match = _SIZE_PATTERN.match(raw)
  if match is None:
    raise ValueError(f"{name} must be a size such as '512M' or '1GB', got {raw!r}.")

  number, unit = match.groups()
  multiplier = _SIZE_UNITS.get(unit.upper())
  if multiplier is None:
    raise ValueError(f"{name} has an unknown size unit {unit!r}.")
  return int(float(number) * multiplier)


def _parse_duration(raw: str | int, *, name: str) -> int:
  """Convert durations such as ``24 hours``, ``24h`` or ``86400`` into seconds."""

  if isinstance(raw, int):
    return raw

  match = _DURATION_PATTERN.match(raw)
  if match is None:
    raise ValueError(f"{name} must be a duration such as '24h' or '30 minutes', got {raw!r}.")

  number, unit = match.groups()
  multiplier = _DURATION_UNITS.get(unit.lower())
  if multiplier is None:
    raise ValueError(f"{name} has an unknown duration unit {unit!r}.")
  return int(float(number) * multiplier)


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
  """Build settings from an explicit mapping, defaulting to the process environment."""

  env = os.environ if environ is None else environ

  environment = (env.get("GDEVELOP_ENV") or "development").strip().lower()
  storage_root = Path(env.get("GDEVELOP_STORAGE_ROOT") or "./storage").expanduser()

  process_pool_size = _parse_int(env, "GDEVELOP_PROCESS_POOL_SIZE", 3)
  max_concurrent_operations = _parse_int(env, "GDEVELOP_MAX_CONCURRENT_OPERATIONS", 5)

  export_queue = (env.get("GDEVELOP_EXPORT_QUEUE") or "gdevelop-exports").strip()
  preview_queue = (env.get("GDEVELOP_PREVIEW_QUEUE") or "gdevelop-previews").strip()
  if export_queue == preview_queue:
    raise ValueError("GDEVELOP_EXPORT_QUEUE and GDEVELOP_PREVIEW_QUEUE must name different queues.")

  compression_level = (env.get("GDEVELOP_EXPORT_COMPRESSION_LEVEL") or "standard").strip().lower()
  if compression_level not in {"none", "standard", "maximum"}:
    raise ValueError("GDEVELOP_EXPORT_COMPRESSION_LEVEL must be one of: none, standard, maximum.")

  log_level = (env.get("GDEVELOP_LOG_LEVEL") or "INFO").strip().upper()

  return Settings(
    environment=environment,
    debug=_parse_bool(env.get("GDEVELOP_DEBUG")),
    enabled=_parse_bool(env.get("GDEVELOP_ENABLED"), default=True),
    cli_path=(env.get("GDEVELOP_CLI_PATH") or "gdexport").strip(),
    core_tools_path=(env.get("GDEVELOP_CORE_TOOLS_PATH") or "gdcore-tools").strip(),
    storage_root=storage_root,
    templates_path=(env.get("GDEVELOP_TEMPLATES_PATH") or "gdevelop/templates").strip(),
    sessions_path=(env.get("GDEVELOP_SESSIONS_PATH") or "gdevelop/sessions").strip(),
    exports_path=(env.get("GDEVELOP_EXPORTS_PATH") or "gdevelop/exports").strip(),
    templates=dict(DEFAULT_TEMPLATES),
    build_timeout=_parse_int(env, "GDEVELOP_BUILD_TIMEOUT", 300),
    preview_timeout=_parse_int(env, "GDEVELOP_PREVIEW_TIMEOUT", 120),
    preview_cache_ttl_minutes=_parse_int(env, "GDEVELOP_PREVIEW_CACHE_TIMEOUT", 120),
    preview_caching_enabled=_parse_bool(env.get("GDEVELOP_PREVIEW_ENABLE_CACHING"), default=True),
    export_cleanup_hours=_parse_int(env, "GDEVELOP_EXPORT_CLEANUP_HOURS", 24),
    max_export_size=_parse_size(env.get("GDEVELOP_MAX_EXPORT_SIZE") or 100 * 1024 * 1024, name="GDEVELOP_MAX_EXPORT_SIZE"),
    export_minify=_parse_bool(env.get("GDEVELOP_EXPORT_MINIFY"), default=True),
    export_mobile_optimized=_parse_bool(env.get("GDEVELOP_EXPORT_MOBILE_OPTIMIZED")),
    export_compression_level=compression_level,
    cleanup_interval=_parse_duration(env.get("GDEVELOP_PREVIEW_CLEANUP_INTERVAL") or "1 hour", name="GDEVELOP_PREVIEW_CLEANUP_INTERVAL"),
    max_retries=_parse_int(env, "GDEVELOP_MAX_RETRIES", 3, minimum=0),
    retry_delay_seconds=_parse_float(env, "GDEVELOP_RETRY_DELAY", 2.0),
    backoff_multiplier=_parse_float(env, "GDEVELOP_BACKOFF_MULTIPLIER", 2.0, minimum=1.0),
    enable_fallback_suggestions=_parse_bool(env.get("GDEVELOP_ENABLE_FALLBACK"), default=True),
    error_tracking_duration=_parse_duration(env.get("GDEVELOP_ERROR_TRACKING_DURATION") or "24 hours", name="GDEVELOP_ERROR_TRACKING_DURATION"),
    check_cli_availability=_parse_bool(env.get("GDEVELOP_HEALTH_CHECK_CLI"), default=True),
    check_disk_space=_parse_bool(env.get("GDEVELOP_HEALTH_CHECK_DISK"), default=True),
    check_memory_usage=_parse_bool(env.get("GDEVELOP_HEALTH_CHECK_MEMORY"), default=True),
    check_active_sessions=_parse_bool(env.get("GDEVELOP_HEALTH_CHECK_SESSIONS"), default=True),
    check_error_rate=_parse_bool(env.get("GDEVELOP_HEALTH_CHECK_ERROR_RATE"), default=True),
    health_check_timeout=_parse_int(env, "GDEVELOP_HEALTH_CHECK_TIMEOUT", 30),
    process_pool_size=process_pool_size,
    process_timeout=_parse_int(env, "GDEVELOP_PROCESS_TIMEOUT", 300),
    cache_enabled=_parse_bool(env.get("GDEVELOP_CACHE_ENABLED"), default=True),
    template_cache_ttl=_parse_int(env, "GDEVELOP_TEMPLATE_CACHE_TTL", 3600),
    game_structure_cache_ttl=_parse_int(env, "GDEVELOP_GAME_STRUCTURE_CACHE_TTL", 1800),
    validation_cache_ttl=_parse_int(env, "GDEVELOP_VALIDATION_CACHE_TTL", 600),
    assets_cache_ttl=_parse_int(env, "GDEVELOP_ASSETS_CACHE_TTL", 7200),
    export_queue=export_queue,
    preview_queue=preview_queue,
    queue_retry_attempts=_parse_int(env, "GDEVELOP_QUEUE_RETRY_ATTEMPTS", 3),
    queue_retry_delay=_parse_int(env, "GDEVELOP_QUEUE_RETRY_DELAY", 60, minimum=0),
    monitoring_enabled=_parse_bool(env.get("GDEVELOP_MONITORING_ENABLED"), default=True),
    metrics_ttl=_parse_int(env, "GDEVELOP_METRICS_TTL", 86400),
    metrics_history_limit=_parse_int(env, "GDEVELOP_METRICS_HISTORY_LIMIT", 1000),
    performance_alerts_enabled=_parse_bool(env.get("GDEVELOP_PERFORMANCE_ALERTS_ENABLED"), default=True),
    slow_operation_threshold=_parse_float(env, "GDEVELOP_SLOW_OPERATION_THRESHOLD", 30.0),
    health_check_interval=_parse_int(env, "GDEVELOP_HEALTH_CHECK_INTERVAL", 60),
    max_concurrent_operations=max_concurrent_operations,
    memory_limit=_parse_size(env.get("GDEVELOP_MEMORY_LIMIT") or "512M", name="GDEVELOP_MEMORY_LIMIT"),
    disk_space_threshold=_parse_size(env.get("GDEVELOP_DISK_SPACE_THRESHOLD") or "1GB", name="GDEVELOP_DISK_SPACE_THRESHOLD"),
    log_dir=Path(env.get("GDEVELOP_LOG_DIR") or "./logs").expanduser(),
    log_level=log_level,
    log_max_bytes=_parse_int(env, "GDEVELOP_LOG_MAX_BYTES", 5242880),  # 5MB default
    log_backup_count=_parse_int(env, "GDEVELOP_LOG_BACKUP_COUNT", 10, minimum=0),
    log_http_4xx=_parse_bool(env.get("GDEVELOP_LOG_HTTP_4XX")),
  )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  return load_settings()
