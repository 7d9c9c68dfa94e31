"""Check that configuration, storage and the GDevelop CLI are usable on this host."""

from __future__ import annotations

import asyncio
import shlex
import sys

from gdbuild.config import load_settings
from gdbuild.jobs.pool import UNREACHABLE_EXIT_CODES, run_command


async def _probe_cli(cli_path: str, timeout: float) -> tuple[bool, str]:
  result = await run_command([*shlex.split(cli_path), "--version"], timeout=timeout)
  if result.exit_code in UNREACHABLE_EXIT_CODES:
    return False, result.stderr.strip() or f"exit code {result.exit_code}"
  return True, result.stdout.strip() or "ok"


def main() -> int:
  try:
    settings = load_settings()
  except ValueError as exc:
    print(f"CONFIG ERROR: {exc}")
    return 1

  print(f"Environment: {settings.environment}")
  print(f"Process pool: {settings.process_pool_size} slot(s), timeout {settings.process_timeout}s")
  print(f"Queues: preview={settings.preview_queue} export={settings.export_queue}")

  failures = 0
  for label, directory in (("templates", settings.templates_dir), ("sessions", settings.sessions_dir), ("exports", settings.exports_dir)):
    try:
      directory.mkdir(parents=True, exist_ok=True)
      print(f"OK   {label}: {directory}")
    except OSError as exc:
      failures += 1
      print(f"FAIL {label}: {directory} ({exc})")

  available, detail = asyncio.run(_probe_cli(settings.cli_path, settings.health_check_timeout))
  if available:
    print(f"OK   cli: {settings.cli_path} ({detail})")
  else:
    failures += 1
    print(f"FAIL cli: {settings.cli_path} ({detail}); install it with `npm install -g gdexport`")

  return 1 if failures else 0


if __name__ == "__main__":
  sys.exit(main())
