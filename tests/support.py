"""Helpers shared by unit and integration tests."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import anyio

from gdbuild.jobs.models import BuildJob


def make_game(name: str = "Space Dodge", behavior: str = "ok", *, objects: list[dict[str, Any]] | None = None) -> dict[str, Any]:
  """Return a minimal game document the CLI (and the fake) accepts."""
  return {
    "properties": {"name": name, "version": "1.0.0", "projectUuid": f"uuid-{name}", "description": behavior},
    "resources": {"resources": []},
    "objects": objects if objects is not None else [{"name": "Player", "type": "Sprite"}],
    "layouts": [{"name": "Main", "layers": [{"name": ""}]}],
  }


async def wait_for_terminal(lookup: Callable[[str], BuildJob], job_id: str, *, timeout: float = 15.0) -> BuildJob:
  """Poll until the job reaches a terminal status."""
  deadline = time.monotonic() + timeout
  while True:
    job = lookup(job_id)
    if job.is_terminal:
      return job
    if time.monotonic() > deadline:
      raise AssertionError(f"job {job_id} still {job.status} after {timeout}s")
    await anyio.sleep(0.02)


async def wait_until(condition: Callable[[], bool], *, timeout: float = 15.0) -> None:
  """Poll until ``condition`` holds."""
  deadline = time.monotonic() + timeout
  while not condition():
    if time.monotonic() > deadline:
      raise AssertionError(f"condition not met after {timeout}s")
    await anyio.sleep(0.02)
