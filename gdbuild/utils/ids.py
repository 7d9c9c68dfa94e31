"""Identifier and content fingerprint utilities."""

from __future__ import annotations

import hashlib
import uuid
from typing import Any

import msgspec

_ENCODER = msgspec.json.Encoder(order="sorted")


def generate_job_id() -> str:
  """Return a new build job identifier."""
  return str(uuid.uuid4())


def content_hash(value: Any) -> str:
  """Return a sha256 fingerprint of a JSON-compatible value, independent of key order."""
  return hashlib.sha256(_ENCODER.encode(value)).hexdigest()


def short_hash(digest: str, size: int = 16) -> str:
  """Trim a hex digest for use in file and directory names."""
  return digest[:size]
