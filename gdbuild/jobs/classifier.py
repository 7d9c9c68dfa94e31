"""CLI failure classification with retryable vs non-retryable categories."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

ErrorCategory = Literal["missing_binary", "permission", "out_of_memory", "timeout", "corrupt_project", "transient", "unknown"]

TIMEOUT_EXIT_CODE = 124
NON_RETRYABLE_CATEGORIES: frozenset[str] = frozenset({"missing_binary", "permission", "out_of_memory", "corrupt_project"})
_DEBUG_OUTPUT_LIMIT = 4000


@dataclass(frozen=True)
class ErrorClassification:
  """Classification result for a failed CLI invocation."""

  category: ErrorCategory
  retryable: bool
  user_message: str
  suggested_action: str

  def is_retryable(self) -> bool:
    return self.retryable

  def to_dict(self) -> dict[str, Any]:
    return {"category": self.category, "retryable": self.retryable, "user_message": self.user_message, "suggested_action": self.suggested_action}


@dataclass(frozen=True)
class _Rule:
  classification: ErrorClassification
  patterns: tuple[str, ...]
  exit_codes: tuple[int, ...] = ()

  def matches(self, exit_code: int, stderr: str) -> bool:
    if exit_code in self.exit_codes:
      return True
    return any(pattern in stderr for pattern in self.patterns)


# Evaluated in order; the first matching rule wins.
_RULES: tuple[_Rule, ...] = (
  _Rule(
    classification=ErrorClassification(
      category="missing_binary",
      retryable=False,
      user_message="The GDevelop CLI is not installed or not available in PATH. Game builds are unavailable until it is installed.",
      suggested_action="Install the GDevelop CLI globally with `npm install -g gdexport` and make sure the configured GDEVELOP_CLI_PATH resolves.",
    ),
    patterns=("enoent", "command not found"),
  ),
  _Rule(
    classification=ErrorClassification(
      category="permission",
      retryable=False,
      user_message="Permission denied while running the GDevelop build. The server cannot access the game project files.",
      suggested_action="Check file permissions on the sessions and exports storage directories and that the CLI binary is executable.",
    ),
    patterns=("permission denied", "eacces"),
  ),
  _Rule(
    classification=ErrorClassification(
      category="out_of_memory",
      retryable=False,
      user_message="The game is too complex to build with the available memory.",
      suggested_action="Reduce game complexity (fewer objects, scenes or large assets) or raise the build host memory limit.",
    ),
    patterns=("out of memory", "enomem"),
  ),
  _Rule(
    classification=ErrorClassification(
      category="timeout",
      retryable=True,
      user_message="The game build timed out. This can happen with complex games or when the server is busy.",
      suggested_action="Try again in a moment; if it keeps timing out, simplify the game or raise the build timeout.",
    ),
    patterns=("timeout",),
    exit_codes=(TIMEOUT_EXIT_CODE,),
  ),
  _Rule(
    classification=ErrorClassification(
      category="corrupt_project",
      retryable=False,
      user_message="The game project is invalid and could not be built.",
      suggested_action="Regenerate the game or start from a basic template, then rebuild.",
    ),
    patterns=("invalid project", "malformed"),
  ),
  _Rule(
    classification=ErrorClassification(
      category="transient",
      retryable=True,
      user_message="The build system is temporarily busy.",
      suggested_action="Retry the build shortly.",
    ),
    patterns=("busy", "locked"),
  ),
)

_UNKNOWN = ErrorClassification(
  category="unknown",
  retryable=True,
  user_message="An unexpected error occurred while building the game.",
  suggested_action="Retry the build; contact support with the job id if the problem persists.",
)

_FALLBACK_SUGGESTIONS: dict[str, tuple[str, ...]] = {
  "preview": ("Try exporting the game directly instead of previewing it.", "Simplify the game by removing complex elements."),
  "export": ("Try exporting without mobile optimization.", "Use standard compression instead of maximum."),
  "cli": ("Try creating a simpler game with fewer objects.", "Use a basic game template instead of complex generation."),
  "validation": ("Start with a basic game template.", "Try describing your game in simpler terms."),
}


def classify(exit_code: int, stderr: str | None) -> ErrorClassification:
  """
  Classify a CLI failure as retryable or non-retryable.

  Primary signal: stderr substrings (case-insensitive)
  Secondary signal: exit code 124 (timeout)

  Non-retryable (permanent):
    - missing binary, permission, out of memory, corrupt project
  Retryable (transient):
    - timeout, busy/locked resources, anything unrecognized
  """
  normalized = (stderr or "").lower()
  for rule in _RULES:
    if rule.matches(exit_code, normalized):
      return rule.classification
  return _UNKNOWN


def fallback_suggestions(kind: str) -> list[str]:
  """Return simpler alternatives to offer after repeated failures of the same kind."""
  return list(_FALLBACK_SUGGESTIONS.get(kind, _FALLBACK_SUGGESTIONS["cli"]))


def _tail(text: str | None, limit: int = _DEBUG_OUTPUT_LIMIT) -> str:
  if not text:
    return ""
  if len(text) <= limit:
    return text
  return "..." + text[-limit:]


def build_debug_payload(
  *,
  command: str,
  exit_code: int,
  stdout: str | None,
  stderr: str | None,
  classification: ErrorClassification,
  session_id: str | None = None,
  artifact_path: str | None = None,
  build_logs: list[str] | None = None,
  timestamp: datetime | None = None,
) -> dict[str, Any]:
  """Build the operator-facing debug bundle for a failed invocation."""
  payload: dict[str, Any] = {
    "command": command,
    "exit_code": exit_code,
    "stdout": _tail(stdout),
    "stderr": _tail(stderr),
    "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
    "category": classification.category,
    "suggested_action": classification.suggested_action,
  }
  # Preview/export context rides along without changing the classification itself.
  if session_id is not None:
    payload["session_id"] = session_id
  if artifact_path is not None:
    payload["artifact_path"] = artifact_path
  if build_logs:
    payload["build_logs"] = [_tail(line) for line in build_logs]
  return payload
