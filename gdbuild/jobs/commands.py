"""CLI argument construction, output verification and export packaging."""

from __future__ import annotations

import dataclasses
import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gdbuild.config import Settings
from gdbuild.jobs.models import BuildArtifact, CommandResult, JobKind
from gdbuild.utils.ids import content_hash, short_hash

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.html"
MISSING_INDEX_MESSAGE = "malformed output: index.html not generated"
_COMPRESSION = {"none": (zipfile.ZIP_STORED, None), "standard": (zipfile.ZIP_DEFLATED, 6), "maximum": (zipfile.ZIP_DEFLATED, 9)}


@dataclass(frozen=True)
class BuildPaths:
  """Where one build writes its output."""

  output_dir: Path
  package_path: Path | None = None

  @property
  def result_path(self) -> Path:
    return self.package_path if self.package_path is not None else self.output_dir


def resolve_options(kind: JobKind, settings: Settings, options: dict[str, Any] | None) -> dict[str, Any]:
  """Fill export defaults from settings; previews take no options."""
  if kind == "preview":
    return {}
  supplied = dict(options or {})
  compression_level = str(supplied.get("compression_level", settings.export_compression_level)).lower()
  if compression_level not in _COMPRESSION:
    raise ValueError(f"Unknown compression level: {compression_level}")
  return {
    "minify": bool(supplied.get("minify", settings.export_minify)),
    "mobile_optimized": bool(supplied.get("mobile_optimized", settings.export_mobile_optimized)),
    "compression_level": compression_level,
  }


def build_key(kind: JobKind, game_json_hash: str, options: dict[str, Any]) -> str:
  """Identify one build output: the document plus every option that changes it."""
  return content_hash({"kind": kind, "hash": game_json_hash, "options": options})


def build_paths(kind: JobKind, settings: Settings, project_dir: Path, session_id: str, key: str) -> BuildPaths:
  """
  Previews live inside the session project; exports under the exports root.

  ``key`` comes from ``build_key``, so exports of one document built with different
  options never share a directory or a package.
  """
  digest = short_hash(key)
  if kind == "preview":
    return BuildPaths(output_dir=project_dir / "preview" / digest)
  export_root = settings.exports_dir / session_id
  return BuildPaths(output_dir=export_root / digest / "build", package_path=export_root / f"{digest}.zip")


def build_cli_args(kind: JobKind, game_json_path: Path, output_dir: Path, options: dict[str, Any]) -> list[str]:
  """Arguments passed after the CLI binary."""
  args = [str(game_json_path), "--output", str(output_dir), "--target", "html5"]
  if kind == "preview":
    # Previews stay readable for in-browser debugging.
    args.extend(["--minify", "false"])
    return args
  if options.get("minify", True):
    args.extend(["--minify", "true"])
  if options.get("mobile_optimized"):
    args.append("--mobile-optimized")
  return args


def prepare_output_dir(paths: BuildPaths) -> None:
  """Start every attempt from an empty output directory."""
  if paths.output_dir.exists():
    shutil.rmtree(paths.output_dir)
  paths.output_dir.mkdir(parents=True, exist_ok=True)
  if paths.package_path is not None and paths.package_path.exists():
    paths.package_path.unlink()


def write_output_logs(log_dir: Path, job_id: str, attempt: int, result: CommandResult) -> tuple[str, str]:
  """Persist captured output so jobs hold file references instead of text."""
  log_dir.mkdir(parents=True, exist_ok=True)
  stdout_path = log_dir / f"{job_id}.{attempt}.stdout.log"
  stderr_path = log_dir / f"{job_id}.{attempt}.stderr.log"
  stdout_path.write_text(result.stdout, encoding="utf-8")
  stderr_path.write_text(result.stderr, encoding="utf-8")
  return str(stdout_path), str(stderr_path)


def package_export(build_dir: Path, package_path: Path, *, compression_level: str) -> int:
  """Zip the build directory and return the archive size in bytes."""
  compression, level = _COMPRESSION[compression_level]
  package_path.parent.mkdir(parents=True, exist_ok=True)
  with zipfile.ZipFile(package_path, "w", compression=compression, compresslevel=level) as archive:
    for path in sorted(build_dir.rglob("*")):
      if path.is_file():
        archive.write(path, path.relative_to(build_dir).as_posix())
  return package_path.stat().st_size


def _directory_size(path: Path) -> int:
  return sum(item.stat().st_size for item in path.rglob("*") if item.is_file())


def finalize_build(kind: JobKind, result: CommandResult, paths: BuildPaths, *, options: dict[str, Any], max_export_size: int) -> tuple[CommandResult, BuildArtifact | None]:
  """
  Check the CLI output and package exports.

  A successful exit without the expected artifact is rewritten into a failing result whose
  stderr names the problem, so the classifier stays the only place stderr is interpreted.
  Filesystem errors are reported the same way instead of being raised.
  """
  if not result.succeeded:
    return result, None

  # The CLI exits 0 on some template errors without writing anything.
  if not (paths.output_dir / INDEX_FILENAME).is_file():
    logger.warning("CLI exited 0 without %s in %s", INDEX_FILENAME, paths.output_dir)
    return dataclasses.replace(result, stderr=MISSING_INDEX_MESSAGE), None

  if kind == "preview" or paths.package_path is None:
    return result, BuildArtifact(kind=kind, path=paths.output_dir, size_bytes=_directory_size(paths.output_dir))

  try:
    size = package_export(paths.output_dir, paths.package_path, compression_level=options.get("compression_level", "standard"))
  except OSError as exc:
    logger.error("Failed to package export %s: %s", paths.package_path, exc)
    return dataclasses.replace(result, stderr=f"export packaging failed: {exc}"), None

  if size > max_export_size:
    paths.package_path.unlink(missing_ok=True)
    return dataclasses.replace(result, stderr=f"invalid project: export package is {size} bytes, exceeds limit of {max_export_size} bytes"), None

  # The unpacked build is only needed to produce the archive.
  shutil.rmtree(paths.output_dir.parent, ignore_errors=True)
  return result, BuildArtifact(kind=kind, path=paths.package_path, size_bytes=size)
