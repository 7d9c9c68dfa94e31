"""Known project templates and their content hashes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import msgspec

from gdbuild.config import Settings
from gdbuild.jobs.cache import BuildCache
from gdbuild.utils.ids import content_hash

logger = logging.getLogger(__name__)


class TemplateCatalog:
  """Maps template ids to their documents so unmodified templates can be recognized by hash."""

  def __init__(self, templates_dir: Path, templates: dict[str, str]) -> None:
    self._templates_dir = templates_dir
    self._templates = dict(templates)
    self._by_hash: dict[str, str] = {}
    self._documents: dict[str, dict[str, Any]] = {}

  @classmethod
  def from_settings(cls, settings: Settings) -> TemplateCatalog:
    return cls(settings.templates_dir, settings.templates)

  @property
  def template_ids(self) -> list[str]:
    return sorted(self._templates)

  def load(self) -> int:
    """Read every configured template file that exists; returns how many were loaded."""
    self._by_hash.clear()
    self._documents.clear()
    for template_id, filename in self._templates.items():
      path = self._templates_dir / filename
      if not path.is_file():
        logger.debug("Template %s not found at %s", template_id, path)
        continue
      try:
        document = msgspec.json.decode(path.read_bytes())
      except msgspec.DecodeError as exc:
        logger.warning("Skipping unreadable template %s: %s", template_id, exc)
        continue
      if not isinstance(document, dict):
        logger.warning("Skipping template %s: top-level value is not an object", template_id)
        continue
      self._documents[template_id] = document
      self._by_hash[content_hash(document)] = template_id
    logger.info("Loaded %d of %d project templates from %s", len(self._documents), len(self._templates), self._templates_dir)
    return len(self._documents)

  def template_for_hash(self, game_json_hash: str) -> str | None:
    """Return the template id whose document hashes to ``game_json_hash``."""
    return self._by_hash.get(game_json_hash)

  def document(self, template_id: str) -> dict[str, Any] | None:
    return self._documents.get(template_id)

  def warm(self, cache: BuildCache) -> int:
    """Seed the templates tier with every loaded template document."""
    for digest, template_id in self._by_hash.items():
      cache.put("templates", digest, {"template_id": template_id, "document": self._documents[template_id]})
    return len(self._by_hash)
