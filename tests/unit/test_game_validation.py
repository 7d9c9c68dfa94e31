"""Unit tests for game JSON structural validation."""

from __future__ import annotations

from gdbuild.jobs.validation import validate_game_json
from tests.support import make_game


def test_valid_document_passes() -> None:
  ok, errors, model = validate_game_json(make_game())
  assert ok is True
  assert errors == []
  assert model is not None
  assert model.properties.project_uuid == "uuid-Space Dodge"


def test_non_object_payload_is_rejected() -> None:
  ok, errors, model = validate_game_json(["not", "a", "game"])
  assert ok is False
  assert errors == ["game_json: must be a JSON object"]
  assert model is None


def test_missing_sections_are_reported_with_locations() -> None:
  game = make_game()
  del game["resources"]
  game["layouts"] = []
  ok, errors, _ = validate_game_json(game)
  assert ok is False
  assert any(error.startswith("resources:") for error in errors)
  assert any(error.startswith("layouts:") for error in errors)


def test_duplicate_object_names_are_rejected() -> None:
  game = make_game(objects=[{"name": "Enemy", "type": "Sprite"}, {"name": "Enemy", "type": "Text"}])
  ok, errors, _ = validate_game_json(game)
  assert ok is False
  assert "Duplicate object names: Enemy" in errors[0]


def test_unknown_fields_are_preserved() -> None:
  game = make_game()
  game["eventsFunctionsExtensions"] = []
  ok, _, model = validate_game_json(game)
  assert ok is True
  assert model.model_extra["eventsFunctionsExtensions"] == []
