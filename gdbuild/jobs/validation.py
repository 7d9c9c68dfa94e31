"""Structural validation of GDevelop game JSON documents."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator


class GameProperties(BaseModel):
  """Project-level properties the CLI needs to emit an HTML5 build."""

  name: StrictStr = Field(min_length=1)
  version: StrictStr = Field(min_length=1)
  project_uuid: StrictStr = Field(alias="projectUuid", min_length=1)
  model_config = ConfigDict(extra="allow", populate_by_name=True)


class GameObject(BaseModel):
  name: StrictStr = Field(min_length=1)
  type: StrictStr = Field(min_length=1)
  model_config = ConfigDict(extra="allow")


class GameLayout(BaseModel):
  """One scene; the CLI refuses scenes without a layer list."""

  name: StrictStr = Field(min_length=1)
  layers: list[Any]
  model_config = ConfigDict(extra="allow")


class GameDocument(BaseModel):
  """Minimum shape of a project the GDevelop CLI can compile."""

  properties: GameProperties
  resources: dict[str, Any]
  objects: list[GameObject]
  layouts: list[GameLayout] = Field(min_length=1)
  model_config = ConfigDict(extra="allow")

  @field_validator("objects")
  @classmethod
  def unique_object_names(cls, objects: list[GameObject]) -> list[GameObject]:
    # Duplicate names collide in the generated runtime code.
    seen: set[str] = set()
    duplicates: list[str] = []
    for item in objects:
      if item.name in seen and item.name not in duplicates:
        duplicates.append(item.name)
      seen.add(item.name)
    if duplicates:
      raise ValueError(f"Duplicate object names: {', '.join(duplicates)}")
    return objects


def validate_game_json(payload: Any) -> tuple[bool, list[str], GameDocument | None]:
  """
  Validate a game JSON payload before it is handed to the CLI.

  Returns:
      Tuple where:
      - ok: bool indicating whether validation succeeded.
      - errors: list of human-readable validation errors.
      - model: parsed GameDocument when validation passes, otherwise None.
  """

  errors: list[str] = []
  if not isinstance(payload, dict):
    return False, ["game_json: must be a JSON object"], None

  try:
    document = GameDocument.model_validate(payload)
  except ValidationError as exc:
    for err in exc.errors():
      loc = ".".join(str(x) for x in err["loc"]) or "game_json"
      errors.append(f"{loc}: {err['msg']}")
    return False, errors, None

  return True, errors, document
