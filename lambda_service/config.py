"""
Service configuration: the JSON file describing the endpoints.

Example:

    {
      "port": 3000,
      "endpoints": [
        {
          "name": "meetings",
          "description": "Find meetings",
          "path": "/meetings",
          "method": "GET",
          "workiqQuery": {"query": "Meetings on {{day}}"}
        }
      ]
    }

Each endpoint names exactly one of ``aiPrompt``, ``pyHandler`` or
``workiqQuery``; the loader rejects anything else before a handler is built.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from lambda_service.errors import ConfigError

logger = logging.getLogger(__name__)


class HandlerKind(Enum):
    AI_PROMPT = "aiPrompt"
    LOCAL_FUNCTION = "pyHandler"
    REMOTE_QUERY = "workiqQuery"


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class AiPromptConfig(_Model):
    prompt: str = Field(min_length=1)
    model: Optional[str] = Field(default=None, min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


class PyHandlerConfig(_Model):
    file: str = Field(min_length=1)
    export: Optional[str] = Field(default=None, min_length=1)


class WorkiqQueryConfig(_Model):
    query: str = Field(min_length=1)


class EndpointConfig(_Model):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    path: str = Field(min_length=1)
    method: Literal["GET", "POST"]
    input_schema: Optional[dict[str, Any]] = Field(default=None, alias="inputSchema")
    output_schema: Optional[dict[str, Any]] = Field(default=None, alias="outputSchema")
    ai_prompt: Optional[AiPromptConfig] = Field(default=None, alias="aiPrompt")
    py_handler: Optional[PyHandlerConfig] = Field(default=None, alias="pyHandler")
    workiq_query: Optional[WorkiqQueryConfig] = Field(default=None, alias="workiqQuery")

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _one_handler(self) -> EndpointConfig:
        present = [v for v in (self.ai_prompt, self.py_handler, self.workiq_query) if v is not None]
        if len(present) != 1:
            raise ValueError("must specify exactly one of aiPrompt, pyHandler, or workiqQuery")
        return self

    @property
    def kind(self) -> HandlerKind:
        if self.ai_prompt is not None:
            return HandlerKind.AI_PROMPT
        if self.py_handler is not None:
            return HandlerKind.LOCAL_FUNCTION
        return HandlerKind.REMOTE_QUERY


class ServiceConfig(_Model):
    port: Optional[int] = Field(default=None, ge=1)
    default_model: Optional[str] = Field(default=None, alias="defaultModel", min_length=1)
    endpoints: list[EndpointConfig] = Field(min_length=1)
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    def uses(self, kind: HandlerKind) -> bool:
        return any(ep.kind is kind for ep in self.endpoints)


def parse_config(data: Any, base_dir: Path | str | None = None) -> ServiceConfig:
    """Validate an already-parsed config document."""
    if isinstance(data, dict) and "base_dir" in data:
        raise ConfigError("Config validation failed: unknown key 'base_dir'")
    try:
        payload = dict(data) if isinstance(data, dict) else data
        if isinstance(payload, dict):
            payload["base_dir"] = Path(base_dir) if base_dir else Path.cwd()
        return ServiceConfig.model_validate(payload)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed: {_format_errors(e)}") from e


def load_config(config_path: str | Path) -> ServiceConfig:
    """Read, parse and validate the config file at ``config_path``."""
    full_path = Path(config_path).resolve()
    try:
        raw = full_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config at {full_path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config: {e}") from e

    config = parse_config(data, base_dir=full_path.parent)
    logger.info(f"Loaded config from {full_path} with {len(config.endpoints)} endpoints.")
    return config


def _format_errors(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in ("config", *item["loc"]))
        parts.append(f"{location} {item['msg']}")
    return "; ".join(parts)
