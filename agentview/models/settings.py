"""
Application settings loaded from YAML.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from agentview.errors import SettingsError

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_PROMPT = (
    "You are given a screenshot of a region the user selected.\n"
    "Return a concise, helpful description of what's in the image and any actionable insights.\n"
    "If the user provided context, use it. If not, infer cautiously."
)


def default_data_dir() -> Path:
    """Per-user storage root (threads, encrypted key store, settings)."""
    return Path.home() / ".agentview"


class AppSettings(BaseModel):
    """Endpoints, models and timeouts for the model API."""

    api_base: str = Field(default="https://api.openai.com/v1", description="Provider API root (must be https)")
    model: str = Field(default="gpt-4.1-mini", description="Model used for captures and follow-ups")
    transcription_model: str = Field(default="gpt-4o-mini-transcribe")
    stream_timeout: float = Field(default=120.0, gt=0, description="Streaming request timeout in seconds")
    describe_timeout: float = Field(default=60.0, gt=0)
    validate_timeout: float = Field(default=20.0, gt=0)
    transcribe_timeout: float = Field(default=120.0, gt=0)
    capture_prompt: str = DEFAULT_CAPTURE_PROMPT
    data_dir: Path = Field(default_factory=default_data_dir)

    def endpoint(self, path: str) -> str:
        """Join ``path`` onto the API root."""
        return f"{self.api_base.rstrip('/')}/{path.lstrip('/')}"

    @property
    def threads_path(self) -> Path:
        return self.data_dir / "threads.json"

    @property
    def config_dir(self) -> Path:
        return self.data_dir / "config"


def _friendly_validation_errors(path: Path, error: ValidationError) -> SettingsError:
    issues = []
    for item in error.errors():
        loc = ".".join(str(part) for part in item["loc"]) or "(root)"
        issues.append(f"{loc}: {item['msg']}")
    return SettingsError(str(path), issues)


def load_settings(path: Path | None = None) -> AppSettings:
    """
    Load settings from a YAML file.

    A missing file yields defaults. Unknown keys are ignored.

    Args:
        path: Settings file (default: ~/.agentview/settings.yaml)

    Raises:
        SettingsError: If the YAML is malformed or fails validation
    """
    if path is None:
        path = default_data_dir() / "settings.yaml"

    if not path.exists():
        logger.debug("No settings file at %s, using defaults", path)
        return AppSettings()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SettingsError(str(path), [f"not valid YAML: {e}"]) from e

    if data is None:
        return AppSettings()
    if not isinstance(data, dict):
        raise SettingsError(str(path), ["top level must be a mapping"])

    try:
        return AppSettings(**data)
    except ValidationError as e:
        raise _friendly_validation_errors(path, e) from e
