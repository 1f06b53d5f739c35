import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from slab.constants import (
    DEFAULT_CONTEXT_LIMIT,
    DEFAULT_OLLAMA_HOST,
    MAX_COMPLETION_ITEMS,
    PHASE_TIMEOUT,
    REQUEST_TIMEOUT,
    STREAM_TIMEOUT,
)
from slab.logging import get_logger

SLAB_DIR_NAME = ".slab"
GLOBAL_DIR = Path.home() / ".config" / "slab"
GLOBAL_CONFIG_PATH = GLOBAL_DIR / "config.toml"
SETTINGS_PATH = GLOBAL_DIR / "settings.json"

_logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are a helpful coding assistant running in the slab CLI.

## Creating or Modifying Files

When you need to create or modify files, output them as fenced code blocks with the filename after a colon:

```language:path/to/file.ext
file contents here
```

CRITICAL: You MUST include the COMPLETE file contents in the code block, every single line of the file, not just the lines you changed. The code block replaces the entire file. When modifying an existing file, reproduce the full file with your changes applied.

Examples:
- ```python:src/app.py for Python files
- ```toml:pyproject.toml for TOML files
- ```txt:notes.txt for text files

## Deleting Files

When you need to delete a file, output a delete marker on its own line:

DELETE:path/to/file.ext

The user will be prompted to confirm all file operations before they are applied.

## Running Commands

When the user wants you to run a shell command (a build, a test run, a script), output a fenced code block tagged exec or run:

```exec
pytest -q
```

The user will be prompted to run it; the output will be added to the conversation so you can see results and fix errors in a follow-up."""


def find_project_root(start: Path | None = None) -> Path | None:
    """Walk up from `start` (default: cwd) to the first directory holding `.slab/`."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / SLAB_DIR_NAME).is_dir():
            return candidate
    return None


def project_root_or_cwd() -> Path:
    return find_project_root() or Path.cwd().resolve()


def project_config_path() -> Path:
    return project_root_or_cwd() / SLAB_DIR_NAME / "config.toml"


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


def save_user_settings(settings: dict) -> None:
    GLOBAL_DIR.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(json.dumps(settings, indent=2))


class ModelConfig(BaseModel):
    temperature: float | None = None
    top_p: float | None = None
    system_prompt: str | None = None


class PathsConfig(BaseModel):
    templates: Path | None = None
    rules: Path | None = None


class UIConfig(BaseModel):
    streaming: bool = True
    auto_apply_file_ops: bool = False
    # fish-style ghost text after the cursor
    inline_completion_preview: bool = True
    fuzzy_completion: bool = True
    max_completion_items: int = MAX_COMPLETION_ITEMS

    @field_validator("max_completion_items")
    @classmethod
    def _validate_max_items(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_completion_items must be positive, got {v}")
        return v


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SLAB_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_assignment=True,
    )

    ollama_host: str = DEFAULT_OLLAMA_HOST
    default_model: str | None = None
    context_limit: int = DEFAULT_CONTEXT_LIMIT
    temperature: float = 0.7
    top_p: float = 0.9
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Timeouts in seconds
    phase_timeout: float = PHASE_TIMEOUT
    stream_timeout: float = STREAM_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT

    log_level: str = "WARNING"

    models: dict[str, ModelConfig] = Field(default_factory=dict)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    ui: UIConfig = Field(default_factory=UIConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Project config wins over the global one
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=project_config_path()),
            TomlConfigSettingsSource(settings_cls, toml_file=GLOBAL_CONFIG_PATH),
        )

    @field_validator("ollama_host")
    @classmethod
    def _strip_host(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("context_limit")
    @classmethod
    def _validate_context_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"context_limit must be positive, got {v}")
        return v

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float) -> float:
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"temperature must be 0-2, got {v}")
        return v

    @field_validator("top_p")
    @classmethod
    def _validate_top_p(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def project_root(self) -> Path:
        return project_root_or_cwd()

    @property
    def templates_dirs(self) -> list[Path]:
        dirs = [GLOBAL_DIR / "templates", self.project_root / SLAB_DIR_NAME / "templates"]
        if self.paths.templates:
            dirs.append(self.paths.templates)
        return dirs

    @property
    def rules_dir(self) -> Path:
        return self.paths.rules or self.project_root / SLAB_DIR_NAME / "rules"

    @property
    def sessions_dir(self) -> Path:
        return self.project_root / SLAB_DIR_NAME / "sessions"

    def options_for(self, model: str) -> dict:
        """Sampling options for `model`, falling back to the global defaults."""
        override = self.models.get(model) or ModelConfig()
        return {
            "temperature": override.temperature if override.temperature is not None else self.temperature,
            "top_p": override.top_p if override.top_p is not None else self.top_p,
            "num_ctx": self.context_limit,
        }

    def system_prompt_for(self, model: str) -> str:
        override = self.models.get(model)
        if override and override.system_prompt:
            return override.system_prompt
        return self.system_prompt


PERSIST_KEYS = frozenset({"default_model"})


def get_config(**overrides) -> Config:
    settings = load_user_settings()
    # Build config: explicit overrides > settings.json > env vars > toml > defaults
    merged = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return Config(**merged)


def remember_model(model: str) -> None:
    settings = load_user_settings()
    settings["default_model"] = model
    save_user_settings(settings)
