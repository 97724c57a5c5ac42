"""Configuration management for squad-mcp."""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from squad_mcp.exceptions import ConfigError
from squad_mcp.models import (
    Engine,
    ExecutionMode,
    StateMode,
    default_create_chat_template,
    default_run_template,
)

ENV_PREFIX = "SQUAD_"
DEFAULT_TIMEOUT_MS = 600_000
DEFAULT_SEQUENTIAL_DELAY_MS = 100
# Used when the configured delay is not a number at all.
FALLBACK_SEQUENTIAL_DELAY_MS = 1000

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}
_LOG_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


def _parse_log_level(level: str) -> int:
    normalized = level.strip().lower()
    if normalized in _LOG_LEVELS:
        return _LOG_LEVELS[normalized]
    valid = ", ".join(sorted({k for k in _LOG_LEVELS if k != "warn"}))
    raise ValueError(f"Invalid log level: {level}. Valid: {valid}")


def _parse_bool(value: str | bool | None) -> bool | None:
    """Parse a boolean-ish env value. Unrecognized or empty input is None."""
    if value is None or isinstance(value, bool):
        return value
    normalized = value.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    return None


def _choice(enum_cls: type, value: Any, label: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    valid_values = [member.value for member in enum_cls]
    normalized = str(value).strip().lower()
    if normalized not in valid_values:
        valid = ", ".join(f"'{v}'" for v in valid_values)
        raise ConfigError(
            f"Invalid {label}: {value}. Must be one of {valid}",
            {"field": label, "value": value},
        )
    return enum_cls(normalized)


class _StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_KEYS
        }
        for key, value in extras.items():
            if isinstance(value, (str, int, float, bool)) or value is None:
                payload[key] = value
            else:
                payload[key] = str(value)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(config: SquadConfig) -> None:
    """Configure structured logging.

    Logs go to stderr or ``config.log_file``; stdout is reserved for the
    JSON-RPC stream.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler: logging.Handler
    if config.log_file:
        handler = logging.FileHandler(config.log_file)
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.NOTSET)
    handler.setFormatter(_StructuredFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(_parse_log_level(config.log_level))
    if config.debug:
        logging.getLogger("squad_mcp.runner").setLevel(logging.INFO)


def builtin_template_path(name: str) -> Path:
    """Path of a template shipped inside the package."""
    return Path(str(resources.files("squad_mcp").joinpath("command_templates", name)))


class SquadConfig(BaseModel):
    """Execution configuration. Built once and never mutated."""

    model_config = ConfigDict(frozen=True)

    state_mode: StateMode = Field(default=StateMode.STATELESS, description="stateless or stateful")
    engine: Engine = Field(default=Engine.CURSOR_AGENT, description="Agent CLI the templates drive")
    execution_mode: ExecutionMode | None = Field(
        default=None,
        description="Explicit sequential/parallel choice (None = engine default)",
    )
    run_template_path: str | None = Field(
        default=None,
        description="Custom run template (None = built-in template for the engine)",
    )
    create_chat_template_path: str | None = Field(
        default=None,
        description="Custom create-chat template (stateful only)",
    )
    agents_directory_path: str = Field(default="agents", description="Directory of role .md files")
    process_timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS, ge=1, description="Per-member process timeout"
    )
    sequential_delay_ms: int = Field(
        default=DEFAULT_SEQUENTIAL_DELAY_MS,
        description="Pause between members in sequential mode",
    )
    serialize: bool | None = Field(
        default=None,
        description="Process-wide override: True forces sequential, False forces parallel",
    )
    debug: bool = Field(default=False, description="Log every spawned command")
    db_path: str | None = Field(default=None, description="Telemetry database path")
    telemetry_enabled: bool = Field(default=True, description="Record squads in SQLite")
    log_level: str = Field(default="warning", description="Log level")
    log_file: str | None = Field(
        default=None,
        description="Optional log file path (structured JSON)",
    )

    @field_validator("state_mode", mode="before")
    @classmethod
    def _validate_state_mode(cls, value: Any) -> StateMode:
        return _choice(StateMode, value, "state mode")

    @field_validator("engine", mode="before")
    @classmethod
    def _validate_engine(cls, value: Any) -> Engine:
        return _choice(Engine, value, "engine")

    @field_validator("execution_mode", mode="before")
    @classmethod
    def _validate_execution_mode(cls, value: Any) -> ExecutionMode | None:
        if value is None or value == "":
            return None
        return _choice(ExecutionMode, value, "execution mode")

    @field_validator("sequential_delay_ms", mode="before")
    @classmethod
    def _validate_sequential_delay(cls, value: Any) -> int:
        try:
            delay = int(value)
        except (TypeError, ValueError):
            return FALLBACK_SEQUENTIAL_DELAY_MS
        return max(0, delay)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        _parse_log_level(value)
        return value.strip().lower()

    @model_validator(mode="after")
    def _require_mode_for_custom_template(self) -> SquadConfig:
        if self.run_template_path and self.execution_mode is None:
            raise ConfigError(
                "An execution mode is required when providing a custom run template. "
                "Set SQUAD_EXECUTION_MODE=sequential|parallel or pass --execution-mode.",
                {"run_template_path": self.run_template_path},
            )
        return self

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_file(cls, path: str | Path) -> SquadConfig:
        """Load configuration from TOML file."""
        return cls(**cls._file_data(path))

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> SquadConfig:
        """Load configuration from ``SQUAD_*`` environment variables."""
        return cls(**cls._env_data(os.environ if env is None else env))

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> SquadConfig:
        """Defaults, then the TOML file, then the environment, then overrides.

        Overrides that are None are ignored so unset CLI flags fall through.
        """
        data = cls._file_data(path if path is not None else cls.default_path())
        data.update(cls._env_data(os.environ if env is None else env))
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)

    @classmethod
    def default_path(cls) -> Path:
        """Get default config file path."""
        return Path.home() / ".config" / "squad-mcp" / "config.toml"

    @staticmethod
    def _file_data(path: str | Path) -> dict[str, Any]:
        import tomllib

        path = Path(path).expanduser()
        if not path.exists():
            return {}
        try:
            with open(path, "rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Failed to read config file {path}: {e}", {"path": str(path)}) from e

    @staticmethod
    def _env_data(env: Mapping[str, str]) -> dict[str, Any]:
        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        data: dict[str, Any] = {}
        for field_name, env_name in (
            ("state_mode", "STATE_MODE"),
            ("engine", "ENGINE"),
            ("execution_mode", "EXECUTION_MODE"),
            ("run_template_path", "RUN_TEMPLATE_PATH"),
            ("create_chat_template_path", "CREATE_CHAT_TEMPLATE_PATH"),
            ("agents_directory_path", "AGENTS_DIR"),
            ("sequential_delay_ms", "SEQUENTIAL_DELAY_MS"),
            ("db_path", "DB_PATH"),
            ("log_level", "LOG_LEVEL"),
            ("log_file", "LOG_FILE"),
        ):
            value = get(env_name)
            if value is not None:
                data[field_name] = value

        timeout = get("PROCESS_TIMEOUT_MS")
        if timeout is not None:
            try:
                data["process_timeout_ms"] = int(timeout)
            except ValueError as e:
                raise ConfigError(
                    f"Invalid SQUAD_PROCESS_TIMEOUT_MS: {timeout}. Must be an integer",
                    {"value": timeout},
                ) from e

        for field_name, env_name in (
            ("serialize", "SERIALIZE"),
            ("debug", "DEBUG"),
            ("telemetry_enabled", "TELEMETRY"),
        ):
            flag = _parse_bool(get(env_name))
            if flag is not None:
                data[field_name] = flag
        return data

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def has_custom_run_template(self) -> bool:
        return bool(self.run_template_path)

    def resolved_run_template_path(self) -> Path:
        if self.run_template_path:
            return Path(self.run_template_path).expanduser()
        return builtin_template_path(default_run_template(self.engine))

    def resolved_create_chat_template_path(self) -> Path | None:
        """Create-chat template; only stateful mode gets a default."""
        if self.create_chat_template_path:
            return Path(self.create_chat_template_path).expanduser()
        if self.state_mode == StateMode.STATEFUL:
            return builtin_template_path(default_create_chat_template(self.engine))
        return None

    def resolved_db_path(self) -> Path:
        from squad_mcp.telemetry import resolve_db_path

        return resolve_db_path(self.db_path)

    def to_display_dict(self) -> dict[str, Any]:
        """Effective settings, with template and database paths resolved."""
        data = self.model_dump(mode="json")
        data["run_template_path"] = str(self.resolved_run_template_path())
        create_chat = self.resolved_create_chat_template_path()
        data["create_chat_template_path"] = str(create_chat) if create_chat else None
        data["db_path"] = str(self.resolved_db_path())
        return data
