"""State, engine and status enums.

This module also holds the small helpers that map engines to their default
templates and decide which engines may be invoked concurrently.
"""

from __future__ import annotations

from enum import Enum


class StateMode(str, Enum):
    """Whether members keep a conversation handle between invocations."""

    STATELESS = "stateless"
    STATEFUL = "stateful"


class Engine(str, Enum):
    """Supported command-line agents."""

    CURSOR_AGENT = "cursor-agent"
    CLAUDE = "claude"
    CODEX = "codex"


class ExecutionMode(str, Enum):
    """How the members of one squad are scheduled."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class MemberStatus(str, Enum):
    """Terminal status reported for one member."""

    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"


class AgentStatus(str, Enum):
    """Lifecycle status recorded by telemetry for one agent row."""

    STARTING = "starting"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


# cursor-agent shares one on-disk CLI config between invocations and corrupts
# it when several processes start at once.
SERIAL_ONLY_ENGINES: frozenset[Engine] = frozenset({Engine.CURSOR_AGENT})


def engine_supports_parallel(engine: Engine | str) -> bool:
    """Return True if the engine may be invoked concurrently."""
    engine_id = engine if isinstance(engine, Engine) else Engine(engine)
    return engine_id not in SERIAL_ONLY_ENGINES


def default_run_template(engine: Engine | str) -> str:
    """Name of the built-in run template for an engine."""
    engine_id = engine.value if isinstance(engine, Engine) else str(engine)
    return f"run-{engine_id}.template"


def default_create_chat_template(engine: Engine | str) -> str:
    """Name of the built-in create-chat template for an engine."""
    engine_id = engine.value if isinstance(engine, Engine) else str(engine)
    return f"create-chat-{engine_id}.template"
