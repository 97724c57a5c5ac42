"""squad-mcp - Dispatch role-bound squad members to command-line AI agents."""

__version__ = "1.0.2"

# Re-export core components for convenience
from .config import SquadConfig, configure_logging
from .contracts import MemberRequest, MemberResult, SquadRequest, SquadResult
from .exceptions import (
    ConfigError,
    CreateHandleFailed,
    EmptyCommandError,
    HandleExtractionFailed,
    ProcessSpawnError,
    RenderError,
    RoleNotFound,
    SquadError,
)
from .models import AgentStatus, Engine, ExecutionMode, MemberStatus, StateMode
from .prompts import PromptBuilder
from .roles import RoleDefinition, RoleRepository
from .runner import ProcessResult, ProcessRunner, ProcessState, kill_all_children
from .squad import SquadOrchestrator, map_status
from .telemetry import NullTelemetry, SquadTelemetryStore, TelemetrySink
from .templates import TemplateRenderer, escape_for_double_quotes, split_args

__all__ = [
    "__version__",
    # Orchestration
    "SquadOrchestrator",
    "map_status",
    "SquadConfig",
    "configure_logging",
    # Contracts
    "MemberRequest",
    "MemberResult",
    "SquadRequest",
    "SquadResult",
    # Building blocks
    "PromptBuilder",
    "ProcessResult",
    "ProcessRunner",
    "ProcessState",
    "kill_all_children",
    "RoleDefinition",
    "RoleRepository",
    "TemplateRenderer",
    "escape_for_double_quotes",
    "split_args",
    # Telemetry
    "NullTelemetry",
    "SquadTelemetryStore",
    "TelemetrySink",
    # Enums
    "AgentStatus",
    "Engine",
    "ExecutionMode",
    "MemberStatus",
    "StateMode",
    # Exceptions
    "SquadError",
    "ConfigError",
    "CreateHandleFailed",
    "EmptyCommandError",
    "HandleExtractionFailed",
    "ProcessSpawnError",
    "RenderError",
    "RoleNotFound",
]
