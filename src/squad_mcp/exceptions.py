"""
Squad MCP Exception Hierarchy.

All custom exceptions inherit from SquadError for unified error handling.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class SquadError(Exception):
    """Base exception for squad errors.

    All squad exceptions inherit from this class to allow catching
    any squad-related error with a single except clause.

    Attributes:
        message: Human-readable error description
        context: Additional context for debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self._log_error()

    def _log_error(self) -> None:
        """Log the error creation at debug level.

        Callers should log at appropriate level when handling the exception.
        """
        logger.debug(
            f"{self.__class__.__name__}: {self.message}",
            extra={"error_context": self.context},
        )

    def __str__(self) -> str:
        return self.message


class ConfigError(SquadError):
    """Raised for configuration errors.

    Examples:
        - Invalid state mode or engine
        - Custom run template without an execution mode
        - Malformed config file
    """


class RoleNotFound(SquadError):
    """Raised when a member references a role id the role provider does not know."""

    def __init__(self, role_id: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["role_id"] = role_id
        super().__init__(f"Role not found: {role_id}", ctx)
        self.role_id = role_id


class RenderError(SquadError):
    """Raised when a command template cannot be evaluated.

    Attributes:
        template_excerpt: First 100 characters of the template
        original_error: The underlying parser error
    """

    def __init__(
        self,
        message: str,
        template_excerpt: str | None = None,
        original_error: Exception | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if template_excerpt is not None:
            ctx["template_excerpt"] = template_excerpt
        if original_error:
            ctx["original_error"] = str(original_error)
        super().__init__(message, ctx)
        self.template_excerpt = template_excerpt
        self.original_error = original_error


class EmptyCommandError(SquadError):
    """Raised when a template renders to whitespace only."""

    def __init__(self, template_path: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["template_path"] = template_path
        super().__init__(f"Template {template_path} rendered to empty command", ctx)
        self.template_path = template_path


class CreateHandleFailed(SquadError):
    """Raised when the create-chat command exits unsuccessfully."""

    def __init__(
        self,
        output: str,
        exit_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["exit_code"] = exit_code
        super().__init__(f"Failed to create chat: {output}", ctx)
        self.output = output
        self.exit_code = exit_code


class HandleExtractionFailed(SquadError):
    """Raised when the create-chat command succeeds but prints no handle."""

    def __init__(self, context: dict[str, Any] | None = None) -> None:
        super().__init__("Failed to extract chatId from create-chat output", context)


class ProcessSpawnError(SquadError):
    """Describes a child process that could not be started.

    The process runner builds one for logging and reports its message through
    ``ProcessResult.spawn_error`` instead of raising.
    """

    def __init__(
        self,
        message: str,
        command: str | None = None,
        cwd: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if cwd:
            ctx["cwd"] = cwd
        super().__init__(message, ctx)
        self.command = command
        self.cwd = cwd
