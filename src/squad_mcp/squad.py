"""Squad - Dispatch a batch of role-bound members to an agent CLI.

For every member the orchestrator resolves the role, builds the prompt,
renders the run template and supervises the resulting process. Stateful
squads additionally mint a conversation handle through the create-chat
template when the caller did not supply one.

Usage::

    from squad_mcp import SquadConfig, SquadOrchestrator, SquadRequest

    orchestrator = SquadOrchestrator.from_config(SquadConfig.load())
    result = await orchestrator.start(
        SquadRequest.single("frontend", "Build the login form")
    )
    print(result.to_json(indent=2))
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from squad_mcp.config import SquadConfig
from squad_mcp.contracts import MemberRequest, MemberResult, SquadRequest, SquadResult
from squad_mcp.exceptions import (
    ConfigError,
    CreateHandleFailed,
    EmptyCommandError,
    HandleExtractionFailed,
    RenderError,
    SquadError,
)
from squad_mcp.models import (
    AgentStatus,
    ExecutionMode,
    MemberStatus,
    StateMode,
    engine_supports_parallel,
)
from squad_mcp.prompts import PromptBuilder
from squad_mcp.roles import RoleDefinition, RoleRepository
from squad_mcp.runner import ProcessResult, ProcessRunner
from squad_mcp.telemetry import NullTelemetry, SquadTelemetryStore, TelemetrySink
from squad_mcp.templates import RenderedCommand, TemplateRenderer, escape_for_double_quotes

logger = logging.getLogger(__name__)

T = TypeVar("T")


def map_status(result: ProcessResult) -> MemberStatus:
    """Map a process outcome onto the member status vocabulary.

    A timeout wins over any exit code.
    """
    if result.timed_out:
        return MemberStatus.TIMEOUT
    if result.exit_code == 0:
        return MemberStatus.COMPLETED
    return MemberStatus.ERROR


def resolve_member_cwd(member_cwd: str | None, workspace_root: str) -> str:
    """Join a member's working directory onto the workspace root.

    Absolute member paths win; no path means the root itself.
    """
    if not member_cwd:
        return workspace_root
    return os.path.normpath(os.path.join(workspace_root, os.path.expanduser(member_cwd)))


@dataclass
class _Template:
    path: Path
    text: str


@dataclass
class _BatchContext:
    """Everything the member pipelines of one batch share."""

    squad_id: str
    originator_id: str | None
    workspace_root: str
    stateful: bool
    run_template: _Template
    create_chat_template: _Template | None = None


class SquadOrchestrator:
    """Runs squads of members against the configured engine.

    Usage::

        orchestrator = SquadOrchestrator(config, roles=RoleRepository("agents"))
        result = await orchestrator.start_stateless(request)
    """

    def __init__(
        self,
        config: SquadConfig,
        *,
        roles: RoleRepository | None = None,
        runner: ProcessRunner | None = None,
        renderer: TemplateRenderer | None = None,
        prompts: PromptBuilder | None = None,
        telemetry: TelemetrySink | None = None,
        workspace_root: str | Path | None = None,
    ) -> None:
        self._config = config
        self._roles = roles or RoleRepository(config.agents_directory_path)
        self._runner = runner or ProcessRunner(debug=config.debug)
        self._renderer = renderer or TemplateRenderer()
        self._prompts = prompts or PromptBuilder()
        self._telemetry: TelemetrySink = telemetry or NullTelemetry()
        self._workspace_root = str(workspace_root) if workspace_root is not None else None
        self._owned_store: SquadTelemetryStore | None = None

    @classmethod
    def from_config(cls, config: SquadConfig, **kwargs: Any) -> SquadOrchestrator:
        """Build an orchestrator, opening the telemetry store when enabled."""
        store = None
        if "telemetry" not in kwargs and config.telemetry_enabled:
            try:
                store = kwargs["telemetry"] = SquadTelemetryStore(config.resolved_db_path())
            except Exception as e:
                logger.debug(f"Telemetry disabled, store could not be opened: {e}")
        orchestrator = cls(config, **kwargs)
        orchestrator._owned_store = store
        return orchestrator

    def close(self) -> None:
        """Close the telemetry store opened by :meth:`from_config`.

        Sinks passed in by the caller are left alone.
        """
        if self._owned_store is not None:
            self._owned_store.close()
            self._owned_store = None
            self._telemetry = NullTelemetry()

    async def __aenter__(self) -> SquadOrchestrator:
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.close()

    @property
    def config(self) -> SquadConfig:
        return self._config

    @property
    def roles(self) -> RoleRepository:
        return self._roles

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def list_roles(self) -> dict[str, Any]:
        return {"roles": [role.summary() for role in self._roles.get_all_roles()]}

    async def start(self, request: SquadRequest | dict[str, Any]) -> SquadResult:
        """Run a batch in the configured state mode."""
        if self._config.state_mode == StateMode.STATEFUL:
            return await self.start_stateful(request)
        return await self.start_stateless(request)

    async def start_stateless(self, request: SquadRequest | dict[str, Any]) -> SquadResult:
        return await self._run_batch(self._coerce(request), stateful=False)

    async def start_stateful(self, request: SquadRequest | dict[str, Any]) -> SquadResult:
        return await self._run_batch(self._coerce(request), stateful=True)

    def resolve_execution_mode(self) -> ExecutionMode:
        """Pick sequential or parallel scheduling for the next batch.

        Priority: the process-wide ``serialize`` override, then an explicit
        execution mode, then the engine default.
        """
        if self._config.serialize is True:
            return ExecutionMode.SEQUENTIAL
        if self._config.serialize is False:
            return ExecutionMode.PARALLEL
        if self._config.execution_mode is not None:
            return self._config.execution_mode
        if engine_supports_parallel(self._config.engine):
            return ExecutionMode.PARALLEL
        return ExecutionMode.SEQUENTIAL

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce(request: SquadRequest | dict[str, Any]) -> SquadRequest:
        if isinstance(request, SquadRequest):
            return request
        return SquadRequest.model_validate(request)

    async def _run_batch(self, request: SquadRequest, *, stateful: bool) -> SquadResult:
        # Unknown roles fail the batch before anything is spawned.
        roles = [self._roles.require(member.role_id) for member in request.members]

        run_template = await self._read_template(self._config.resolved_run_template_path())
        create_chat_template = None
        if stateful and any(not member.chat_id for member in request.members):
            path = self._config.resolved_create_chat_template_path()
            if path is None:
                raise ConfigError("Stateful squads need a create-chat template")
            create_chat_template = await self._read_template(path)

        originator_id = self._best_effort(
            self._telemetry.ensure_session,
            request.orchestrator_chat_id,
            request.workspace_id,
        )
        label = str((request.metadata or {}).get("label") or ", ".join(r.id for r in roles))
        squad_id = None
        if originator_id is not None:
            squad_id = self._best_effort(self._telemetry.create_squad, originator_id, label)

        batch = _BatchContext(
            squad_id=squad_id or str(uuid.uuid4()),
            originator_id=originator_id,
            workspace_root=self._workspace_root or os.getcwd(),
            stateful=stateful,
            run_template=run_template,
            create_chat_template=create_chat_template,
        )

        mode = self.resolve_execution_mode()
        logger.info(
            f"Starting squad {batch.squad_id}: {len(request.members)} member(s), "
            f"{'stateful' if stateful else 'stateless'}, {mode.value}"
        )

        if mode == ExecutionMode.SEQUENTIAL:
            members = await self._run_sequential(batch, request.members, roles)
        else:
            members = await self._run_parallel(batch, request.members, roles)
        return SquadResult(squad_id=batch.squad_id, members=members)

    async def _run_sequential(
        self,
        batch: _BatchContext,
        members: list[MemberRequest],
        roles: list[RoleDefinition],
    ) -> list[MemberResult]:
        results: list[MemberResult] = []
        delay = self._config.sequential_delay_ms / 1000
        for index, (member, role) in enumerate(zip(members, roles)):
            results.append(await self._run_member(batch, index, member, role))
            if delay > 0 and index < len(members) - 1:
                await asyncio.sleep(delay)
        return results

    async def _run_parallel(
        self,
        batch: _BatchContext,
        members: list[MemberRequest],
        roles: list[RoleDefinition],
    ) -> list[MemberResult]:
        outcomes = await asyncio.gather(
            *(self._run_member(batch, i, member, role) for i, (member, role) in enumerate(zip(members, roles))),
            return_exceptions=True,
        )
        # Every member has settled; surface the first failure in request order.
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    # ------------------------------------------------------------------
    # Member pipeline
    # ------------------------------------------------------------------

    async def _run_member(
        self,
        batch: _BatchContext,
        index: int,
        member: MemberRequest,
        role: RoleDefinition,
    ) -> MemberResult:
        cwd = resolve_member_cwd(member.cwd, batch.workspace_root)
        context: dict[str, Any] = {
            "cwd": cwd,
            "workingDirectory": cwd,
            "roleId": member.role_id,
            "task": member.task,
        }

        chat_id = (member.chat_id or None) if batch.stateful else None
        new_chat = batch.stateful and chat_id is None
        if not batch.stateful:
            prompt = self._prompts.build_stateless(role, member.task)
        elif new_chat:
            prompt = self._prompts.build_stateful_new_chat(role, member.task)
        else:
            prompt = self._prompts.build_stateful_existing_chat(member.task)

        agent_id = self._record_start(batch, role, member.task, prompt)
        try:
            if new_chat:
                chat_id = await self._create_chat(batch, member, cwd)
            if batch.stateful:
                context.update(chatId=chat_id, conversationHandle=chat_id, newChat=new_chat)
            context["prompt"] = escape_for_double_quotes(prompt)
            command = self._render(batch.run_template, context, "Failed to render template")
        except SquadError as e:
            self._record_finish(batch, agent_id, MemberStatus.ERROR, "", str(e))
            raise

        result = await self._runner.run(command.text, cwd, self._config.process_timeout_ms)
        status = map_status(result)

        raw_stderr = result.stderr
        if result.spawn_error:
            raw_stderr = f"{raw_stderr}\n{result.spawn_error}" if raw_stderr else result.spawn_error

        logger.info(
            f"Member {member.role_id} ({index}) finished: {status.value} "
            f"exit={result.exit_code} in {result.duration_ms:.0f}ms"
        )
        self._record_finish(batch, agent_id, status, result.stdout, raw_stderr)

        return MemberResult(
            member_id=f"{batch.squad_id}-m{index}",
            role_id=member.role_id,
            status=status,
            raw_stdout=result.stdout,
            raw_stderr=raw_stderr,
            cwd=member.cwd,
            chat_id=chat_id,
        )

    async def _create_chat(self, batch: _BatchContext, member: MemberRequest, cwd: str) -> str:
        """Run the create-chat template and return the new handle."""
        template = batch.create_chat_template
        assert template is not None
        generated = str(uuid.uuid4())
        context = {
            "generatedUuid": generated,
            "generatedToken": generated,
            "cwd": cwd,
            "workingDirectory": cwd,
            "roleId": member.role_id,
            "task": member.task,
        }
        command = self._render(template, context, "Failed to render create-chat template")

        result = await self._runner.run(command.text, cwd, self._config.process_timeout_ms)
        if result.timed_out or result.exit_code != 0:
            output = (
                result.stderr.strip()
                or result.stdout.strip()
                or result.spawn_error
                or ("timed out" if result.timed_out else f"exit code {result.exit_code}")
            )
            raise CreateHandleFailed(output, exit_code=result.exit_code, context={"role_id": member.role_id})

        handle = result.stdout.strip()
        if not handle:
            raise HandleExtractionFailed({"role_id": member.role_id})
        logger.debug(f"Created chat {handle} for {member.role_id}")
        return handle

    def _render(self, template: _Template, context: dict[str, Any], failure: str) -> RenderedCommand:
        try:
            command = self._renderer.render_command(template.text, context)
        except RenderError as e:
            raise RenderError(
                f"{failure} {template.path}: {e.message}",
                template_excerpt=e.template_excerpt,
                original_error=e,
            ) from e
        if command.is_empty:
            raise EmptyCommandError(str(template.path))
        logger.debug(f"Rendered {template.path.name}: {command.head} (+{len(command.args) - 1} args)")
        return command

    @staticmethod
    async def _read_template(path: Path) -> _Template:
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Failed to read template {path}: {e}", {"path": str(path)}) from e
        return _Template(path=path, text=text)

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    @staticmethod
    def _best_effort(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.debug(f"Telemetry call {getattr(fn, '__name__', fn)} failed: {e}")
            return None

    def _record_start(self, batch: _BatchContext, role: RoleDefinition, task: str, prompt: str) -> str | None:
        if batch.originator_id is None:
            return None
        agent_id = self._best_effort(self._telemetry.create_agent, batch.squad_id, role.id, task, prompt)
        if agent_id is not None:
            self._best_effort(
                self._telemetry.update_agent_status,
                batch.originator_id,
                agent_id,
                AgentStatus.RUNNING,
            )
        return agent_id

    def _record_finish(
        self,
        batch: _BatchContext,
        agent_id: str | None,
        status: MemberStatus,
        stdout: str,
        stderr: str,
    ) -> None:
        if agent_id is None or batch.originator_id is None:
            return
        if status == MemberStatus.COMPLETED:
            self._best_effort(
                self._telemetry.update_agent_status,
                batch.originator_id,
                agent_id,
                AgentStatus.DONE,
                result=stdout,
                finished=True,
            )
        else:
            self._best_effort(
                self._telemetry.update_agent_status,
                batch.originator_id,
                agent_id,
                AgentStatus.ERROR,
                result=stdout or None,
                error=stderr or status.value,
                finished=True,
            )
