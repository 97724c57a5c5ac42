"""
Wire contracts for squad batches.

Requests are pydantic models so the server and CLI get validation for free;
both camelCase wire names and snake_case attribute names are accepted.
Results are plain dataclasses serialized back to the camelCase wire shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from squad_mcp.models import MemberStatus


class MemberRequest(BaseModel):
    """One member of a batch: a role bound to a task."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    role_id: str = Field(alias="roleId")
    task: str
    cwd: str | None = None
    chat_id: str | None = Field(default=None, alias="chatId")

    @field_validator("role_id")
    @classmethod
    def _validate_role_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be a non-empty string")
        return value.strip()


class SquadRequest(BaseModel):
    """A batch of members started together."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    members: list[MemberRequest]
    metadata: dict[str, Any] | None = None
    orchestrator_chat_id: str | None = Field(default=None, alias="orchestratorChatId")
    workspace_id: str | None = Field(default=None, alias="workspaceId")

    @classmethod
    def single(
        cls,
        role_id: str,
        task: str,
        *,
        cwd: str | None = None,
        chat_id: str | None = None,
    ) -> SquadRequest:
        """Build a one-member batch."""
        return cls(members=[MemberRequest(role_id=role_id, task=task, cwd=cwd, chat_id=chat_id)])


@dataclass
class MemberResult:
    """Outcome of one member."""

    member_id: str
    role_id: str
    status: MemberStatus
    raw_stdout: str
    raw_stderr: str
    cwd: str | None = None
    chat_id: str | None = None

    @property
    def success(self) -> bool:
        return self.status == MemberStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "memberId": self.member_id,
            "roleId": self.role_id,
        }
        if self.cwd is not None:
            data["cwd"] = self.cwd
        data["status"] = MemberStatus(self.status).value
        data["rawStdout"] = self.raw_stdout
        data["rawStderr"] = self.raw_stderr
        if self.chat_id is not None:
            data["chatId"] = self.chat_id
        return data


@dataclass
class SquadResult:
    """Aggregated result of one batch, in request order."""

    squad_id: str
    members: list[MemberResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(m.success for m in self.members)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire shape."""
        return {
            "squadId": self.squad_id,
            "members": [m.to_dict() for m in self.members],
        }

    def to_json(self, *, indent: int | None = None) -> str:
        """Serialize to JSON."""
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)
