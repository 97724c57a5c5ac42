"""
Squad Telemetry - SQLite-backed record of sessions, squads and agents.

Telemetry is strictly best effort: the orchestrator catches every failure
coming out of a sink, so nothing here may change the outcome of a batch.
"""

from __future__ import annotations

import os
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from squad_mcp.models import AgentStatus

DEFAULT_DB_DIR = Path.home() / ".squad-mcp"


def resolve_db_path(explicit: str | Path | None = None) -> Path:
    """Resolve the telemetry database path.

    Priority: explicit value, then ``SQUAD_DB_PATH``, then ``~/.squad-mcp/squad.db``.
    """
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.environ.get("SQUAD_DB_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_DB_DIR / "squad.db"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SquadRecord:
    """Persistent record of one squad (one batch)."""

    squad_id: str
    originator_id: str
    label: str
    created_at: str


@dataclass
class AgentRecord:
    """Persistent record of one squad member execution."""

    agent_id: str
    squad_id: str
    role_name: str
    status: str
    started_at: str
    task: str | None = None
    prompt: str | None = None
    result: str | None = None
    error: str | None = None
    finished_at: str | None = None


class TelemetrySink(Protocol):
    """What the orchestrator reports to. Every method may raise."""

    def ensure_session(self, orchestrator_chat_id: str | None = None, workspace_id: str | None = None) -> str: ...

    def create_squad(self, originator_id: str, label: str) -> str: ...

    def create_agent(self, squad_id: str, role_name: str, task: str | None, prompt: str | None) -> str: ...

    def update_agent_status(
        self,
        originator_id: str,
        agent_id: str,
        status: AgentStatus,
        *,
        result: str | None = None,
        error: str | None = None,
        finished: bool = False,
    ) -> None: ...


class NullTelemetry:
    """Sink that records nothing and hands out fresh identifiers."""

    def ensure_session(self, orchestrator_chat_id: str | None = None, workspace_id: str | None = None) -> str:
        return orchestrator_chat_id or workspace_id or os.getcwd()

    def create_squad(self, originator_id: str, label: str) -> str:
        return str(uuid.uuid4())

    def create_agent(self, squad_id: str, role_name: str, task: str | None, prompt: str | None) -> str:
        return str(uuid.uuid4())

    def update_agent_status(
        self,
        originator_id: str,
        agent_id: str,
        status: AgentStatus,
        *,
        result: str | None = None,
        error: str | None = None,
        finished: bool = False,
    ) -> None:
        return None


class SquadTelemetryStore:
    """SQLite-backed telemetry sink.

    Usage:
        store = SquadTelemetryStore("squad.db")
        originator = store.ensure_session(workspace_id="/repo")
        squad_id = store.create_squad(originator, "frontend, qa")
        agent_id = store.create_agent(squad_id, "frontend", "Build it", prompt)
        store.update_agent_status(originator, agent_id, AgentStatus.DONE, result="ok", finished=True)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _create_tables(self) -> None:
        """Create tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS sessions (
                originator_id TEXT PRIMARY KEY,
                orchestrator_chat_id TEXT,
                workspace_id TEXT,
                created_at TEXT NOT NULL,
                last_activity_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS squads (
                squad_id TEXT PRIMARY KEY,
                originator_id TEXT NOT NULL,
                label TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (originator_id) REFERENCES sessions(originator_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS agents (
                agent_id TEXT PRIMARY KEY,
                squad_id TEXT NOT NULL,
                role_name TEXT NOT NULL,
                task TEXT,
                prompt TEXT,
                status TEXT NOT NULL DEFAULT 'starting',
                result TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                FOREIGN KEY (squad_id) REFERENCES squads(squad_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_agents_squad ON agents(squad_id);
        """)
        self._conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> SquadTelemetryStore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Sessions ---

    def ensure_session(self, orchestrator_chat_id: str | None = None, workspace_id: str | None = None) -> str:
        """Create or touch the session for this caller. Returns the originator id."""
        originator_id = orchestrator_chat_id or workspace_id or os.getcwd()
        now = _now()
        row = self._conn.execute(
            "SELECT * FROM sessions WHERE originator_id = ?", (originator_id,)
        ).fetchone()

        if row is None:
            self._conn.execute(
                "INSERT INTO sessions (originator_id, orchestrator_chat_id, workspace_id, "
                "created_at, last_activity_at) VALUES (?, ?, ?, ?, ?)",
                (originator_id, orchestrator_chat_id, workspace_id or os.getcwd(), now, now),
            )
        else:
            # Only fill in identifiers the session did not have yet.
            self._conn.execute(
                "UPDATE sessions SET last_activity_at = ?, "
                "orchestrator_chat_id = COALESCE(orchestrator_chat_id, ?), "
                "workspace_id = COALESCE(workspace_id, ?) WHERE originator_id = ?",
                (now, orchestrator_chat_id, workspace_id, originator_id),
            )
        self._conn.commit()
        return originator_id

    def _touch_session(self, originator_id: str) -> None:
        self._conn.execute(
            "UPDATE sessions SET last_activity_at = ? WHERE originator_id = ?",
            (_now(), originator_id),
        )

    # --- Squads ---

    def create_squad(self, originator_id: str, label: str) -> str:
        """Record a new squad. Returns the squad id."""
        squad_id = str(uuid.uuid4())
        self._conn.execute(
            "INSERT INTO squads (squad_id, originator_id, label, created_at) VALUES (?, ?, ?, ?)",
            (squad_id, originator_id, label, _now()),
        )
        self._touch_session(originator_id)
        self._conn.commit()
        return squad_id

    def list_squads(self, limit: int = 20) -> list[SquadRecord]:
        """List recent squads, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM squads ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        return [
            SquadRecord(
                squad_id=r["squad_id"],
                originator_id=r["originator_id"],
                label=r["label"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # --- Agents ---

    def create_agent(self, squad_id: str, role_name: str, task: str | None, prompt: str | None) -> str:
        """Record a member about to start. Returns the agent id."""
        agent_id = str(uuid.uuid4())
        self._conn.execute(
            "INSERT INTO agents (agent_id, squad_id, role_name, task, prompt, status, started_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (agent_id, squad_id, role_name, task, prompt, AgentStatus.STARTING.value, _now()),
        )
        self._conn.commit()
        return agent_id

    def update_agent_status(
        self,
        originator_id: str,
        agent_id: str,
        status: AgentStatus,
        *,
        result: str | None = None,
        error: str | None = None,
        finished: bool = False,
    ) -> None:
        """Move an agent to a new status, optionally storing its outcome."""
        self._conn.execute(
            "UPDATE agents SET status = ?, result = COALESCE(?, result), "
            "error = COALESCE(?, error), finished_at = COALESCE(?, finished_at) "
            "WHERE agent_id = ?",
            (AgentStatus(status).value, result, error, _now() if finished else None, agent_id),
        )
        self._touch_session(originator_id)
        self._conn.commit()

    def get_agents(self, squad_id: str) -> list[AgentRecord]:
        """Get all agents of a squad in start order."""
        rows = self._conn.execute(
            "SELECT * FROM agents WHERE squad_id = ? ORDER BY started_at, rowid", (squad_id,)
        ).fetchall()
        return [
            AgentRecord(
                agent_id=r["agent_id"],
                squad_id=r["squad_id"],
                role_name=r["role_name"],
                status=r["status"],
                started_at=r["started_at"],
                task=r["task"],
                prompt=r["prompt"],
                result=r["result"],
                error=r["error"],
                finished_at=r["finished_at"],
            )
            for r in rows
        ]
