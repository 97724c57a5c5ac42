"""
Role discovery - Load role definitions from Markdown files.

Each ``<agents_dir>/<id>.md`` file defines one role. An optional front-matter
block supplies ``name`` and ``description``; the rest of the file is the role
body injected into prompts.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from squad_mcp.exceptions import RoleNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoleDefinition:
    """A role a squad member can be bound to."""

    id: str
    name: str
    description: str
    body: str

    @classmethod
    def from_file(cls, path: Path) -> RoleDefinition:
        """Parse a role from a Markdown file with optional front-matter."""
        role_id = path.stem
        content = path.read_text(encoding="utf-8")
        meta: dict[str, str] = {}
        body = content

        if content.startswith("---"):
            end_idx = content.find("\n---", 3)
            if end_idx != -1:
                frontmatter = content[3:end_idx]
                for line in frontmatter.split("\n"):
                    if ":" not in line:
                        continue
                    key, value = line.split(":", 1)
                    meta[key.strip()] = value.strip().strip("\"'")
                body = content[end_idx + 4:]

        return cls(
            id=role_id,
            name=meta.get("name") or role_id,
            description=meta.get("description", ""),
            body=body.strip(),
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def summary(self) -> dict[str, str]:
        """Wire shape used by ``list_roles``: everything but the body."""
        return {"id": self.id, "name": self.name, "description": self.description}


class RoleRepository:
    """Loads and caches role definitions from an agents directory.

    Usage:
        repo = RoleRepository(Path("agents"))
        role = repo.get_role_by_id("frontend")
    """

    def __init__(self, agents_dir: Path | str) -> None:
        self.agents_dir = Path(agents_dir)
        self._cache: dict[str, RoleDefinition] | None = None

    def _load(self) -> dict[str, RoleDefinition]:
        if self._cache is not None:
            return self._cache

        roles: dict[str, RoleDefinition] = {}
        if not self.agents_dir.is_dir():
            logger.debug(f"Agents directory not found: {self.agents_dir}")
        else:
            for path in sorted(self.agents_dir.glob("*.md")):
                try:
                    role = RoleDefinition.from_file(path)
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning(f"Skipping unreadable role file {path}: {e}")
                    continue
                roles[role.id] = role
            logger.debug(f"Loaded {len(roles)} role(s) from {self.agents_dir}")

        self._cache = roles
        return roles

    def get_all_roles(self) -> list[RoleDefinition]:
        return list(self._load().values())

    def get_role_by_id(self, role_id: str) -> RoleDefinition | None:
        return self._load().get(role_id)

    def require(self, role_id: str) -> RoleDefinition:
        """Return the role or raise :class:`RoleNotFound`."""
        role = self.get_role_by_id(role_id)
        if role is None:
            raise RoleNotFound(role_id)
        return role

    def refresh(self) -> None:
        """Drop the cache so the next lookup rereads the directory."""
        self._cache = None
