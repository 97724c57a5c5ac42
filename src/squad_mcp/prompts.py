"""Prompt assembly for squad members."""

from __future__ import annotations

from squad_mcp.roles import RoleDefinition

SETUP_REPORTING_FOOTER = """# Setup & Reporting Rules

If you hit SETUP / ENVIRONMENT ISSUES (missing dependencies, tools that are not
installed, absent credentials, permission errors, broken build configuration):

- clearly report them at the top of your answer,
- suggest specific steps the user can take to fix them,
- continue with whatever parts of the task are still possible.

Do not pretend the task succeeded when it did not. If something could not be
verified, say so."""

_SEPARATOR = "---"


class PromptBuilder:
    """Build the prompt text handed to the agent for one member.

    Pure string assembly; the three layouts differ only in which sections
    they carry.
    """

    def build_stateless(self, role: RoleDefinition, task: str) -> str:
        return self._join(self._role_section(role), _SEPARATOR, f"# Task\n\n{task}")

    def build_stateful_new_chat(self, role: RoleDefinition, task: str) -> str:
        return self._join(self._role_section(role), _SEPARATOR, f"# Initial Task\n\n{task}")

    def build_stateful_existing_chat(self, task: str) -> str:
        # The role was established when the chat was created.
        return self._join(f"# Task\n\n{task}")

    @staticmethod
    def _role_section(role: RoleDefinition) -> str:
        return f"# Role\n\n{role.body}"

    @staticmethod
    def _join(*sections: str) -> str:
        return "\n\n".join([*sections, SETUP_REPORTING_FOOTER])
