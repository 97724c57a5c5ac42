"""Squad orchestration example: dispatch role-bound members to agent CLIs.

Demonstrates:
- A stateless parallel batch on the claude engine
- Stateful follow-up that reuses the chat handles from the first batch
- JSON output for machine consumption

Expects an ``agents/`` directory with ``frontend.md`` and ``qa.md`` roles.
"""

import asyncio

from squad_mcp import SquadConfig, SquadOrchestrator


async def squad_stateless():
    """Run two members side by side."""
    config = SquadConfig(engine="claude")

    async with SquadOrchestrator.from_config(config) as squad:
        result = await squad.start(
            {
                "members": [
                    {"roleId": "frontend", "task": "Add a navbar component"},
                    {"roleId": "qa", "task": "List the untested pages"},
                ],
                "metadata": {"label": "navbar"},
            }
        )

    print("=== Squad Results ===")
    for member in result.members:
        print(f"{member.role_id}: {member.status.value}")
        print(member.raw_stdout)


async def squad_stateful_follow_up():
    """Start chats, then continue them with a second task."""
    config = SquadConfig(engine="claude", state_mode="stateful")
    squad = SquadOrchestrator.from_config(config)

    first = await squad.start({"members": [{"roleId": "frontend", "task": "Sketch the navbar"}]})
    chat_id = first.members[0].chat_id
    print(f"Chat handle: {chat_id}")

    second = await squad.start(
        {"members": [{"roleId": "frontend", "task": "Now make it responsive", "chatId": chat_id}]}
    )
    print(second.members[0].raw_stdout)


async def squad_json_output():
    """Get squad results in JSON format for machine consumption."""
    squad = SquadOrchestrator.from_config(SquadConfig(engine="codex", execution_mode="sequential"))
    result = await squad.start({"members": [{"roleId": "qa", "task": "Run the test suite"}]})

    # Same shape the MCP tool returns
    print(result.to_json(indent=2))


if __name__ == "__main__":
    asyncio.run(squad_stateless())
    # Uncomment to try other examples:
    # asyncio.run(squad_stateful_follow_up())
    # asyncio.run(squad_json_output())
