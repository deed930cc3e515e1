"""Per-call execution context handed to every tool.

Carries the task identity (workspace + user), the owning session and the
persona allow-list. ``depth`` counts sub-agent nesting for the ``task`` tool.
``confirmation_required`` is set when tools flagged ``requires_confirmation``
may only run after the user approves them; ``batch`` refuses to fan them out.
"""

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class ToolContext:
    workspace_id: str
    user_id: str
    session_id: str | None = None
    persona_id: str | None = None
    tool_filter: frozenset[str] = field(default_factory=frozenset)
    depth: int = 0
    confirmation_required: bool = False

    def allows(self, tool_name: str) -> bool:
        """Empty filter means every tool is permitted."""
        return not self.tool_filter or tool_name in self.tool_filter

    def for_subagent(self, session_id: str, persona_id: str, tool_filter: frozenset[str]) -> "ToolContext":
        return replace(
            self,
            session_id=session_id,
            persona_id=persona_id,
            tool_filter=tool_filter,
            depth=self.depth + 1,
        )
