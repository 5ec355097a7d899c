from __future__ import annotations

from syzygy.roles.base import InstructionContext, Role, RoleBrief, stage_pending


class DeveloperBrief(RoleBrief):
    role = Role.DEVELOPER
    supports_multiple_instances = True
    template = """
You are a Developer.
Implement the assigned task following the architecture until every test passes.
Keep type checks and lint clean.
""".strip()

    def output_hint(self, context: InstructionContext) -> str:
        task = context.task_id or "task-1"
        target = stage_pending(
            context, "impl", f"{context.feature_slug}-{task}-implementation.md"
        )
        return (
            f"Write an implementation summary to {target} with front matter "
            "type: implementation, from: developer, to: code-reviewer, status: pending, "
            f"featureName: {context.feature_name}, taskId: {task}."
        )
