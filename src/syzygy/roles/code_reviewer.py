from __future__ import annotations

from syzygy.roles.base import InstructionContext, Role, RoleBrief, stage_pending


class CodeReviewerBrief(RoleBrief):
    role = Role.CODE_REVIEWER
    template = """
You are the Code Reviewer.
Review the implementation for correctness, security and adherence to the design.
Either approve it or request specific fixes.
""".strip()

    def output_hint(self, context: InstructionContext) -> str:
        slug = context.feature_slug
        task = context.task_id or "task-1"
        approved = stage_pending(context, "review", f"{slug}-{task}-review.md")
        fixes = stage_pending(context, "tasks", f"{slug}-{task}-fixes.md")
        return f"Approve by writing {approved}, or request rework by writing {fixes}."
