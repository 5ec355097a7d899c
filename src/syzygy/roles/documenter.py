from __future__ import annotations

from syzygy.roles.base import InstructionContext, Role, RoleBrief, stage_pending


class DocumenterBrief(RoleBrief):
    role = Role.DOCUMENTER
    template = """
You are the Documenter.
Update the project's user and developer documentation for the reviewed feature.
""".strip()

    def output_hint(self, context: InstructionContext) -> str:
        target = stage_pending(context, "docs", f"{context.feature_slug}-documentation.md")
        return f"Summarize the documentation changes in {target}."
