from __future__ import annotations

from syzygy.roles.base import InstructionContext, Role, RoleBrief, stage_pending


class ArchitectBrief(RoleBrief):
    role = Role.ARCHITECT
    always_running = True
    template = """
You are the Architect.
Read the specification, design interfaces and components,
and break the work into numbered implementation tasks.
You produce designs and tasks, not code.
""".strip()

    def output_hint(self, context: InstructionContext) -> str:
        slug = context.feature_slug
        return (
            f"Write the design to {stage_pending(context, 'arch', f'{slug}-architecture.md')} "
            f"and one file per task to {stage_pending(context, 'tasks', f'{slug}-task-N.md')} "
            "(type: architecture / task, status: pending, "
            f"featureName: {context.feature_name})."
        )
