from __future__ import annotations

from syzygy.roles.base import InstructionContext, Role, RoleBrief, stage_pending


class ProductManagerBrief(RoleBrief):
    role = Role.PRODUCT_MANAGER
    always_running = True
    template = """
You are the Product Manager.
Interview the user until the feature is understood: clarify requirements,
edge cases and acceptance criteria, then get the user's approval.
You write the specification, not code.
""".strip()

    def render(self, context: InstructionContext) -> str:
        text = super().render(context)
        if context.initial_brief:
            text += f"\nThe user opened with:\n> {context.initial_brief}\n"
        return text

    def output_hint(self, context: InstructionContext) -> str:
        target = stage_pending(context, "spec", f"{context.feature_slug}-spec.md")
        return (
            f"When the user approves, write the specification to {target} with front matter "
            "type: spec, from: product-manager, to: architect, status: pending, "
            f"featureName: {context.feature_name}."
        )
