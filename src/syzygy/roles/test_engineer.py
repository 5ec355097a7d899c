from __future__ import annotations

from syzygy.roles.base import InstructionContext, Role, RoleBrief, stage_pending


class TestEngineerBrief(RoleBrief):
    __test__ = False

    role = Role.TEST_ENGINEER
    template = """
You are the Test Engineer.
Write a failing test suite from the architecture before any implementation exists.
Cover edge cases and error paths.
""".strip()

    def output_hint(self, context: InstructionContext) -> str:
        target = stage_pending(context, "tests", f"{context.feature_slug}-tests.ts")
        return f"Write the suite to {target}."
