from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path


class Role(StrEnum):
    PRODUCT_MANAGER = "product-manager"
    ARCHITECT = "architect"
    TEST_ENGINEER = "test-engineer"
    DEVELOPER = "developer"
    CODE_REVIEWER = "code-reviewer"
    DOCUMENTER = "documenter"


@dataclass(slots=True)
class InstructionContext:
    feature_name: str
    feature_slug: str
    initial_brief: str | None = None
    stage_paths: dict[str, Path] = field(default_factory=dict)
    task_id: str | None = None
    workspace_root: str = ".syzygy"

    def path_for(self, stage: str, default: str) -> str:
        path = self.stage_paths.get(stage)
        return str(path) if path is not None else default


class RoleBrief:
    """Descriptor for one worker role plus its default instruction text."""

    role: Role = Role.DEVELOPER
    always_running: bool = False
    supports_multiple_instances: bool = False
    template: str = "You are a worker in a file-driven development pipeline."

    def agent_id(self, instance: int | None = None) -> str:
        if instance is not None and self.supports_multiple_instances:
            return f"{self.role.value}-{instance}"
        return self.role.value

    def output_hint(self, context: InstructionContext) -> str:
        _ = context
        return ""

    def render(self, context: InstructionContext) -> str:
        lines = [
            self.template.strip(),
            "",
            f"Feature: {context.feature_name} (slug: {context.feature_slug})",
        ]
        if context.task_id:
            lines.append(f"Task: {context.task_id}")
        if context.stage_paths:
            lines.append("")
            lines.append("Input artifacts:")
            for stage, path in context.stage_paths.items():
                lines.append(f"- {stage}: {path}")
        hint = self.output_hint(context)
        if hint:
            lines.append("")
            lines.append(hint)
        return "\n".join(lines).strip() + "\n"


def stage_pending(context: InstructionContext, stage: str, file_name: str) -> str:
    return f"{context.workspace_root}/stages/{stage}/pending/{file_name}"
