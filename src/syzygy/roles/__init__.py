from __future__ import annotations

from syzygy.roles.architect import ArchitectBrief
from syzygy.roles.base import InstructionContext, Role, RoleBrief
from syzygy.roles.code_reviewer import CodeReviewerBrief
from syzygy.roles.developer import DeveloperBrief
from syzygy.roles.documenter import DocumenterBrief
from syzygy.roles.product_manager import ProductManagerBrief
from syzygy.roles.test_engineer import TestEngineerBrief

ROLE_BRIEFS: dict[Role, RoleBrief] = {
    brief.role: brief
    for brief in (
        ProductManagerBrief(),
        ArchitectBrief(),
        TestEngineerBrief(),
        DeveloperBrief(),
        CodeReviewerBrief(),
        DocumenterBrief(),
    )
}

if set(ROLE_BRIEFS) != set(Role):
    raise RuntimeError("Every role needs a brief")


def get_brief(role: Role) -> RoleBrief:
    return ROLE_BRIEFS[role]


def always_running_roles() -> list[Role]:
    return [role for role in Role if ROLE_BRIEFS[role].always_running]


def render_brief(role: Role, context: InstructionContext) -> str:
    return ROLE_BRIEFS[role].render(context)


__all__ = [
    "ArchitectBrief",
    "CodeReviewerBrief",
    "DeveloperBrief",
    "DocumenterBrief",
    "InstructionContext",
    "ProductManagerBrief",
    "ROLE_BRIEFS",
    "Role",
    "RoleBrief",
    "TestEngineerBrief",
    "always_running_roles",
    "get_brief",
    "render_brief",
]
