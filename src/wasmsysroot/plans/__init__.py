"""Per-library build plans, selected by the catalog entry's build kind."""

from __future__ import annotations

from wasmsysroot.models import BuildKind, Library

from .base import BuildPlan, HeaderPlan, PlanContext, PlanStrategy, check_prerequisites
from .configured import ConfiguredStrategy
from .native import NativeStrategy

STRATEGIES: dict[BuildKind, PlanStrategy] = {
    BuildKind.NATIVE: NativeStrategy(),
    BuildKind.CONFIGURED: ConfiguredStrategy(),
}


def plan(library: Library, context: PlanContext) -> BuildPlan:
    """Compute the invocations that build *library* against the sysroot in *context*.

    Raises ``PlanningError`` when a prerequisite's headers or archive are not
    present in the sysroot yet.
    """
    spec = context.spec(library)
    check_prerequisites(spec, context)
    return STRATEGIES[spec.kind].plan(spec, context)


def provision_headers(library: Library, context: PlanContext) -> HeaderPlan:
    """Compute the steps that stage *library*'s public headers without building it."""
    spec = context.spec(library)
    return STRATEGIES[spec.kind].provision_headers(spec, context)


__all__ = [
    "BuildPlan",
    "HeaderPlan",
    "PlanContext",
    "STRATEGIES",
    "plan",
    "provision_headers",
]
