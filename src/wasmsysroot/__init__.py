"""Public package entrypoint for the WebAssembly sysroot builder."""

from .catalog import DEFAULT_CATALOG, DEFAULT_LIBRARIES, LibrarySpec, build_order
from .config import BuildConfig, load_config
from .digests import SysrootDigests
from .drivers import InProcessDriver, LocalDriver
from .errors import (
    ConfigurationError,
    DependencyCycleError,
    ErrorCode,
    InstallError,
    InvocationError,
    PlanningError,
    SysrootError,
)
from .layout import SysrootTree
from .models import (
    BuildInvocation,
    BuildKind,
    Failed,
    Library,
    LibraryState,
    RunResult,
    RunState,
    Succeeded,
    ToolKind,
)
from .observability import StructuredLogger
from .orchestrator import SysrootBuilder, build_sysroot
from .toolchain import TargetTriple, ToolchainDescriptor

__all__ = [
    "DEFAULT_CATALOG",
    "DEFAULT_LIBRARIES",
    "BuildConfig",
    "BuildInvocation",
    "BuildKind",
    "ConfigurationError",
    "DependencyCycleError",
    "ErrorCode",
    "Failed",
    "InProcessDriver",
    "InstallError",
    "InvocationError",
    "Library",
    "LibrarySpec",
    "LibraryState",
    "LocalDriver",
    "PlanningError",
    "RunResult",
    "RunState",
    "StructuredLogger",
    "Succeeded",
    "SysrootBuilder",
    "SysrootDigests",
    "SysrootError",
    "SysrootTree",
    "TargetTriple",
    "ToolKind",
    "ToolchainDescriptor",
    "build_order",
    "build_sysroot",
    "load_config",
]
