"""Driver invocation layer: run one external tool and classify the outcome."""

from .base import DEFAULT_TAIL_BYTES, Driver, verify_outputs
from .inprocess import InProcessDriver, fail_when
from .local import LocalDriver

__all__ = [
    "DEFAULT_TAIL_BYTES",
    "Driver",
    "InProcessDriver",
    "LocalDriver",
    "fail_when",
    "verify_outputs",
]
