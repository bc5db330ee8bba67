"""Operation vocabulary shared between the engine and its callers."""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Tuple

from .source import RawOp


class Operation(str, Enum):
    """Kinds of filesystem changes delivered to handlers.

    ``UNSUPPORTED`` covers source codes with no counterpart here and displays
    as ``"UNSUPPORTED"``.
    """

    CREATE = "create"
    WRITE = "write"
    REMOVE = "remove"
    RENAME = "rename"
    CHMOD = "chmod"
    UNSUPPORTED = "unsupported"

    @property
    def display_name(self) -> str:
        return operation_name(self)


Handler = Callable[[Operation, str], None]

_NAMES: Dict[Operation, str] = {
    Operation.CREATE: "CREATE",
    Operation.WRITE: "WRITE",
    Operation.REMOVE: "REMOVE",
    Operation.RENAME: "RENAME",
    Operation.CHMOD: "CHMOD",
    Operation.UNSUPPORTED: "UNSUPPORTED",
}

# Only place where the source's native codes are known.
_TRANSLATIONS: Tuple[Tuple[RawOp, Operation], ...] = (
    (RawOp.CREATE, Operation.CREATE),
    (RawOp.WRITE, Operation.WRITE),
    (RawOp.REMOVE, Operation.REMOVE),
    (RawOp.RENAME, Operation.RENAME),
    (RawOp.CHMOD, Operation.CHMOD),
)


def operation_name(op: Any) -> str:
    """Return the display name of *op*, or ``"UNKNOWN"`` for foreign values."""

    if not isinstance(op, Operation):
        return "UNKNOWN"
    return _NAMES.get(op, "UNKNOWN")


def translate(raw: Any) -> Operation:
    """Map a raw source code to an :class:`Operation`; never raises."""

    for code, op in _TRANSLATIONS:
        if raw is code:
            return op
    return Operation.UNSUPPORTED
