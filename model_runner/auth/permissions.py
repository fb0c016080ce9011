"""Permission gate for model-runner.

Callers hold an integer bitset of Self/Other capability pairs. A Self bit
grants the operation on targets the caller owns; an Other bit grants it on
any target. No bit implies another.

Bit positions match the persisted representation of ApiClient.permissions.
"""

from __future__ import annotations

from enum import Enum, IntFlag
from typing import TYPE_CHECKING

from model_runner.core.exceptions import PermissionDeniedError


if TYPE_CHECKING:
    from model_runner.auth.clients import ApiClient


# =============================================================================
# Permission Bits
# =============================================================================


class Permission(IntFlag):
    """Capability bits stored on an ApiClient."""

    USE_SELF = 1 << 0
    USE_OTHER = 1 << 1
    STATUS_SELF = 1 << 2
    STATUS_OTHER = 1 << 3
    CREATE_SELF = 1 << 4
    CREATE_OTHER = 1 << 5
    DELETE_SELF = 1 << 6
    DELETE_OTHER = 1 << 7
    UPDATE_SELF = 1 << 8
    UPDATE_OTHER = 1 << 9

    @classmethod
    def from_names(cls, names: list[str]) -> Permission:
        """Build a bitset from names such as ``["use_self", "STATUS_OTHER"]``.

        Raises:
            ValueError: If a name is not a known permission.
        """
        value = cls(0)
        for name in names:
            try:
                value |= cls[name.upper()]
            except KeyError:
                msg = f"Unknown permission '{name}'"
                raise ValueError(msg) from None
        return value


class Operation(str, Enum):
    """Operations guarded by a Self/Other permission pair."""

    USE = "use"
    STATUS = "status"
    CREATE = "create"
    DELETE = "delete"
    UPDATE = "update"

    @property
    def self_bit(self) -> Permission:
        return Permission[f"{self.name}_SELF"]

    @property
    def other_bit(self) -> Permission:
        return Permission[f"{self.name}_OTHER"]


class Decision(str, Enum):
    """Outcome of a permission check."""

    ALLOWED = "allowed"
    DENIED = "denied"


# =============================================================================
# Gate
# =============================================================================


def check(caller: ApiClient, operation: Operation, target_owner: str) -> Decision:
    """Evaluate whether caller may perform operation on a target.

    Args:
        caller: Authenticated client snapshot.
        operation: Operation being attempted.
        target_owner: Client id owning the target resource.

    Returns:
        Decision.ALLOWED if the caller holds the Other bit, or holds the
        Self bit and owns the target. Decision.DENIED otherwise.
    """
    granted = Permission(caller.permissions)
    if operation.other_bit in granted:
        return Decision.ALLOWED
    if operation.self_bit in granted and target_owner == caller.id:
        return Decision.ALLOWED
    return Decision.DENIED


def require(caller: ApiClient, operation: Operation, target_owner: str) -> None:
    """Raise PermissionDeniedError unless check() allows the operation."""
    if check(caller, operation, target_owner) is Decision.DENIED:
        raise PermissionDeniedError(
            f"Client '{caller.id}' may not {operation.value} this resource",
            client_id=caller.id,
            operation=operation.value,
            target_owner=target_owner,
        )


def target_owner_for(caller: ApiClient, model_owner: str | None) -> str:
    """Resolve the owner a model-scoped request is checked against.

    Shared models (no owner) resolve to the caller itself.
    """
    return caller.id if model_owner is None else model_owner
