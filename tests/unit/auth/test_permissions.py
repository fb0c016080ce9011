"""Unit tests for the Self/Other permission gate."""

from __future__ import annotations

import pytest

from model_runner.auth.clients import ApiClient
from model_runner.auth.permissions import (
    Decision,
    Operation,
    Permission,
    check,
    require,
    target_owner_for,
)
from model_runner.core.exceptions import PermissionDeniedError


# =============================================================================
# Constants
# =============================================================================

CALLER_ID = "alice"
OTHER_ID = "bob"


def _caller(*bits: Permission) -> ApiClient:
    value = Permission(0)
    for bit in bits:
        value |= bit
    return ApiClient(id=CALLER_ID, name="alice", permissions=int(value))


# =============================================================================
# TestPermissionBits
# =============================================================================


class TestPermissionBits:
    def test_bit_positions_are_stable(self) -> None:
        assert [int(p) for p in Permission] == [1 << i for i in range(10)]

    def test_from_names_is_case_insensitive(self) -> None:
        assert Permission.from_names(["use_self", "STATUS_OTHER"]) == Permission.USE_SELF | Permission.STATUS_OTHER

    def test_from_names_rejects_unknown(self) -> None:
        with pytest.raises(ValueError, match="Unknown permission 'fly'"):
            Permission.from_names(["fly"])

    @pytest.mark.parametrize("operation", list(Operation))
    def test_operation_bits(self, operation: Operation) -> None:
        assert operation.self_bit.name == f"{operation.name}_SELF"
        assert operation.other_bit.name == f"{operation.name}_OTHER"


# =============================================================================
# TestCheck
# =============================================================================


class TestCheck:
    """Self grants owned targets; Other grants any target; neither implies the other."""

    def test_self_bit_on_own_target(self) -> None:
        assert check(_caller(Permission.USE_SELF), Operation.USE, CALLER_ID) is Decision.ALLOWED

    def test_self_bit_on_other_target(self) -> None:
        assert check(_caller(Permission.USE_SELF), Operation.USE, OTHER_ID) is Decision.DENIED

    def test_other_bit_on_any_target(self) -> None:
        caller = _caller(Permission.USE_OTHER)

        assert check(caller, Operation.USE, OTHER_ID) is Decision.ALLOWED
        assert check(caller, Operation.USE, CALLER_ID) is Decision.ALLOWED

    def test_no_bits_denied(self) -> None:
        assert check(_caller(), Operation.STATUS, CALLER_ID) is Decision.DENIED

    def test_bits_do_not_cross_operations(self) -> None:
        caller = _caller(Permission.USE_OTHER, Permission.USE_SELF)

        assert check(caller, Operation.UPDATE, CALLER_ID) is Decision.DENIED

    def test_require_raises_with_context(self) -> None:
        with pytest.raises(PermissionDeniedError) as exc_info:
            require(_caller(Permission.UPDATE_SELF), Operation.UPDATE, OTHER_ID)

        error = exc_info.value
        assert error.client_id == CALLER_ID
        assert error.operation == "update"
        assert error.target_owner == OTHER_ID

    def test_require_passes_when_allowed(self) -> None:
        require(_caller(Permission.STATUS_SELF), Operation.STATUS, CALLER_ID)


class TestTargetOwner:
    def test_shared_model_resolves_to_caller(self) -> None:
        assert target_owner_for(_caller(), None) == CALLER_ID

    def test_owned_model_resolves_to_owner(self) -> None:
        assert target_owner_for(_caller(), OTHER_ID) == OTHER_ID
