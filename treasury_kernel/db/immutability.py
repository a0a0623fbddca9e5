"""
ORM-Level Immutability Enforcement for the movement log.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity           | When Immutable          | Allowed changes
-----------------|-------------------------|------------------------------------
CashMovement     | ALWAYS (from creation)  | none
LedgerOperation  | ALWAYS (from creation)  | result, reversed_by_operation_id
                 |                         | (each set once, from NULL)

Corrections are new reversing movements, never edits.  The listeners fire on
``before_update`` / ``before_delete`` so the SQL is never sent; the
transaction is aborted with ImmutabilityViolationError.

Raw SQL bypasses the ORM.  The BalanceAuditor detects the effect of any such
tampering on box balances (InvariantViolationError).

===============================================================================
USAGE
===============================================================================

    from treasury_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    ...
    register_immutability_listeners()
"""

from sqlalchemy import event, inspect

from treasury_kernel.exceptions import ImmutabilityViolationError
from treasury_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_OPERATION_SET_ONCE_FIELDS = frozenset({"reversed_by_operation_id", "result"})


def _block(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "invariant": "movement_immutability",
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_movement_update(mapper, connection, target):
    _block("CashMovement", target, "UPDATE", "Movements are append-only")


def _check_movement_delete(mapper, connection, target):
    _block("CashMovement", target, "DELETE", "Movements cannot be deleted")


def _check_operation_update(mapper, connection, target):
    state = inspect(target)
    changed = {
        attr.key
        for attr in state.attrs
        if attr.history.has_changes()
    }
    illegal = changed - _OPERATION_SET_ONCE_FIELDS
    if illegal:
        _block(
            "LedgerOperation",
            target,
            "UPDATE",
            f"Ledger operations are append-only (attempted: {sorted(illegal)})",
        )
    for key in changed:
        previous = state.attrs[key].history.deleted
        if previous and previous[0] is not None:
            _block("LedgerOperation", target, "UPDATE", f"{key} is set once")


def _check_operation_delete(mapper, connection, target):
    _block("LedgerOperation", target, "DELETE", "Ledger operations cannot be deleted")


def register_immutability_listeners():
    """
    Register immutability enforcement event listeners.

    Idempotent; call after models are imported and before any writes.
    """
    from treasury_kernel.models.movement import CashMovement, LedgerOperation

    for target, name, fn in _listeners(CashMovement, LedgerOperation):
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that intentionally tamper with records.
    """
    from treasury_kernel.models.movement import CashMovement, LedgerOperation

    for target, name, fn in _listeners(CashMovement, LedgerOperation):
        _safe_remove_listener(target, name, fn)


def _listeners(movement_cls, operation_cls):
    return (
        (movement_cls, "before_update", _check_movement_update),
        (movement_cls, "before_delete", _check_movement_delete),
        (operation_cls, "before_update", _check_operation_update),
        (operation_cls, "before_delete", _check_operation_delete),
    )
