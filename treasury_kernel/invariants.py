"""
Ledger Invariants Contract.

These invariants are structural law for the cash ledger.  No configuration
value may switch them off.  Enforcement is distributed across the ledger
engine, the loan engine, the movement immutability listeners and the
balance auditor; this module names them so findings and logs can refer to
them by value.
"""

from enum import Enum, unique


@unique
class LedgerInvariant(str, Enum):
    """Non-configurable invariants enforced by the treasury kernel."""

    BALANCE_MATCHES_LOG = "balance_matches_log"
    """For every box and currency the stored balance equals the sum of
    inbound movement effects minus outbound movement effects.  Checked by
    BalanceAuditor."""

    LIFETIME_COUNTERS = "lifetime_counters"
    """balance == lifetime_received - lifetime_paid per currency.  Checked
    by BalanceAuditor."""

    NON_NEGATIVE_BALANCE = "non_negative_balance"
    """No operation may leave a box balance below zero.  Enforced by
    LedgerEngine before any delta is applied."""

    MASTER_MIRROR = "master_mirror"
    """Money entering a project box from outside is mirrored on the master
    box in the same operation.  Enforced by the posting rule table at
    import time."""

    MOVEMENT_IMMUTABILITY = "movement_immutability"
    """Movements are append-only.  Enforced by ORM listeners
    (treasury_kernel.db.immutability)."""

    LOAN_OUTSTANDING = "loan_outstanding"
    """Loan.outstanding_balance == principal - sum of installment principal
    paid.  Enforced by LoanEngine, checked by BalanceAuditor."""

    IDEMPOTENCY = "idempotency"
    """An operation submitted twice under the same idempotency key is
    applied once.  Enforced by a unique constraint on ledger operations."""


ALL_LEDGER_INVARIANTS: frozenset[LedgerInvariant] = frozenset(LedgerInvariant)
