"""Services for the treasury kernel (write side)."""

from treasury_kernel.services.admin_fee_service import AdminFeeService
from treasury_kernel.services.balance_auditor import AuditFinding, AuditReport, BalanceAuditor
from treasury_kernel.services.cash_box_store import CashBoxStore
from treasury_kernel.services.ledger_engine import LedgerEngine
from treasury_kernel.services.loan_engine import LoanEngine
from treasury_kernel.services.movement_log import MovementDraft, MovementLog
from treasury_kernel.services.sequence_service import SequenceService
from treasury_kernel.services.treasury_service import TreasuryService

__all__ = [
    "AdminFeeService",
    "AuditFinding",
    "AuditReport",
    "BalanceAuditor",
    "CashBoxStore",
    "LedgerEngine",
    "LoanEngine",
    "MovementDraft",
    "MovementLog",
    "SequenceService",
    "TreasuryService",
]
