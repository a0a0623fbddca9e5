"""
TreasuryService -- the typed request/response surface of the kernel.

Responsibility:
    Runs every write request in its own database transaction, answers
    idempotent replays, and turns engine exceptions into OperationResult
    values a caller can branch on without catching anything.  Read
    methods return selector DTOs.

Architecture position:
    Kernel > Services -- the imperative shell.  The only class in the
    kernel that commits or rolls back.

Transaction flow for a write:
    1. open a session and BEGIN (PostgreSQL: SET LOCAL lock_timeout)
    2. idempotency key already used -> return the stored receipt, replayed
    3. dispatch to LedgerEngine / LoanEngine / AdminFeeService / CashBoxStore
    4. store the receipt on the ledger operation
    5. COMMIT; any exception rolls the whole transaction back

Failure modes:
    - TreasuryKernelError -> OperationResult.failure with its error kind.
    - IntegrityError on an idempotency key -> replay of the winner's
      receipt; otherwise TransactionFailedError.
    - OperationalError / DBAPIError (lock timeout, deadlock, serialization
      failure) -> TransactionFailedError, retryable.
    - Anything else is logged and re-raised.
"""

import time
from collections.abc import Callable, Iterator
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from treasury_kernel.config import TreasuryConfig
from treasury_kernel.db.engine import apply_lock_timeout, get_session_factory
from treasury_kernel.domain.clock import Clock, SystemClock
from treasury_kernel.domain.dtos import (
    AccrueAdminFee,
    ActivateLoan,
    AssessLateFee,
    BoxReceipt,
    CancelAdminFee,
    CancelLoan,
    CollectAdminFee,
    CollectFee,
    ConvertCurrency,
    IssueLoan,
    LoanReceipt,
    OpenProjectBox,
    OperationResult,
    Receipt,
    RecordAdminExpense,
    RecordMasterWithdrawal,
    RecordProjectExpense,
    RecordProjectPayment,
    RegisterInstallmentPayment,
    RetireProjectBox,
    ReverseOperation,
    SubmitLoan,
    TransferBetweenBoxes,
    WriteRequest,
    receipt_from_payload,
    receipt_to_payload,
)
from treasury_kernel.domain.projects import ProjectRegistry
from treasury_kernel.domain.rates import ConversionQuote, ExchangeRateOracle
from treasury_kernel.domain.values import BoxRef
from treasury_kernel.exceptions import (
    TransactionFailedError,
    TreasuryKernelError,
    ValidationError,
)
from treasury_kernel.logging_config import LogContext, get_logger
from treasury_kernel.models.cash_box import OwnerKind
from treasury_kernel.models.movement import LedgerOperation
from treasury_kernel.selectors.admin_fee_selector import (
    AdminFeeDTO,
    AdminFeeSelector,
    AdminFeeStats,
)
from treasury_kernel.selectors.balance_selector import (
    BalanceSelector,
    BoxBalance,
    BoxSummary,
    FinancialSummary,
    MasterProjectShare,
    MonthlyStats,
    ProjectFees,
)
from treasury_kernel.selectors.loan_selector import (
    InstallmentDTO,
    LoanDTO,
    LoanSelector,
    LoanStatistics,
)
from treasury_kernel.selectors.movement_selector import (
    DEFAULT_PAGE_SIZE,
    MovementDTO,
    MovementFilter,
    MovementPage,
    MovementSelector,
)
from treasury_kernel.services.admin_fee_service import AdminFeeService
from treasury_kernel.services.balance_auditor import AuditReport, BalanceAuditor
from treasury_kernel.services.cash_box_store import CashBoxStore
from treasury_kernel.services.ledger_engine import LedgerEngine
from treasury_kernel.services.loan_engine import LoanEngine
from treasury_kernel.services.movement_log import MovementLog

logger = get_logger("services.treasury")


class TreasuryService:
    """
    Facade over the ledger and loan engines.

    Contract:
        Each write method takes one request dataclass (or its fields as
        keywords) and returns an OperationResult.  A result is ``ok`` only
        if everything it describes has been committed.

    Guarantees:
        - One request, one transaction: all deltas, movements and loan
          changes commit together or not at all.
        - A request repeated under the same idempotency key is applied once;
          later submissions get the first receipt with ``replayed=True``.

    Non-goals:
        - Does NOT retry.  ``retryable`` results are the caller's to retry.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        config: TreasuryConfig | None = None,
        oracle: ExchangeRateOracle | None = None,
        clock: Clock | None = None,
        project_registry: ProjectRegistry | None = None,
    ):
        self._session_factory = session_factory or get_session_factory()
        self._config = config or TreasuryConfig()
        self._oracle = oracle
        self._clock = clock or SystemClock()
        self._registry = project_registry

        self._handlers: dict[type, Callable[[Session, Any], Receipt]] = {
            RecordProjectPayment: self._record_project_payment,
            CollectFee: self._collect_fee,
            RecordAdminExpense: self._record_admin_expense,
            RecordMasterWithdrawal: self._record_master_withdrawal,
            RecordProjectExpense: self._record_project_expense,
            ConvertCurrency: self._convert_currency,
            TransferBetweenBoxes: self._transfer_between_boxes,
            ReverseOperation: self._reverse_operation,
            IssueLoan: self._issue_loan,
            SubmitLoan: self._submit_loan,
            ActivateLoan: self._activate_loan,
            RegisterInstallmentPayment: self._register_installment_payment,
            CancelLoan: self._cancel_loan,
            AssessLateFee: self._assess_late_fee,
            AccrueAdminFee: self._accrue_admin_fee,
            CollectAdminFee: self._collect_admin_fee,
            CancelAdminFee: self._cancel_admin_fee,
            OpenProjectBox: self._open_project_box,
            RetireProjectBox: self._retire_project_box,
        }

    @property
    def config(self) -> TreasuryConfig:
        return self._config

    # =========================================================================
    # Write path
    # =========================================================================

    def execute(self, request: WriteRequest) -> OperationResult:
        """Run one write request in its own transaction."""
        handler = self._handlers.get(type(request))
        if handler is None:
            raise TypeError(f"Unsupported request type: {type(request).__name__}")

        key = request.idempotency_key
        with LogContext.bind(
            correlation_id=str(uuid4()),
            operation_kind=request.operation,
            actor_id=str(request.actor_id) if request.actor_id else None,
            idempotency_key=key,
        ):
            logger.info("treasury_operation_started")
            t0 = time.monotonic()
            session = self._session_factory()
            try:
                with session.begin():
                    apply_lock_timeout(session, self._config.lock_timeout_seconds)
                    if key is not None:
                        replay = self._find_replay(session, key, request.operation)
                        if replay is not None:
                            return replay

                    receipt = handler(session, request)
                    if self._config.verify_after_operation and isinstance(receipt, LoanReceipt):
                        BalanceAuditor(session).verify_loans([receipt.loan_id])

                    operation = session.get(LedgerOperation, receipt.operation_id)
                    MovementLog(session, self._clock).complete_operation(
                        operation, receipt_to_payload(receipt)
                    )

                logger.info(
                    "treasury_operation_committed",
                    extra={
                        "operation_id": str(receipt.operation_id),
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                    },
                )
                return OperationResult.success(receipt)

            except TreasuryKernelError as exc:
                logger.warning(
                    "treasury_operation_rejected",
                    extra={"error_code": exc.code, "error_kind": exc.kind.value, "detail": str(exc)},
                )
                return OperationResult.failure(exc)

            except IntegrityError as exc:
                if key is not None:
                    replay = self._replay_after_race(key, request.operation)
                    if replay is not None:
                        return replay
                return self._transaction_failed(request, exc)

            except (OperationalError, DBAPIError) as exc:
                return self._transaction_failed(request, exc)

            except Exception:
                logger.error(
                    "treasury_operation_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise

            finally:
                session.close()

    def _find_replay(self, session: Session, key: str, operation_name: str) -> OperationResult | None:
        existing = MovementLog(session, self._clock).find_by_idempotency_key(key)
        if existing is None or existing.result is None:
            return None
        if existing.kind != operation_name:
            raise ValidationError(
                f"Idempotency key {key!r} was used for {existing.kind}, not {operation_name}"
            )
        logger.info(
            "idempotent_replay",
            extra={"operation_id": str(existing.id), "original_kind": existing.kind},
        )
        return OperationResult.success(receipt_from_payload(existing.result), replayed=True)

    def _replay_after_race(self, key: str, operation_name: str) -> OperationResult | None:
        """A concurrent request claimed the key first; answer with its receipt."""
        logger.info("idempotency_key_race", extra={"idempotency_key": key})
        session = self._session_factory()
        try:
            with session.begin():
                return self._find_replay(session, key, operation_name)
        except TreasuryKernelError as exc:
            return OperationResult.failure(exc)
        finally:
            session.close()

    def _transaction_failed(self, request: WriteRequest, exc: DBAPIError) -> OperationResult:
        reason = str(exc.orig) if exc.orig is not None else str(exc)
        logger.warning(
            "treasury_transaction_failed",
            extra={"reason": reason},
            exc_info=True,
        )
        return OperationResult.failure(TransactionFailedError(request.operation, reason))

    # =========================================================================
    # Handlers (run inside the transaction)
    # =========================================================================

    def _ledger(self, session: Session) -> LedgerEngine:
        return LedgerEngine(session, self._clock, self._oracle, self._config)

    def _loans(self, session: Session) -> LoanEngine:
        return LoanEngine(
            session, self._ledger(session), self._clock, self._config, self._registry
        )

    def _fees(self, session: Session) -> AdminFeeService:
        return AdminFeeService(
            session, self._ledger(session), self._clock, self._config, self._registry
        )

    def _record_project_payment(self, session: Session, r: RecordProjectPayment) -> Receipt:
        return self._ledger(session).record_project_payment(
            r.project_id, r.amount, r.currency, r.installment_ref, r.description,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _collect_fee(self, session: Session, r: CollectFee) -> Receipt:
        return self._ledger(session).collect_fee(
            r.project_id, r.amount, r.currency, r.fee_spec, r.description,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _record_admin_expense(self, session: Session, r: RecordAdminExpense) -> Receipt:
        return self._ledger(session).record_admin_expense(
            r.amount, r.currency, r.description, r.method, r.reference,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _record_master_withdrawal(self, session: Session, r: RecordMasterWithdrawal) -> Receipt:
        return self._ledger(session).record_master_withdrawal(
            r.amount, r.currency, r.description, r.method, r.reference,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _record_project_expense(self, session: Session, r: RecordProjectExpense) -> Receipt:
        return self._ledger(session).record_project_expense(
            r.project_id, r.amount, r.currency, r.description, r.method, r.reference,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _convert_currency(self, session: Session, r: ConvertCurrency) -> Receipt:
        return self._ledger(session).convert_currency(
            r.box, r.from_currency, r.amount, r.to_currency, r.rate_source, r.description,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _transfer_between_boxes(self, session: Session, r: TransferBetweenBoxes) -> Receipt:
        return self._ledger(session).transfer_between_boxes(
            r.from_box, r.to_box, r.amount, r.currency, r.kind, r.description,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _reverse_operation(self, session: Session, r: ReverseOperation) -> Receipt:
        return self._ledger(session).reverse_operation(
            r.operation_id, r.reason,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _issue_loan(self, session: Session, r: IssueLoan) -> Receipt:
        return self._loans(session).issue_loan(
            r.lender_project_id, r.borrower_project_id, r.principal, r.currency,
            r.due_date, r.installment_count, r.interest_rate, r.description, r.as_draft,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _submit_loan(self, session: Session, r: SubmitLoan) -> Receipt:
        return self._loans(session).submit_loan(
            r.loan_id, idempotency_key=r.idempotency_key, actor_id=r.actor_id
        )

    def _activate_loan(self, session: Session, r: ActivateLoan) -> Receipt:
        return self._loans(session).activate_loan(
            r.loan_id, idempotency_key=r.idempotency_key, actor_id=r.actor_id
        )

    def _register_installment_payment(
        self, session: Session, r: RegisterInstallmentPayment
    ) -> Receipt:
        return self._loans(session).register_installment_payment(
            r.installment_id, r.amount, r.payment_date,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _cancel_loan(self, session: Session, r: CancelLoan) -> Receipt:
        return self._loans(session).cancel_loan(
            r.loan_id, r.reason, idempotency_key=r.idempotency_key, actor_id=r.actor_id
        )

    def _assess_late_fee(self, session: Session, r: AssessLateFee) -> Receipt:
        return self._loans(session).assess_late_fee(
            r.installment_id, r.amount, idempotency_key=r.idempotency_key, actor_id=r.actor_id
        )

    def _accrue_admin_fee(self, session: Session, r: AccrueAdminFee) -> Receipt:
        return self._fees(session).accrue_admin_fee(
            r.project_id, r.base_amount, r.currency, r.fee_spec, r.installment_ref,
            idempotency_key=r.idempotency_key, actor_id=r.actor_id,
        )

    def _collect_admin_fee(self, session: Session, r: CollectAdminFee) -> Receipt:
        return self._fees(session).collect_admin_fee(
            r.fee_id, r.description, idempotency_key=r.idempotency_key, actor_id=r.actor_id
        )

    def _cancel_admin_fee(self, session: Session, r: CancelAdminFee) -> Receipt:
        return self._fees(session).cancel_admin_fee(
            r.fee_id, r.reason, idempotency_key=r.idempotency_key, actor_id=r.actor_id
        )

    def _open_project_box(self, session: Session, r: OpenProjectBox) -> Receipt:
        if self._registry is not None:
            self._registry.get_project(r.project_id)
        operation = MovementLog(session, self._clock).begin_operation(
            r.operation, r.idempotency_key, r.actor_id
        )
        box = CashBoxStore(session, self._clock).open_project_box(r.project_id, r.actor_id)
        return BoxReceipt(operation.id, box.id, box.owner_key, box.is_active)

    def _retire_project_box(self, session: Session, r: RetireProjectBox) -> Receipt:
        operation = MovementLog(session, self._clock).begin_operation(
            r.operation, r.idempotency_key, r.actor_id
        )
        box = CashBoxStore(session, self._clock).retire_project_box(r.project_id, r.actor_id)
        return BoxReceipt(operation.id, box.id, box.owner_key, box.is_active)

    # =========================================================================
    # Keyword entry points
    # =========================================================================

    def record_project_payment(self, **fields: Any) -> OperationResult:
        return self.execute(RecordProjectPayment(**fields))

    def collect_fee(self, **fields: Any) -> OperationResult:
        return self.execute(CollectFee(**fields))

    def record_admin_expense(self, **fields: Any) -> OperationResult:
        return self.execute(RecordAdminExpense(**fields))

    def record_master_withdrawal(self, **fields: Any) -> OperationResult:
        return self.execute(RecordMasterWithdrawal(**fields))

    def record_project_expense(self, **fields: Any) -> OperationResult:
        return self.execute(RecordProjectExpense(**fields))

    def convert_currency(self, **fields: Any) -> OperationResult:
        return self.execute(ConvertCurrency(**fields))

    def transfer_between_boxes(self, **fields: Any) -> OperationResult:
        return self.execute(TransferBetweenBoxes(**fields))

    def reverse_operation(self, **fields: Any) -> OperationResult:
        return self.execute(ReverseOperation(**fields))

    def issue_loan(self, **fields: Any) -> OperationResult:
        return self.execute(IssueLoan(**fields))

    def submit_loan(self, **fields: Any) -> OperationResult:
        return self.execute(SubmitLoan(**fields))

    def activate_loan(self, **fields: Any) -> OperationResult:
        return self.execute(ActivateLoan(**fields))

    def register_installment_payment(self, **fields: Any) -> OperationResult:
        return self.execute(RegisterInstallmentPayment(**fields))

    def cancel_loan(self, **fields: Any) -> OperationResult:
        return self.execute(CancelLoan(**fields))

    def assess_late_fee(self, **fields: Any) -> OperationResult:
        return self.execute(AssessLateFee(**fields))

    def accrue_admin_fee(self, **fields: Any) -> OperationResult:
        return self.execute(AccrueAdminFee(**fields))

    def collect_admin_fee(self, **fields: Any) -> OperationResult:
        return self.execute(CollectAdminFee(**fields))

    def cancel_admin_fee(self, **fields: Any) -> OperationResult:
        return self.execute(CancelAdminFee(**fields))

    def open_project_box(self, **fields: Any) -> OperationResult:
        return self.execute(OpenProjectBox(**fields))

    def retire_project_box(self, **fields: Any) -> OperationResult:
        return self.execute(RetireProjectBox(**fields))

    def bootstrap(self, actor_id: UUID | None = None) -> None:
        """Create the master and admin boxes.  Safe to call repeatedly."""
        session = self._session_factory()
        try:
            with session.begin():
                CashBoxStore(session, self._clock).bootstrap(actor_id)
        finally:
            session.close()
        logger.info("treasury_bootstrapped")

    # =========================================================================
    # Read path
    # =========================================================================

    def _read(self, fn: Callable[[Session], Any]) -> Any:
        session = self._session_factory()
        try:
            with session.begin():
                return fn(session)
        finally:
            session.close()

    def get_balance(self, owner_kind: OwnerKind | str, owner_ref: UUID | None = None) -> BoxBalance:
        return self._read(lambda s: BalanceSelector(s).get_balance(owner_kind, owner_ref))

    def get_box(self, ref: BoxRef) -> BoxSummary:
        return self._read(lambda s: BalanceSelector(s).get_box(ref))

    def list_boxes(
        self, owner_kind: OwnerKind | str | None = None, include_retired: bool = False
    ) -> list[BoxSummary]:
        return self._read(lambda s: BalanceSelector(s).list_boxes(owner_kind, include_retired))

    def financial_summary(self) -> FinancialSummary:
        return self._read(lambda s: BalanceSelector(s).financial_summary())

    def master_by_project(self) -> list[MasterProjectShare]:
        return self._read(lambda s: BalanceSelector(s).master_by_project())

    def fees_by_project(self) -> list[ProjectFees]:
        return self._read(lambda s: BalanceSelector(s).fees_by_project())

    def monthly_stats(self, ref: BoxRef, year: int, month: int) -> MonthlyStats:
        return self._read(lambda s: BalanceSelector(s).monthly_stats(ref, year, month))

    def page_movements(
        self,
        criteria: MovementFilter | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        before_seq: int | None = None,
    ) -> MovementPage:
        return self._read(lambda s: MovementSelector(s).page(criteria, limit, before_seq))

    def query_movements(
        self,
        criteria: MovementFilter | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Iterator[MovementDTO]:
        """
        Lazily iterate matching movements, newest first.

        Each page is read in its own short transaction; nothing is held
        open while the caller consumes items.
        """
        before_seq = None
        while True:
            page = self.page_movements(criteria, page_size, before_seq)
            yield from page.items
            if not page.has_more:
                return
            before_seq = page.next_before_seq

    def get_loan(self, loan_id: UUID) -> LoanDTO | None:
        return self._read(lambda s: LoanSelector(s, self._clock).get_loan(loan_id))

    def list_loans(self, **criteria: Any) -> list[LoanDTO]:
        return self._read(lambda s: LoanSelector(s, self._clock).list_loans(**criteria))

    def overdue_installments(self) -> list[InstallmentDTO]:
        return self._read(lambda s: LoanSelector(s, self._clock).overdue_installments())

    def loan_statistics(self) -> LoanStatistics:
        return self._read(lambda s: LoanSelector(s, self._clock).statistics())

    def get_admin_fee(self, fee_id: UUID) -> AdminFeeDTO | None:
        return self._read(lambda s: AdminFeeSelector(s).get_fee(fee_id))

    def pending_admin_fees(self, project_id: UUID | None = None) -> list[AdminFeeDTO]:
        return self._read(lambda s: AdminFeeSelector(s).pending_fees(project_id))

    def total_pending_fees(self, currency: str = "ARS") -> Decimal:
        return self._read(lambda s: AdminFeeSelector(s).total_pending(currency))

    def admin_fee_stats(self, currency: str = "ARS") -> AdminFeeStats:
        return self._read(lambda s: AdminFeeSelector(s).fee_stats(currency))

    def preview_conversion(
        self,
        from_currency: str,
        amount: Decimal,
        to_currency: str,
        rate_source: str | None = None,
    ) -> ConversionQuote:
        return self._read(
            lambda s: self._ledger(s).preview_conversion(from_currency, amount, to_currency, rate_source)
        )

    def audit(self) -> AuditReport:
        """Recompute every box and loan from history."""
        return self._read(lambda s: BalanceAuditor(s).run_full_audit())
