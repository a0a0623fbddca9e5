"""Selectors for the treasury kernel (read side)."""

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
    MovementDTO,
    MovementFilter,
    MovementPage,
    MovementSelector,
)

__all__ = [
    "AdminFeeSelector",
    "AdminFeeDTO",
    "AdminFeeStats",
    "BalanceSelector",
    "BoxBalance",
    "BoxSummary",
    "FinancialSummary",
    "MasterProjectShare",
    "MonthlyStats",
    "ProjectFees",
    "LoanSelector",
    "LoanDTO",
    "InstallmentDTO",
    "LoanStatistics",
    "MovementSelector",
    "MovementDTO",
    "MovementFilter",
    "MovementPage",
]
