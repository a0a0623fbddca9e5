"""
Treasury Kernel

Cash ledger and inter-project loan subsystem for a professional-services
back office:
- Master, admin and per-project cash boxes with ARS and USD balances
- Append-only movement log with mirrored project income
- Fee collection, expenses, withdrawals and currency exchange
- Inter-project loans with installment schedules
"""

__version__ = "0.1.0"
