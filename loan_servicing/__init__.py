"""
Loan Servicing

Microfinance loan servicing: origination and disbursement with generated
repayment schedules, and reconciliation of inbound mobile-money payments
against those schedules.
"""

__version__ = "1.0.0"
