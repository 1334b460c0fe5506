"""
BankDesk

Accounts and loan applications for administrators, employees and customers,
with role-based permissions, an append-only audit trail, and durable
snapshots using Decimal for every balance and amount.
"""

__version__ = "1.0.0"
