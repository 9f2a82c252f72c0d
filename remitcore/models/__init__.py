"""SQLAlchemy ORM models.

The account and wallet tables mirror the external account directory and
ledger for single-node deployments; every other table is owned by this service.
"""

from remitcore.models.account import Account, Wallet, LedgerEntry, TransferContact
from remitcore.models.fx import FxRate, RateLock
from remitcore.models.transfer import TransferAttempt, TransferChallenge, Transfer
from remitcore.models.schedule import RecurringSchedule, ScheduleRun

__all__ = [
    "Account",
    "Wallet",
    "LedgerEntry",
    "TransferContact",
    "FxRate",
    "RateLock",
    "TransferAttempt",
    "TransferChallenge",
    "Transfer",
    "RecurringSchedule",
    "ScheduleRun",
]
