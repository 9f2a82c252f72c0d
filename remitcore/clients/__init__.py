"""Clients for the collaborators this service consumes (ledger, billing, notifications)."""

from remitcore.clients.ledger import (
    LedgerClient,
    LedgerResult,
    SqlLedger,
    WalletLockRegistry,
    get_wallet_locks,
)
from remitcore.clients.billing import PlanGate, LocalPlanGate
from remitcore.clients.notifications import (
    Notifier,
    LogNotifier,
    HttpNotifier,
    get_notifier,
    close_notifier,
)

__all__ = [
    "LedgerClient",
    "LedgerResult",
    "SqlLedger",
    "WalletLockRegistry",
    "get_wallet_locks",
    "PlanGate",
    "LocalPlanGate",
    "Notifier",
    "LogNotifier",
    "HttpNotifier",
    "get_notifier",
    "close_notifier",
]
