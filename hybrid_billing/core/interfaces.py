"""
Collaborator interfaces the consumption engine depends on.

The engine receives these as constructor arguments; the SQLite
implementations live in hybrid_billing.storage.repository.
"""

import sqlite3
from dataclasses import dataclass
from typing import ContextManager, List, Mapping, Optional, Protocol, runtime_checkable

from hybrid_billing.storage.models import (
    ByokProviderConfig,
    ConsumptionLogEntry,
    FundingSource,
    PreferenceUpdate,
    TokenBalance,
    UsageRecord,
    UserProfile,
)


@dataclass(frozen=True)
class DecrementResult:
    """Outcome of a conditional decrement; applied is False when no row matched."""
    applied: bool
    new_balance: int


@runtime_checkable
class BalanceStore(Protocol):
    """Durable per-user funding balances."""

    def list_active_balances(self, user_id: str) -> List[TokenBalance]:
        """Balances > 0, ordered by consumption priority then creation time."""
        ...

    def conditional_decrement(
        self, conn: sqlite3.Connection, balance_id: str, amount: int
    ) -> DecrementResult:
        """Debit amount only if the balance still covers it, inside conn's transaction."""
        ...

    def insert_balance(self, conn: sqlite3.Connection, balance: TokenBalance) -> None:
        ...


@runtime_checkable
class ProfileStore(Protocol):
    """Durable per-user preferences."""

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        ...

    def ensure_profile(self, user_id: str, email: Optional[str] = None) -> UserProfile:
        ...

    def update_preferences(self, user_id: str, update: PreferenceUpdate) -> None:
        ...

    def configure_byok(
        self, user_id: str, providers: Mapping[str, ByokProviderConfig], enabled: bool = True
    ) -> None:
        ...

    def set_capability(
        self, conn: sqlite3.Connection, user_id: str, balance_type: FundingSource
    ) -> bool:
        ...


@runtime_checkable
class LedgerStore(Protocol):
    """Append-only consumption ledger."""

    def append_consumption_log(self, conn: sqlite3.Connection, entry: ConsumptionLogEntry) -> str:
        ...

    def list_consumption_history(self, user_id: str, limit: int = 50) -> List[ConsumptionLogEntry]:
        """Most recent first."""
        ...


@runtime_checkable
class UsageRecorder(Protocol):
    """Post-commit usage analytics sink. Failures must not affect consumption."""

    def record_usage(self, record: UsageRecord) -> str:
        ...


@runtime_checkable
class TransactionHost(Protocol):
    """Provides a connection inside a transaction with guaranteed release."""

    def transaction(self) -> ContextManager[sqlite3.Connection]:
        ...
