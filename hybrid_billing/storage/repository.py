"""
Repository pattern for data access.

SQLite implementations of the balance, profile, ledger and usage stores.
Reads open and close their own connection; writes that must be atomic
with a consumption take the caller's transaction connection.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from hybrid_billing.core.errors import ProfileNotFound
from hybrid_billing.core.interfaces import DecrementResult
from .db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection
from .models import (
    DEFAULT_CONSUMPTION_ORDER,
    DEFAULT_TOKEN_LOW_THRESHOLD,
    ByokProviderConfig,
    ConsumptionLogEntry,
    FundingSource,
    PreferenceUpdate,
    TokenBalance,
    UsageRecord,
    UserProfile,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize as UTC; naive values are taken as UTC."""
    if not value:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.astimezone(timezone.utc).isoformat()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables and indexes if they don't exist.

    token_consumption_log and usage_analytics are append-only ledgers.
    No UPDATE or DELETE operations should ever be performed on them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                user_id TEXT PRIMARY KEY,
                email TEXT,
                has_subscription INTEGER NOT NULL DEFAULT 0,
                has_one_time_purchases INTEGER NOT NULL DEFAULT 0,
                has_byok_configured INTEGER NOT NULL DEFAULT 0,
                consumption_order TEXT NOT NULL,
                byok_enabled INTEGER NOT NULL DEFAULT 0,
                byok_providers TEXT NOT NULL DEFAULT '{}',
                notify_token_low_threshold INTEGER NOT NULL DEFAULT 1000,
                notify_fallback_to_byok INTEGER NOT NULL DEFAULT 1,
                notify_one_time_consumed INTEGER NOT NULL DEFAULT 1,
                subscription_tier TEXT,
                subscription_status TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_token_balances (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES user_profiles(user_id),
                balance_type TEXT NOT NULL CHECK (balance_type IN ('subscription', 'one_time')),
                virtual_token_balance INTEGER NOT NULL DEFAULT 0 CHECK (virtual_token_balance >= 0),
                total_tokens_purchased INTEGER NOT NULL DEFAULT 0,
                total_tokens_used INTEGER NOT NULL DEFAULT 0,
                platform_fee_collected INTEGER NOT NULL DEFAULT 0,
                purchase_source TEXT,
                purchase_date TEXT,
                expiry_date TEXT,
                consumption_priority INTEGER NOT NULL DEFAULT 100,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS token_consumption_log (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                request_id TEXT,
                total_tokens_needed INTEGER NOT NULL,
                consumption_plan TEXT NOT NULL,
                actual_consumption TEXT NOT NULL,
                notifications_sent TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS usage_analytics (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                user_type TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                request_id TEXT,
                method TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_user_token_balances_priority
                ON user_token_balances(user_id, consumption_priority, created_at);
            CREATE INDEX IF NOT EXISTS idx_token_consumption_log_user_id
                ON token_consumption_log(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_token_consumption_log_request_id
                ON token_consumption_log(request_id);
            CREATE INDEX IF NOT EXISTS idx_usage_analytics_user_id
                ON usage_analytics(user_id, timestamp);
        """)
        conn.commit()
    finally:
        conn.close()


class SqliteBalanceStore:
    """Token balances backed by the user_token_balances table."""

    _COLUMNS = """
        id, user_id, balance_type, virtual_token_balance, total_tokens_purchased,
        total_tokens_used, platform_fee_collected, purchase_source, purchase_date,
        expiry_date, consumption_priority, created_at
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    def list_active_balances(self, user_id: str) -> List[TokenBalance]:
        """Get balances with tokens left, in consumption order.

        Ordered by consumption_priority, then creation time (oldest first),
        so equal-priority balances are drained FIFO.

        Args:
            user_id: Owner of the balances

        Returns:
            List of TokenBalance with virtual_token_balance > 0
        """
        conn = get_connection(self.db_path, self.timeout)
        try:
            cursor = conn.execute(f"""
                SELECT {self._COLUMNS}
                FROM user_token_balances
                WHERE user_id = ? AND virtual_token_balance > 0
                ORDER BY consumption_priority ASC, created_at ASC, rowid ASC
            """, (user_id,))
            return [self._row_to_balance(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_balance(self, balance_id: str) -> Optional[TokenBalance]:
        """Get a single balance by id, including exhausted ones."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            cursor = conn.execute(
                f"SELECT {self._COLUMNS} FROM user_token_balances WHERE id = ?",
                (balance_id,)
            )
            row = cursor.fetchone()
            return self._row_to_balance(row) if row else None
        finally:
            conn.close()

    def conditional_decrement(
        self, conn: sqlite3.Connection, balance_id: str, amount: int
    ) -> DecrementResult:
        """Debit a balance only if it still holds at least amount.

        Runs inside the caller's transaction. A concurrent consumer that
        drained the row first makes the WHERE clause match nothing, which
        is reported as applied=False rather than raised.

        Args:
            conn: Connection with an open transaction
            balance_id: Balance to debit
            amount: Positive number of tokens

        Returns:
            DecrementResult with the post-debit (or current) balance
        """
        if amount <= 0:
            raise ValueError("amount must be > 0")

        cursor = conn.execute("""
            UPDATE user_token_balances
            SET virtual_token_balance = virtual_token_balance - ?,
                total_tokens_used = total_tokens_used + ?,
                updated_at = ?
            WHERE id = ? AND virtual_token_balance >= ?
        """, (amount, amount, _utcnow().isoformat(), balance_id, amount))
        applied = cursor.rowcount == 1

        row = conn.execute(
            "SELECT virtual_token_balance FROM user_token_balances WHERE id = ?",
            (balance_id,)
        ).fetchone()
        return DecrementResult(applied=applied, new_balance=row[0] if row else 0)

    def insert_balance(self, conn: sqlite3.Connection, balance: TokenBalance) -> None:
        """Insert a new balance row inside the caller's transaction."""
        now = _utcnow()
        conn.execute("""
            INSERT INTO user_token_balances
            (id, user_id, balance_type, virtual_token_balance, total_tokens_purchased,
             total_tokens_used, platform_fee_collected, purchase_source, purchase_date,
             expiry_date, consumption_priority, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            balance.id,
            balance.user_id,
            balance.balance_type.value,
            balance.virtual_token_balance,
            balance.total_tokens_purchased,
            balance.total_tokens_used,
            balance.platform_fee_collected,
            balance.purchase_source,
            _format_timestamp(balance.purchase_date),
            _format_timestamp(balance.expiry_date),
            balance.consumption_priority,
            _format_timestamp(balance.created_at or now),
            now.isoformat()
        ))

    @staticmethod
    def _row_to_balance(row) -> TokenBalance:
        return TokenBalance(
            id=row[0],
            user_id=row[1],
            balance_type=FundingSource(row[2]),
            virtual_token_balance=row[3],
            total_tokens_purchased=row[4],
            total_tokens_used=row[5],
            platform_fee_collected=row[6],
            purchase_source=row[7],
            purchase_date=_parse_timestamp(row[8]),
            expiry_date=_parse_timestamp(row[9]),
            consumption_priority=row[10],
            created_at=_parse_timestamp(row[11])
        )


class SqliteProfileStore:
    """User profiles backed by the user_profiles table."""

    _COLUMNS = """
        user_id, email, has_subscription, has_one_time_purchases, has_byok_configured,
        consumption_order, byok_enabled, byok_providers, notify_token_low_threshold,
        notify_fallback_to_byok, notify_one_time_consumed, subscription_tier,
        subscription_status, created_at, updated_at
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_BUSY_TIMEOUT,
        defaults: Optional[UserProfile] = None
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
            defaults: Template whose preferences seed newly created profiles
        """
        self.db_path = db_path
        self.timeout = timeout
        self.defaults = defaults

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        conn = get_connection(self.db_path, self.timeout)
        try:
            cursor = conn.execute(
                f"SELECT {self._COLUMNS} FROM user_profiles WHERE user_id = ?",
                (user_id,)
            )
            row = cursor.fetchone()
            return self._row_to_profile(row) if row else None
        finally:
            conn.close()

    def ensure_profile(self, user_id: str, email: Optional[str] = None) -> UserProfile:
        """Get the profile, creating it with default preferences if absent."""
        order = DEFAULT_CONSUMPTION_ORDER
        threshold = DEFAULT_TOKEN_LOW_THRESHOLD
        notify_fallback = notify_one_time = True
        if self.defaults is not None:
            order = self.defaults.consumption_order
            threshold = self.defaults.notify_token_low_threshold
            notify_fallback = self.defaults.notify_fallback_to_byok
            notify_one_time = self.defaults.notify_one_time_consumed

        now = _utcnow().isoformat()
        conn = get_connection(self.db_path, self.timeout)
        try:
            conn.execute("""
                INSERT OR IGNORE INTO user_profiles
                (user_id, email, consumption_order, notify_token_low_threshold,
                 notify_fallback_to_byok, notify_one_time_consumed, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id,
                email,
                json.dumps([source.value for source in order]),
                threshold,
                int(notify_fallback),
                int(notify_one_time),
                now,
                now
            ))
            conn.commit()
        finally:
            conn.close()

        return self.get_profile(user_id)

    def update_preferences(self, user_id: str, update: PreferenceUpdate) -> None:
        """Apply a partial preference update.

        Raises:
            ProfileNotFound: If the user has no profile
        """
        fields: List[str] = []
        values: List[Any] = []

        if update.consumption_order is not None:
            fields.append("consumption_order = ?")
            values.append(json.dumps([source.value for source in update.consumption_order]))
        if update.byok_enabled is not None:
            fields.append("byok_enabled = ?")
            values.append(int(update.byok_enabled))
        if update.byok_providers is not None:
            fields.append("byok_providers = ?")
            values.append(_dump_providers(update.byok_providers))
        if update.notify_token_low_threshold is not None:
            fields.append("notify_token_low_threshold = ?")
            values.append(update.notify_token_low_threshold)
        if update.notify_fallback_to_byok is not None:
            fields.append("notify_fallback_to_byok = ?")
            values.append(int(update.notify_fallback_to_byok))
        if update.notify_one_time_consumed is not None:
            fields.append("notify_one_time_consumed = ?")
            values.append(int(update.notify_one_time_consumed))

        if not fields:
            return

        fields.append("updated_at = ?")
        values.append(_utcnow().isoformat())
        values.append(user_id)

        self._update(f"UPDATE user_profiles SET {', '.join(fields)} WHERE user_id = ?", values, user_id)

    def configure_byok(
        self, user_id: str, providers: Mapping[str, ByokProviderConfig], enabled: bool = True
    ) -> None:
        """Set BYOK providers and mark BYOK as configured.

        Raises:
            ProfileNotFound: If the user has no profile
        """
        self._update("""
            UPDATE user_profiles
            SET byok_enabled = ?, byok_providers = ?, has_byok_configured = 1, updated_at = ?
            WHERE user_id = ?
        """, (int(enabled), _dump_providers(providers), _utcnow().isoformat(), user_id), user_id)

    def set_capability(
        self, conn: sqlite3.Connection, user_id: str, balance_type: FundingSource
    ) -> bool:
        """Flag the profile as holding a balance of this type, inside conn's transaction.

        Returns:
            True if a profile row was updated
        """
        column = {
            FundingSource.SUBSCRIPTION: "has_subscription",
            FundingSource.ONE_TIME: "has_one_time_purchases",
        }[FundingSource(balance_type)]
        cursor = conn.execute(
            f"UPDATE user_profiles SET {column} = 1, updated_at = ? WHERE user_id = ?",
            (_utcnow().isoformat(), user_id)
        )
        return cursor.rowcount == 1

    def _update(self, query: str, params, user_id: str) -> None:
        conn = get_connection(self.db_path, self.timeout)
        try:
            cursor = conn.execute(query, params)
            if cursor.rowcount == 0:
                conn.rollback()
                raise ProfileNotFound(user_id)
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_profile(row) -> UserProfile:
        providers = {
            name: ByokProviderConfig(enabled=bool(config.get("enabled", False)))
            for name, config in json.loads(row[7] or "{}").items()
        }
        order = json.loads(row[5]) if row[5] else DEFAULT_CONSUMPTION_ORDER
        return UserProfile(
            user_id=row[0],
            email=row[1],
            has_subscription=bool(row[2]),
            has_one_time_purchases=bool(row[3]),
            has_byok_configured=bool(row[4]),
            consumption_order=order,
            byok_enabled=bool(row[6]),
            byok_providers=providers,
            notify_token_low_threshold=int(row[8]),
            notify_fallback_to_byok=bool(row[9]),
            notify_one_time_consumed=bool(row[10]),
            subscription_tier=row[11],
            subscription_status=row[12],
            created_at=_parse_timestamp(row[13]),
            updated_at=_parse_timestamp(row[14])
        )


def _dump_providers(providers: Mapping[str, ByokProviderConfig]) -> str:
    return json.dumps({name: {"enabled": config.enabled} for name, config in providers.items()})


class SqliteLedgerStore:
    """Append-only consumption ledger backed by token_consumption_log."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    def append_consumption_log(self, conn: sqlite3.Connection, entry: ConsumptionLogEntry) -> str:
        """Insert a ledger entry inside the caller's transaction.

        Returns:
            The entry id
        """
        conn.execute("""
            INSERT INTO token_consumption_log
            (id, user_id, request_id, total_tokens_needed, consumption_plan,
             actual_consumption, notifications_sent, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.id,
            entry.user_id,
            entry.request_id,
            entry.total_tokens_needed,
            json.dumps(entry.plan),
            json.dumps(entry.actual_consumption),
            json.dumps(entry.notifications_sent),
            entry.created_at.isoformat()
        ))
        return entry.id

    def list_consumption_history(self, user_id: str, limit: int = 50) -> List[ConsumptionLogEntry]:
        """Get a user's consumption history, most recent first.

        Args:
            user_id: User to fetch history for
            limit: Maximum number of entries to return

        Returns:
            List of ConsumptionLogEntry ordered newest first
        """
        conn = get_connection(self.db_path, self.timeout)
        try:
            cursor = conn.execute("""
                SELECT id, user_id, request_id, total_tokens_needed, consumption_plan,
                       actual_consumption, notifications_sent, created_at
                FROM token_consumption_log
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
            """, (user_id, limit))
            return [
                ConsumptionLogEntry(
                    id=row[0],
                    user_id=row[1],
                    request_id=row[2],
                    total_tokens_needed=row[3],
                    plan=json.loads(row[4]),
                    actual_consumption=json.loads(row[5]),
                    notifications_sent=json.loads(row[6]),
                    created_at=datetime.fromisoformat(row[7])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


class UsageRepository:
    """Usage analytics sink backed by the usage_analytics table.

    Implements the UsageRecorder interface. Records are append-only.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    def record_usage(self, record: UsageRecord) -> str:
        """Insert a single usage record.

        Returns:
            Generated record id
        """
        record_id = str(uuid.uuid4())
        conn = get_connection(self.db_path, self.timeout)
        try:
            conn.execute("""
                INSERT INTO usage_analytics
                (id, user_id, user_type, provider, model, input_tokens, output_tokens,
                 total_tokens, request_id, method, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record_id,
                record.user_id,
                record.user_type,
                record.provider,
                record.model,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                record.request_id,
                record.method,
                (record.timestamp or _utcnow()).isoformat()
            ))
            conn.commit()
        finally:
            conn.close()
        return record_id

    def get_recent_usage(self, user_id: Optional[str] = None, limit: int = 50) -> List[UsageRecord]:
        """Get recent usage records, newest first, optionally for one user."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            query = """
                SELECT user_id, user_type, provider, model, input_tokens, output_tokens,
                       total_tokens, request_id, method, timestamp
                FROM usage_analytics
            """
            params: List[Any] = []
            if user_id:
                query += " WHERE user_id = ?"
                params.append(user_id)
            query += " ORDER BY timestamp DESC, rowid DESC LIMIT ?"
            params.append(limit)

            cursor = conn.execute(query, params)
            return [
                UsageRecord(
                    user_id=row[0],
                    user_type=row[1],
                    provider=row[2],
                    model=row[3],
                    input_tokens=row[4],
                    output_tokens=row[5],
                    total_tokens=row[6],
                    request_id=row[7],
                    method=row[8],
                    timestamp=datetime.fromisoformat(row[9])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()
