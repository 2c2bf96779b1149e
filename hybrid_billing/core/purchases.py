"""
Purchase ingestion.

Turns a token purchase into a spendable balance after the platform fee.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

from hybrid_billing.storage.models import (
    DEFAULT_CONSUMPTION_PRIORITY,
    MANAGED_SOURCES,
    FundingSource,
    TokenBalance,
)
from .errors import ProfileNotFound
from .interfaces import BalanceStore, ProfileStore, TransactionHost

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_FEE_PERCENT = 20


def split_purchase(tokens_purchased: int, fee_percent: int = DEFAULT_PLATFORM_FEE_PERCENT) -> Tuple[int, int]:
    """Split purchased tokens into usable tokens and platform fee.

    usable = floor(tokens * (100 - fee_percent) / 100), computed exactly on
    integers; the fee is the remainder so the two always sum to the purchase.

    Args:
        tokens_purchased: Positive number of purchased tokens
        fee_percent: Platform fee percentage

    Returns:
        Tuple of (usable_tokens, platform_fee)
    """
    if isinstance(tokens_purchased, bool) or not isinstance(tokens_purchased, int) or tokens_purchased <= 0:
        raise ValueError("tokens_purchased must be a positive integer")
    if not 0 <= fee_percent < 100:
        raise ValueError("fee_percent must be between 0 and 100")

    usable = tokens_purchased * (100 - fee_percent) // 100
    return usable, tokens_purchased - usable


class PurchaseService:
    """Inserts balances for purchases. A pure insert, no planning needed."""

    def __init__(
        self,
        profiles: ProfileStore,
        balances: BalanceStore,
        transactions: TransactionHost,
        fee_percent: int = DEFAULT_PLATFORM_FEE_PERCENT
    ):
        self.profiles = profiles
        self.balances = balances
        self.transactions = transactions
        self.fee_percent = fee_percent

    def add_tokens(
        self,
        user_id: str,
        balance_type: FundingSource,
        tokens_purchased: int,
        source: str,
        priority: int = DEFAULT_CONSUMPTION_PRIORITY,
        expiry: Optional[datetime] = None
    ) -> str:
        """Record a purchase as a new balance and flag the profile capability.

        Args:
            user_id: Purchasing user
            balance_type: 'subscription' or 'one_time'
            tokens_purchased: Tokens bought, before the platform fee
            source: Purchase source label (e.g. 'monthly_subscription')
            priority: Consumption priority, lower is consumed first
            expiry: Optional expiry date

        Returns:
            The new balance id

        Raises:
            ValueError: If balance_type or tokens_purchased is invalid
            ProfileNotFound: If the user has no profile
        """
        balance_type = FundingSource(balance_type)
        if balance_type not in MANAGED_SOURCES:
            raise ValueError("balance_type must be 'subscription' or 'one_time'")
        usable, fee = split_purchase(tokens_purchased, self.fee_percent)

        now = datetime.now(timezone.utc)
        balance = TokenBalance(
            id=str(uuid.uuid4()),
            user_id=user_id,
            balance_type=balance_type,
            virtual_token_balance=usable,
            total_tokens_purchased=tokens_purchased,
            platform_fee_collected=fee,
            purchase_source=source,
            purchase_date=now,
            expiry_date=expiry,
            consumption_priority=priority,
            created_at=now
        )

        with self.transactions.transaction() as conn:
            if not self.profiles.set_capability(conn, user_id, balance_type):
                raise ProfileNotFound(user_id)
            self.balances.insert_balance(conn, balance)

        logger.info(
            f"Added {usable} {balance_type.value} tokens for user {user_id} "
            f"({tokens_purchased} purchased, {fee} platform fee) from {source}"
        )
        return balance.id
