"""
Data models for storage layer.

Defines the value objects that cross the store boundary: user profiles,
token balances, consumption ledger entries and usage records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class FundingSource(str, Enum):
    """Funding sources a request can be paid from."""
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"
    BYOK = "byok"


MANAGED_SOURCES = (FundingSource.SUBSCRIPTION, FundingSource.ONE_TIME)

DEFAULT_CONSUMPTION_ORDER: Tuple[FundingSource, ...] = (
    FundingSource.SUBSCRIPTION,
    FundingSource.ONE_TIME,
    FundingSource.BYOK,
)
DEFAULT_TOKEN_LOW_THRESHOLD = 1000
DEFAULT_CONSUMPTION_PRIORITY = 100
MAX_TOKEN_LOW_THRESHOLD = 100_000


def parse_consumption_order(values) -> Tuple[FundingSource, ...]:
    """Parse and validate a consumption order.

    Args:
        values: Iterable of funding-source tags (strings or FundingSource)

    Returns:
        Tuple of FundingSource in the given order

    Raises:
        ValueError: If the order is empty, has unknown tags or duplicates
    """
    order = []
    for value in values:
        try:
            source = FundingSource(value)
        except ValueError:
            valid = [s.value for s in FundingSource]
            raise ValueError(f"Unknown funding source '{value}', must be one of: {valid}")
        if source in order:
            raise ValueError(f"Duplicate funding source in consumption order: {source.value}")
        order.append(source)

    if not order:
        raise ValueError("consumption_order cannot be empty")
    return tuple(order)


@dataclass(frozen=True)
class ByokProviderConfig:
    """Per-provider BYOK switch. Key material is never stored."""
    enabled: bool = True


@dataclass(frozen=True)
class UserProfile:
    """Per-user funding preferences and capabilities."""
    user_id: str
    email: Optional[str] = None
    consumption_order: Tuple[FundingSource, ...] = DEFAULT_CONSUMPTION_ORDER
    byok_enabled: bool = False
    byok_providers: Mapping[str, ByokProviderConfig] = field(default_factory=dict)
    notify_token_low_threshold: int = DEFAULT_TOKEN_LOW_THRESHOLD
    notify_fallback_to_byok: bool = True
    notify_one_time_consumed: bool = True
    has_subscription: bool = False
    has_one_time_purchases: bool = False
    has_byok_configured: bool = False
    subscription_tier: Optional[str] = None
    subscription_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id is required")
        object.__setattr__(self, "consumption_order", parse_consumption_order(self.consumption_order))
        if self.notify_token_low_threshold < 0:
            raise ValueError("notify_token_low_threshold cannot be negative")


@dataclass(frozen=True)
class PreferenceUpdate:
    """Partial preference update. Fields left as None are unchanged."""
    consumption_order: Optional[Tuple[FundingSource, ...]] = None
    byok_enabled: Optional[bool] = None
    byok_providers: Optional[Mapping[str, ByokProviderConfig]] = None
    notify_token_low_threshold: Optional[int] = None
    notify_fallback_to_byok: Optional[bool] = None
    notify_one_time_consumed: Optional[bool] = None

    def __post_init__(self):
        if self.consumption_order is not None:
            object.__setattr__(self, "consumption_order", parse_consumption_order(self.consumption_order))
        threshold = self.notify_token_low_threshold
        if threshold is not None:
            if isinstance(threshold, bool) or not isinstance(threshold, int):
                raise ValueError("notify_token_low_threshold must be an integer")
            if threshold < 0 or threshold > MAX_TOKEN_LOW_THRESHOLD:
                raise ValueError(
                    f"notify_token_low_threshold must be between 0 and {MAX_TOKEN_LOW_THRESHOLD}"
                )

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)


@dataclass(frozen=True)
class TokenBalance:
    """A single funding balance (one subscription period or one purchase).

    Only virtual_token_balance is consumable; the other counters are
    monotonic bookkeeping.
    """
    id: str
    user_id: str
    balance_type: FundingSource
    virtual_token_balance: int
    total_tokens_purchased: int = 0
    total_tokens_used: int = 0
    platform_fee_collected: int = 0
    purchase_source: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    consumption_priority: int = DEFAULT_CONSUMPTION_PRIORITY
    created_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate balance type and counters."""
        balance_type = FundingSource(self.balance_type)
        if balance_type not in MANAGED_SOURCES:
            raise ValueError("balance_type must be 'subscription' or 'one_time'")
        object.__setattr__(self, "balance_type", balance_type)
        if self.virtual_token_balance < 0:
            raise ValueError("virtual_token_balance cannot be negative")
        if self.total_tokens_purchased < 0:
            raise ValueError("total_tokens_purchased cannot be negative")
        if self.total_tokens_used < 0:
            raise ValueError("total_tokens_used cannot be negative")
        if self.platform_fee_collected < 0:
            raise ValueError("platform_fee_collected cannot be negative")


@dataclass(frozen=True)
class ConsumptionLogEntry:
    """Immutable audit record of one committed consumption.

    plan holds the proposed steps, actual_consumption what was applied.
    Once written, these records must never be modified.
    """
    id: str
    user_id: str
    request_id: Optional[str]
    total_tokens_needed: int
    plan: List[Dict[str, Any]]
    actual_consumption: List[Dict[str, Any]]
    notifications_sent: List[Dict[str, Any]]
    created_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Usage telemetry handed to the analytics sink after a commit.

    Token split is an estimate, not a measured value.
    """
    user_id: str
    user_type: str
    provider: str
    model: Optional[str]
    input_tokens: int
    output_tokens: int
    total_tokens: int
    request_id: Optional[str] = None
    method: Optional[str] = None
    timestamp: Optional[datetime] = None
