"""
Consumption planning.

Decides which funding sources pay for a request. Planning is read-only
and deterministic: the same profile, balances and request always yield
the same plan.

Strategies, in order:
1. Managed only - subscription and one-time balances cover the request
2. BYOK fallback - all-or-nothing, managed balances are left untouched
3. Exhausted - empty plan with a critical notification
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from hybrid_billing.storage.models import FundingSource, TokenBalance, UserProfile
from .errors import ProfileNotFound
from .interfaces import BalanceStore, ProfileStore


class NotificationType(str, Enum):
    """Advisory notification kinds attached to a plan."""
    TOKEN_LOW = "token_low"
    FALLBACK_TO_BYOK = "fallback_to_byok"
    ONE_TIME_CONSUMED = "one_time_consumed"
    BALANCE_EXHAUSTED = "balance_exhausted"


@dataclass(frozen=True)
class PlanNotification:
    type: NotificationType
    message: str
    critical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "message": self.message, "critical": self.critical}


@dataclass(frozen=True)
class ConsumptionPlanStep:
    """One proposed draw. balance_id is None for BYOK."""
    type: FundingSource
    tokens_to_consume: int
    reason: str
    balance_id: Optional[str] = None

    def __post_init__(self):
        if self.tokens_to_consume <= 0:
            raise ValueError("tokens_to_consume must be > 0")
        if self.type == FundingSource.BYOK and self.balance_id is not None:
            raise ValueError("BYOK steps have no balance_id")
        if self.type != FundingSource.BYOK and self.balance_id is None:
            raise ValueError("Managed steps require a balance_id")

    def to_dict(self) -> Dict[str, Any]:
        step = {
            "type": self.type.value,
            "tokens_to_consume": self.tokens_to_consume,
            "reason": self.reason,
        }
        if self.balance_id is not None:
            step["balance_id"] = self.balance_id
        return step


@dataclass(frozen=True)
class ConsumptionPlan:
    """A proposal; viability is checked by the executor, not here."""
    total_tokens_needed: int
    steps: List[ConsumptionPlanStep] = field(default_factory=list)
    notifications: List[PlanNotification] = field(default_factory=list)

    def __post_init__(self):
        """Enforce BYOK exclusivity."""
        if any(step.type == FundingSource.BYOK for step in self.steps) and len(self.steps) != 1:
            raise ValueError("A BYOK plan must contain exactly one step")

    @property
    def total_planned(self) -> int:
        return sum(step.tokens_to_consume for step in self.steps)

    @property
    def is_byok(self) -> bool:
        return len(self.steps) == 1 and self.steps[0].type == FundingSource.BYOK

    @property
    def is_viable(self) -> bool:
        return self.total_planned >= self.total_tokens_needed

    def notification_messages(self) -> List[str]:
        return [notification.message for notification in self.notifications]


_SOURCE_LABELS = {
    FundingSource.SUBSCRIPTION: "subscription",
    FundingSource.ONE_TIME: "one-time purchase",
}


def plan_consumption(
    profile: UserProfile,
    balances: Sequence[TokenBalance],
    tokens_needed: int,
    api_key_present: bool
) -> ConsumptionPlan:
    """Build a consumption plan from a profile and its active balances.

    Args:
        profile: The user's preferences
        balances: Active balances, pre-sorted by priority then creation time
        tokens_needed: Tokens the request requires
        api_key_present: Whether the caller supplied a BYOK key

    Returns:
        ConsumptionPlan; never raises for insufficient funds

    Raises:
        ValueError: If tokens_needed is not a positive integer
    """
    if isinstance(tokens_needed, bool) or not isinstance(tokens_needed, int) or tokens_needed <= 0:
        raise ValueError("tokens_needed must be a positive integer")

    active = [b for b in balances if b.virtual_token_balance > 0]
    total_managed = sum(b.virtual_token_balance for b in active)

    if total_managed >= tokens_needed:
        return _plan_managed(profile, active, tokens_needed)

    if (profile.byok_enabled and api_key_present
            and FundingSource.BYOK in profile.consumption_order):
        return _plan_byok(profile, total_managed, tokens_needed)

    key_state = "API key not configured for fallback" if api_key_present else "no API key provided"
    return ConsumptionPlan(
        total_tokens_needed=tokens_needed,
        steps=[],
        notifications=[PlanNotification(
            type=NotificationType.BALANCE_EXHAUSTED,
            message=(
                f"Cannot fulfill request. Need {tokens_needed} tokens but only have "
                f"{total_managed} managed tokens and {key_state}."
            ),
            critical=True
        )]
    )


def _plan_managed(
    profile: UserProfile,
    balances: List[TokenBalance],
    tokens_needed: int
) -> ConsumptionPlan:
    """Greedy walk over the user's order. Sources missing from the order are
    never drawn, so the result can fall short of tokens_needed."""
    steps: List[ConsumptionPlanStep] = []
    notifications: List[PlanNotification] = []
    remaining = tokens_needed

    for source in profile.consumption_order:
        if remaining <= 0:
            break
        if source == FundingSource.BYOK:
            continue

        for balance in balances:
            if remaining <= 0:
                break
            if balance.balance_type != source:
                continue

            take = min(remaining, balance.virtual_token_balance)
            label = _SOURCE_LABELS[source]
            steps.append(ConsumptionPlanStep(
                type=source,
                balance_id=balance.id,
                tokens_to_consume=take,
                reason=f"Using {label} tokens from {balance.purchase_source}"
            ))
            remaining -= take

            left = balance.virtual_token_balance - take
            if 0 < left <= profile.notify_token_low_threshold:
                notifications.append(PlanNotification(
                    type=NotificationType.TOKEN_LOW,
                    message=(
                        f"{label.capitalize()} token balance will be low "
                        f"({left} remaining) after this request"
                    )
                ))

            if source == FundingSource.ONE_TIME and profile.notify_one_time_consumed:
                notifications.append(PlanNotification(
                    type=NotificationType.ONE_TIME_CONSUMED,
                    message=f"Using {take} tokens from one-time purchase ({balance.purchase_source})"
                ))

    return ConsumptionPlan(
        total_tokens_needed=tokens_needed,
        steps=steps,
        notifications=notifications
    )


def _plan_byok(profile: UserProfile, total_managed: int, tokens_needed: int) -> ConsumptionPlan:
    notifications: List[PlanNotification] = []
    if profile.notify_fallback_to_byok:
        notifications.append(PlanNotification(
            type=NotificationType.FALLBACK_TO_BYOK,
            message=(
                f"Insufficient managed tokens ({total_managed} available, {tokens_needed} needed). "
                f"Using your API key for full request."
            )
        ))
    if total_managed > 0:
        notifications.append(PlanNotification(
            type=NotificationType.TOKEN_LOW,
            message=f"You have {total_managed} unused managed tokens that will be preserved."
        ))

    return ConsumptionPlan(
        total_tokens_needed=tokens_needed,
        steps=[ConsumptionPlanStep(
            type=FundingSource.BYOK,
            tokens_to_consume=tokens_needed,
            reason="Using your API key (BYOK) - insufficient managed token balance"
        )],
        notifications=notifications
    )


class ConsumptionPlanner:
    """Loads a user's profile and balances and plans against them."""

    def __init__(self, profiles: ProfileStore, balances: BalanceStore):
        self.profiles = profiles
        self.balances = balances

    def plan(self, user_id: str, tokens_needed: int, api_key_present: bool = False) -> ConsumptionPlan:
        """Plan consumption for a user.

        Raises:
            ProfileNotFound: If the user has no profile
            ValueError: If tokens_needed is not a positive integer
        """
        profile = self.profiles.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        balances = self.balances.list_active_balances(user_id)
        return plan_consumption(profile, balances, tokens_needed, api_key_present)
