"""
Hybrid billing service.

Wires the SQLite stores into the planner, executor and purchase service,
and exposes the user-facing operations on top of them.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from hybrid_billing.config.loader import EngineConfig
from hybrid_billing.storage.db import SqliteTransactionHost
from hybrid_billing.storage.models import (
    ByokProviderConfig,
    ConsumptionLogEntry,
    FundingSource,
    PreferenceUpdate,
    TokenBalance,
    UsageRecord,
    UserProfile,
)
from hybrid_billing.storage.repository import (
    SqliteBalanceStore,
    SqliteLedgerStore,
    SqliteProfileStore,
    UsageRepository,
    initialize_schema,
)
from .executor import ConsumptionExecutor, ExecutionResult
from .interfaces import BalanceStore, LedgerStore, ProfileStore
from .planner import ConsumptionPlan, ConsumptionPlanner
from .purchases import PurchaseService


@dataclass(frozen=True)
class BalanceSummary:
    total_subscription_tokens: int
    total_one_time_tokens: int
    total_tokens: int


def summarize_balances(balances: Sequence[TokenBalance]) -> BalanceSummary:
    subscription = sum(
        b.virtual_token_balance for b in balances if b.balance_type == FundingSource.SUBSCRIPTION
    )
    one_time = sum(
        b.virtual_token_balance for b in balances if b.balance_type == FundingSource.ONE_TIME
    )
    return BalanceSummary(
        total_subscription_tokens=subscription,
        total_one_time_tokens=one_time,
        total_tokens=subscription + one_time
    )


class HybridBillingService:
    """Entry point used by the CLI and SDK."""

    def __init__(
        self,
        profiles: ProfileStore,
        balances: BalanceStore,
        ledger: LedgerStore,
        planner: ConsumptionPlanner,
        executor: ConsumptionExecutor,
        purchases: PurchaseService,
        allowed_byok_providers: Sequence[str],
        default_priority: int,
        usage: Optional[UsageRepository] = None
    ):
        self.profiles = profiles
        self.balances = balances
        self.ledger = ledger
        self.planner = planner
        self.executor = executor
        self.purchases = purchases
        self.allowed_byok_providers = tuple(allowed_byok_providers)
        self.default_priority = default_priority
        self.usage = usage

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None) -> "HybridBillingService":
        """Build a service over the SQLite database named in config.

        The schema is created if missing.
        """
        config = config or EngineConfig()
        db_path = config.database.path
        timeout = config.database.busy_timeout
        initialize_schema(db_path)

        transactions = SqliteTransactionHost(db_path, timeout)
        profiles = SqliteProfileStore(db_path, timeout, defaults=config.profile_defaults.as_template())
        balances = SqliteBalanceStore(db_path, timeout)
        ledger = SqliteLedgerStore(db_path, timeout)
        usage = UsageRepository(db_path, timeout)
        planner = ConsumptionPlanner(profiles, balances)
        executor = ConsumptionExecutor(
            planner=planner,
            balances=balances,
            ledger=ledger,
            transactions=transactions,
            usage_recorder=usage,
            input_token_ratio=config.billing.input_token_ratio
        )
        purchases = PurchaseService(
            profiles, balances, transactions, fee_percent=config.billing.platform_fee_percent
        )
        return cls(
            profiles=profiles,
            balances=balances,
            ledger=ledger,
            planner=planner,
            executor=executor,
            purchases=purchases,
            allowed_byok_providers=config.byok_providers,
            default_priority=config.billing.default_priority,
            usage=usage
        )

    # Profiles

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get_profile(user_id)

    def get_or_create_profile(self, user_id: str, email: Optional[str] = None) -> UserProfile:
        return self.profiles.ensure_profile(user_id, email)

    def update_preferences(self, user_id: str, update: PreferenceUpdate) -> None:
        if update.byok_providers is not None:
            self._check_byok_providers(update.byok_providers)
        self.profiles.update_preferences(user_id, update)

    def configure_byok(
        self, user_id: str, providers: Mapping[str, ByokProviderConfig], enabled: bool = True
    ) -> List[str]:
        """Store BYOK providers for a user.

        Returns:
            Names of the providers that are enabled

        Raises:
            ValueError: If a provider is not allowed for BYOK
            ProfileNotFound: If the user has no profile
        """
        self._check_byok_providers(providers)
        self.profiles.configure_byok(user_id, providers, enabled)
        return [name for name, config in providers.items() if config.enabled]

    def get_byok_status(self, user_id: str) -> Dict[str, Any]:
        profile = self.profiles.get_profile(user_id)
        if profile is None:
            return {"byok_enabled": False, "providers": {}, "has_configured_providers": False}

        providers = {name: config.enabled for name, config in profile.byok_providers.items()}
        return {
            "byok_enabled": profile.byok_enabled,
            "providers": providers,
            "has_configured_providers": any(providers.values()),
        }

    def _check_byok_providers(self, providers: Mapping[str, ByokProviderConfig]) -> None:
        disallowed = [name for name in providers if name not in self.allowed_byok_providers]
        if disallowed:
            raise ValueError(
                f"BYOK not supported for providers: {', '.join(disallowed)}. "
                f"Allowed providers: {', '.join(self.allowed_byok_providers)}"
            )

    # Balances and purchases

    def get_balances(self, user_id: str) -> Dict[str, Any]:
        balances = self.balances.list_active_balances(user_id)
        return {"balances": balances, "summary": summarize_balances(balances)}

    def add_tokens(
        self,
        user_id: str,
        balance_type: FundingSource,
        tokens_purchased: int,
        source: str,
        priority: Optional[int] = None,
        expiry: Optional[datetime] = None
    ) -> str:
        return self.purchases.add_tokens(
            user_id,
            balance_type,
            tokens_purchased,
            source,
            priority=self.default_priority if priority is None else priority,
            expiry=expiry
        )

    # Consumption

    def preview_plan(self, user_id: str, tokens_needed: int, api_key_present: bool = False) -> ConsumptionPlan:
        return self.planner.plan(user_id, tokens_needed, api_key_present)

    def execute_consumption(
        self,
        user_id: str,
        tokens_needed: int,
        provider: str,
        model: Optional[str] = None,
        request_id: Optional[str] = None,
        api_key_present: bool = False
    ) -> ExecutionResult:
        return self.executor.execute(user_id, tokens_needed, provider, model, request_id, api_key_present)

    def get_consumption_history(self, user_id: str, limit: int = 50) -> List[ConsumptionLogEntry]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        return self.ledger.list_consumption_history(user_id, limit)

    def get_recent_usage(self, user_id: Optional[str] = None, limit: int = 50) -> List[UsageRecord]:
        if self.usage is None:
            return []
        return self.usage.get_recent_usage(user_id, limit)
