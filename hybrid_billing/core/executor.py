"""
Consumption execution.

Applies a consumption plan transactionally:
1. Plan (read-only) and apply the viability gate - no transaction is
   opened for a plan that cannot cover the request
2. Debit each managed balance with a conditional decrement; a lost race
   rolls back the whole transaction
3. Append the ledger entry in the same transaction and commit
4. Report usage telemetry after commit, best-effort
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from hybrid_billing.storage.models import ConsumptionLogEntry, FundingSource, UsageRecord
from .errors import ConcurrentBalanceConflict, StorageFailure
from .interfaces import BalanceStore, LedgerStore, TransactionHost, UsageRecorder
from .planner import ConsumptionPlan, ConsumptionPlanner
from .token_counter import DEFAULT_INPUT_TOKEN_RATIO, estimate_usage_split

logger = logging.getLogger(__name__)

USAGE_METHOD = "execute_consumption"


@dataclass(frozen=True)
class ConsumptionApplied:
    """What was actually debited for one step."""
    type: FundingSource
    tokens_consumed: int
    balance_id: Optional[str] = None
    new_balance: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        applied = {"type": self.type.value, "tokens_consumed": self.tokens_consumed}
        if self.balance_id is not None:
            applied["balance_id"] = self.balance_id
            applied["new_balance"] = self.new_balance
        return applied


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    tokens_consumed: int
    actual_consumption: List[ConsumptionApplied] = field(default_factory=list)
    fallback_used: bool = False
    notifications: List[str] = field(default_factory=list)
    usage_log_id: Optional[str] = None


class ConsumptionExecutor:
    """Runs plan + execute cycles against injected stores.

    Concurrency control is pushed down to the datastore: each debit is a
    conditional UPDATE, and there is no application-level lock.
    """

    def __init__(
        self,
        planner: ConsumptionPlanner,
        balances: BalanceStore,
        ledger: LedgerStore,
        transactions: TransactionHost,
        usage_recorder: Optional[UsageRecorder] = None,
        input_token_ratio: float = DEFAULT_INPUT_TOKEN_RATIO
    ):
        if not 0 <= input_token_ratio <= 1:
            raise ValueError("input_token_ratio must be between 0 and 1")
        self.planner = planner
        self.balances = balances
        self.ledger = ledger
        self.transactions = transactions
        self.usage_recorder = usage_recorder
        self.input_token_ratio = input_token_ratio

    def execute(
        self,
        user_id: str,
        tokens_needed: int,
        provider: str,
        model: Optional[str] = None,
        request_id: Optional[str] = None,
        api_key_present: bool = False
    ) -> ExecutionResult:
        """Plan and apply consumption for one request.

        Args:
            user_id: User paying for the request
            tokens_needed: Tokens to debit
            provider: AI provider serving the request
            model: Model serving the request
            request_id: Caller's request id; generated when omitted
            api_key_present: Whether the caller supplied a BYOK key

        Returns:
            ExecutionResult; success=False when the plan is not viable

        Raises:
            ProfileNotFound: If the user has no profile
            ConcurrentBalanceConflict: If a balance changed since planning
            StorageFailure: If the datastore fails mid-transaction
        """
        plan = self.planner.plan(user_id, tokens_needed, api_key_present)
        request_id = request_id or uuid.uuid4().hex

        if not plan.is_viable:
            logger.info(
                f"Consumption not viable for user {user_id}: "
                f"planned {plan.total_planned} of {tokens_needed} tokens"
            )
            return ExecutionResult(
                success=False,
                tokens_consumed=0,
                notifications=plan.notification_messages()
            )

        try:
            with self.transactions.transaction() as conn:
                actual = self._apply(conn, plan)
                usage_log_id = self.ledger.append_consumption_log(conn, ConsumptionLogEntry(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    request_id=request_id,
                    total_tokens_needed=tokens_needed,
                    plan=[step.to_dict() for step in plan.steps],
                    actual_consumption=[applied.to_dict() for applied in actual],
                    notifications_sent=[n.to_dict() for n in plan.notifications],
                    created_at=datetime.now(timezone.utc)
                ))
        except ConcurrentBalanceConflict as e:
            logger.warning(f"Rolled back consumption for user {user_id} (request {request_id}): {e}")
            raise
        except sqlite3.Error as e:
            logger.error(f"Storage failure consuming tokens for user {user_id}: {e}", exc_info=True)
            raise StorageFailure(f"Consumption failed for user {user_id}: {e}") from e

        fallback_used = plan.is_byok
        logger.info(
            f"Committed consumption {usage_log_id} for user {user_id}: "
            f"{tokens_needed} tokens via {'byok' if fallback_used else 'managed balances'}"
        )
        self._record_usage(user_id, tokens_needed, provider, model, request_id, fallback_used)

        return ExecutionResult(
            success=True,
            tokens_consumed=tokens_needed,
            actual_consumption=actual,
            fallback_used=fallback_used,
            notifications=plan.notification_messages(),
            usage_log_id=usage_log_id
        )

    def _apply(self, conn: sqlite3.Connection, plan: ConsumptionPlan) -> List[ConsumptionApplied]:
        if plan.is_byok:
            # No balance row is touched
            return [ConsumptionApplied(type=FundingSource.BYOK, tokens_consumed=plan.total_tokens_needed)]

        actual = []
        for step in plan.steps:
            result = self.balances.conditional_decrement(conn, step.balance_id, step.tokens_to_consume)
            if not result.applied:
                raise ConcurrentBalanceConflict(step.balance_id, step.type.value, step.tokens_to_consume)
            actual.append(ConsumptionApplied(
                type=step.type,
                tokens_consumed=step.tokens_to_consume,
                balance_id=step.balance_id,
                new_balance=result.new_balance
            ))
        return actual

    def _record_usage(
        self,
        user_id: str,
        tokens_needed: int,
        provider: str,
        model: Optional[str],
        request_id: str,
        fallback_used: bool
    ) -> None:
        """Send estimated usage to the analytics sink; never raises."""
        if self.usage_recorder is None:
            return

        try:
            usage = estimate_usage_split(tokens_needed, self.input_token_ratio)
            self.usage_recorder.record_usage(UsageRecord(
                user_id=user_id,
                user_type="byok" if fallback_used else "subscription",
                provider=provider,
                model=model,
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                total_tokens=tokens_needed,
                request_id=request_id,
                method=USAGE_METHOD,
                timestamp=datetime.now(timezone.utc)
            ))
        except Exception as e:
            logger.warning(
                f"Usage telemetry failed for user {user_id} (request {request_id}): {e}",
                exc_info=True
            )
