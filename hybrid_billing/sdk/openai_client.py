"""
Billed OpenAI client wrapper.

Debits the user's funding sources before each chat completion.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.executor import ExecutionResult
from ..core.service import HybridBillingService

logger = logging.getLogger(__name__)


class ConsumptionDenied(Exception):
    """Raised when a request cannot be funded. No API call was made."""

    def __init__(self, user_id: str, result: ExecutionResult):
        reason = "; ".join(result.notifications) or "no funding source available"
        super().__init__(f"Consumption denied for user {user_id}: {reason}")
        self.user_id = user_id
        self.result = result


class BilledOpenAI:
    """OpenAI client wrapper that pays for each call from hybrid balances.

    Consumption is committed before the API call. If the call then fails
    the tokens stay debited; failures are loud so the caller can decide.
    """

    def __init__(
        self,
        service: HybridBillingService,
        user_id: str,
        model: str,
        provider: str = "openai"
    ):
        """Initialize billed OpenAI client.

        Args:
            service: Billing service used to plan and execute consumption
            user_id: User paying for the calls (required)
            model: OpenAI model name (required)
            provider: Provider name recorded in usage analytics

        Raises:
            ValueError: If user_id or model is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.service = service
        self.user_id = user_id
        self.model = model
        self.provider = provider
        self._platform_client: Optional[OpenAI] = None
        self.last_result: Optional[ExecutionResult] = None

    def chat(
        self,
        messages: List[Dict[str, str]],
        tokens_needed: int,
        api_key: Optional[str] = None,
        request_id: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion after debiting tokens_needed.

        Args:
            messages: List of message dictionaries (required)
            tokens_needed: Tokens to debit for this request
            api_key: User's own OpenAI key, used only on BYOK fallback
            request_id: Caller's request id for the consumption ledger
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            ConsumptionDenied: If no funding source can cover the request
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        result = self.service.execute_consumption(
            self.user_id,
            tokens_needed,
            provider=self.provider,
            model=self.model,
            request_id=request_id,
            api_key_present=bool(api_key)
        )
        self.last_result = result
        if not result.success:
            raise ConsumptionDenied(self.user_id, result)

        for message in result.notifications:
            logger.info(f"User {self.user_id}: {message}")

        client = OpenAI(api_key=api_key) if result.fallback_used else self.client
        return client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )

    @property
    def client(self) -> OpenAI:
        """Platform client, created on first managed-balance call."""
        if self._platform_client is None:
            self._platform_client = OpenAI()
        return self._platform_client
