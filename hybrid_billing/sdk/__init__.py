"""
SDK for hybrid billing.

Provides billed provider clients on top of the consumption engine.
"""

from .openai_client import BilledOpenAI, ConsumptionDenied

__all__ = ["BilledOpenAI", "ConsumptionDenied"]
