"""Token counting, embedding services, and the context pipeline."""

from .client import ApproxByteCounter, TiktokenCounter, TokenCalculator, TokenCounterRegistry

__all__ = ["ApproxByteCounter", "TiktokenCounter", "TokenCalculator", "TokenCounterRegistry"]
