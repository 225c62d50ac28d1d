"""
SDK for credit_meter.

Provides the provider client used by the stream relay.
"""

from .openai_client import OpenAIUpstream

__all__ = ["OpenAIUpstream"]
