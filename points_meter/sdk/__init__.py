"""
SDK for points-meter.

Provides provider client wrappers that bill usage as it happens.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
