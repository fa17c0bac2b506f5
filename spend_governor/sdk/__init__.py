"""
SDK for Spend Governor.

Provider client wrappers that meter and enforce budgets at the call site.
"""

from .openai_client import GovernedOpenAI

__all__ = ["GovernedOpenAI"]
