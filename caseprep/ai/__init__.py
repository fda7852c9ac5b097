"""AI provider access: resilient completion client and prompt templates."""

from caseprep.ai.client import AIClientSettings, ResilientClient, RetryPolicy, with_retry

__all__ = ["AIClientSettings", "ResilientClient", "RetryPolicy", "with_retry"]
