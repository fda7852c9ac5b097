"""CasePrep feedback pipeline: cache, resilient AI client and orchestrator."""

__version__ = "1.0.0"
