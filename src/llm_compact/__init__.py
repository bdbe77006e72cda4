"""Conversation compaction and overview generation over multiple LLM providers."""

__version__ = "0.1.0"
