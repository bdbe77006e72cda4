"""Exception hierarchy shared by the compaction and overview pipelines."""

from __future__ import annotations


class CompactError(Exception):
    """Base class for llm-compact errors."""


class ConfigurationError(CompactError):
    """No usable provider is configured. Never retried."""


class GenerationError(CompactError):
    """Generation failed after retries and provider fallback."""

    def __init__(self, message: str, provider_id: str | None = None, attempts: tuple[str, ...] = ()):
        super().__init__(message)
        self.provider_id = provider_id
        self.attempts = attempts


class StructuredOutputError(GenerationError):
    """Model output could not be parsed or validated against the schema."""


class GenerationCancelledError(GenerationError):
    """The request's cancellation event was set before or between attempts."""


class ParseError(CompactError):
    """Model output did not match the expected grammar."""


class JsonParseError(ParseError):
    pass


class OutlineParseError(ParseError):
    pass


class SessionStateError(CompactError):
    """Illegal session state transition."""


class SessionAlreadyActiveError(SessionStateError):
    def __init__(self, workspace_id: str, conversation_id: str):
        super().__init__("A compact session is already in progress for this conversation")
        self.workspace_id = workspace_id
        self.conversation_id = conversation_id


class CompactionCancelledError(CompactError):
    def __init__(self, session_id: str):
        super().__init__(f"Compact session {session_id} was cancelled")
        self.session_id = session_id


class SectionGenerationError(CompactError):
    """A required section could not be generated."""

    def __init__(self, message: str, section_id: str | None = None):
        super().__init__(message)
        self.section_id = section_id


class OverviewGenerationError(CompactError):
    pass


class LearningsExtractionError(CompactError):
    """The model returned no usable learning concepts."""


class ResourceDiscoveryError(CompactError):
    """No learning resources could be produced for a conversation."""
