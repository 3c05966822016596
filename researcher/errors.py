"""Exceptions raised by the researcher's building blocks.

The orchestrator itself never lets these escape ``research()``; they exist so
callers of the lower layers (cache sweeps, admin tooling, tests) can tell the
failures apart.
"""


class ResearcherError(Exception):
    """Base class for researcher errors."""


class CacheError(ResearcherError):
    """The result cache could not read or write an entry."""


class StructuredOutputError(ResearcherError):
    """A model call returned a payload that does not match its schema."""

    def __init__(self, schema_name: str, detail: str):
        super().__init__(f"{schema_name}: {detail}")
        self.schema_name = schema_name
        self.detail = detail


class EmbeddingError(ResearcherError):
    """The embedding provider did not return a vector."""


class PublishError(ResearcherError):
    """An outbound event could not be handed to the stream."""
