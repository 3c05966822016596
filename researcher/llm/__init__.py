"""Model access for the researcher."""

from .structured_model import ChatStructuredModel, parse_structured

__all__ = ["ChatStructuredModel", "parse_structured"]
