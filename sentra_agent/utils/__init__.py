"""Utility functions for sentra_agent."""

from sentra_agent.utils.atomic_io import AtomicFileWriter, get_atomic_writer
from sentra_agent.utils.tokens import count_tokens, estimate_tokens

__all__ = ["AtomicFileWriter", "get_atomic_writer", "count_tokens", "estimate_tokens"]
