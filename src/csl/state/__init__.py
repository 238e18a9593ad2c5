"""Persisted daemon state."""

from csl.state.offsets import OffsetStore

__all__ = ["OffsetStore"]
