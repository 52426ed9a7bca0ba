# packages/core/errors.py
from __future__ import annotations


class RelayError(Exception):
    """Base class for domain errors raised by storage and orchestration."""


class MessageNotFound(RelayError):
    pass


class ThreadNotFound(RelayError):
    pass


class GenerationConflict(RelayError):
    """The message already has (or had) a generation; only `pending` placeholders can be claimed."""


class InvalidStatusTransition(RelayError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"invalid status transition {current} -> {requested}")
        self.current = current
        self.requested = requested


class ChunkLogUnavailable(RelayError):
    pass


class ProviderNotConfigured(RelayError):
    pass
