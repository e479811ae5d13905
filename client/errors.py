from enum import Enum
from typing import Optional


class ClientError(Exception):
    """Base for errors surfaced to the presentation layer as ``error``."""


class TransportFailure(ClientError):
    """Push channel connect/invoke/stop failed. Never fatal: callers fall back to polling."""


class PullChannelError(ClientError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404


class PayloadError(ClientError, ValueError):
    """A player or hazard entry could not be parsed."""


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DEFERRED = "deferred"        # grace window active, re-check scheduled
    STALE = "stale"              # operation token superseded
    EMPTY_GUARD = "empty_guard"  # pulled snapshot had no players while local state has some
