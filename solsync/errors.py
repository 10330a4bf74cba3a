"""Exception types raised to callers of :mod:`solsync`.

Only clearly invalid caller input surfaces as an exception.  Expected absence
(unknown account, empty token pool) is reported as ``None`` or an empty
collection instead.
"""

from __future__ import annotations


class SolsyncError(Exception):
    """Base class for errors raised by this package."""


class InvalidKeyError(SolsyncError, ValueError):
    """Raised when a value cannot be converted into an account key."""


class PackError(SolsyncError, ValueError):
    """Raised when an instruction group cannot fit into an empty transaction."""

    def __init__(self, message: str, *, group_index: int, size: int | None = None) -> None:
        super().__init__(message)
        self.group_index = group_index
        self.size = size


class TokenUnavailableError(SolsyncError, RuntimeError):
    """Raised by the assembler when no recent blockhash could be obtained."""
