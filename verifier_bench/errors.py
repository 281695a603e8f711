"""Exceptions raised by the benchmark pipeline."""
from __future__ import annotations

from typing import List, Optional


class BenchError(Exception):
    """Base exception for verifier benchmark errors."""

    pass


class ParseError(BenchError):
    """Proof artifact is missing, malformed or does not match the point grammar."""

    def __init__(self, message: str, source: str = "", position: Optional[int] = None) -> None:
        self.source = source
        self.position = position
        where = source
        if position is not None:
            where = f"{source}@{position}" if source else f"offset {position}"
        super().__init__(f"{where}: {message}" if where else message)


class SigningError(BenchError):
    """Ephemeral key generation or offline signing failed."""

    pass


class DeploymentError(BenchError):
    """Verifier contract could not be deployed or initialised."""

    pass


class BroadcastError(BenchError):
    """One or more raw transactions were rejected by the RPC endpoint."""

    def __init__(self, message: str, failed_indices: Optional[List[int]] = None) -> None:
        self.failed_indices = list(failed_indices or [])
        super().__init__(message)


class GasEstimationError(BenchError):
    """Single-call gas estimate failed. Not fatal for a benchmark run."""

    pass
