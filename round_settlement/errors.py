"""Error taxonomy for the settlement service.

Retryable errors (``TransientReadError``, ``SubmissionFailure``) propagate out of
the executor so the job queue applies its backoff policy. ``AlreadyCompleted``
and ``NoEntries`` are not errors at all; see ``SettlementOutcome``.
"""
from __future__ import annotations


class SettlementServiceError(Exception):
    """Base class for every error raised by this service."""


class TransientReadError(SettlementServiceError):
    """Ledger RPC unreachable, timed out or returned an unusable result."""

    def __init__(self, message: str, *, round_id: int | None = None):
        super().__init__(message)
        self.round_id = round_id


class RoundNotFound(SettlementServiceError):
    def __init__(self, round_id: int):
        super().__init__(f"Round {round_id} not found on ledger")
        self.round_id = round_id


class InvalidCredential(SettlementServiceError):
    """Inbound notification carried a missing or wrong shared secret."""


class SubmissionFailure(SettlementServiceError):
    """Settlement transaction rejected, reverted unexpectedly or not confirmed."""

    def __init__(self, message: str, *, round_id: int | None = None, tx_hash: str | None = None):
        super().__init__(message)
        self.round_id = round_id
        self.tx_hash = tx_hash


class ExpectedRevert(SettlementServiceError):
    """Settlement call reverted with one of the known no-op reasons.

    ``reason_key`` is a key of ``EXPECTED_REVERT_REASONS``. The executor turns
    this into an outcome; it never reaches the retry path.
    """

    def __init__(self, reason_key: str, message: str, *, round_id: int | None = None):
        super().__init__(message)
        self.reason_key = reason_key
        self.round_id = round_id


class FatalInitError(SettlementServiceError):
    """Ground truth could not be established at startup; the process must exit."""


class QueueShutdown(SettlementServiceError):
    """Enqueue attempted after the queue stopped accepting work."""


__all__ = [
    "SettlementServiceError",
    "TransientReadError",
    "RoundNotFound",
    "InvalidCredential",
    "SubmissionFailure",
    "ExpectedRevert",
    "FatalInitError",
    "QueueShutdown",
]
