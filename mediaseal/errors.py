"""
Error taxonomy.

Codec and crypto errors (MalformedHeader, UnsupportedAlgorithm,
ContentIdentifierMismatch, DecryptionFailed, InvalidInput) propagate to the
immediate caller. Pipeline errors (SourceUnavailable, InsufficientFunds,
UploadFailed, FetchFailed, RegistrationError) are recorded on the job by the
upload pipeline instead of crossing the queue boundary.
"""

from __future__ import annotations

from typing import Any


class MediaSealError(Exception):
    """Base class for all mediaseal errors."""


# --- codec / crypto ---------------------------------------------------------

class MalformedHeader(MediaSealError):
    """Container header bytes violate the format."""


class UnsupportedAlgorithm(MediaSealError):
    """Header declares an algorithm this build does not implement."""

    def __init__(self, algorithm: int) -> None:
        super().__init__(f"Unsupported encryption algorithm: {algorithm}")
        self.algorithm = algorithm


class ContentIdentifierMismatch(MediaSealError):
    """Unwrapped key is bound to a different content identifier."""


class DecryptionFailed(MediaSealError):
    """AEAD authentication failed (tampered ciphertext or wrong key)."""


class InvalidInput(MediaSealError, ValueError):
    """Malformed identifier or argument supplied by the caller."""


class AccessDenied(MediaSealError):
    """Key service refused to unwrap under the given policy."""


# --- pipeline / operational ---------------------------------------------------

class SourceUnavailable(MediaSealError):
    """Source bytes are missing, empty or unreadable."""


class InsufficientFunds(MediaSealError):
    """Storage account cannot pay for the upload, even after one deposit."""


class UploadFailed(MediaSealError):
    """Upload failed (non-provider error, reused dataset, or attempts exhausted)."""


class ProviderError(MediaSealError):
    """Provider-specific storage failure; retryable against another provider."""

    def __init__(self, message: str, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.provider_id = provider_id


class RegistrationError(MediaSealError):
    """On-chain registration call failed."""


class FetchFailed(MediaSealError):
    """Gateway fetch failed."""


# --- ambient ------------------------------------------------------------------

class RemoteCallError(MediaSealError):
    """Transport or RPC-level error talking to a remote collaborator."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class JobStateError(MediaSealError):
    """Invalid job transition or patch (programming error)."""


class ConfigError(MediaSealError):
    """Invalid configuration value."""


def describe(exc: BaseException) -> str:
    """Render an exception as the human-readable string stored on a job."""
    message = str(exc) or exc.__class__.__name__
    return f"{exc.__class__.__name__}: {message}"
