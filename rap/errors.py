# rap/errors.py
"""
Error taxonomy for the federation pipeline.

Inbound signature errors are hard rejects. Transport and resolution
errors drive the delivery queue's retry state machine. Only key
misconfiguration is fatal, and only at startup.
"""

from typing import Optional


class RapError(Exception):
    """Base class for all rap errors."""


class KeyMaterialError(RapError):
    """No usable signing key is configured."""


class SignatureError(RapError):
    """Base class for HTTP signature failures."""


class MalformedSignature(SignatureError):
    """The Signature header (or a header it covers) could not be parsed."""


class SignatureMismatch(SignatureError):
    """The signature or the body digest does not match the request."""


class ClockSkew(SignatureError):
    """The signed Date header is outside the accepted window."""

    def __init__(self, skew: float, max_skew: float):
        self.skew = skew
        self.max_skew = max_skew
        super().__init__(f"Date is {skew:+.0f}s from now (max ±{max_skew:.0f}s)")


class ResolutionError(RapError):
    """
    A remote actor could not be resolved.

    permanent is True when retrying cannot help: the actor is gone,
    or its document is malformed or carries no key.
    """

    def __init__(self, actor_id: str, reason: str, permanent: bool = False):
        self.actor_id = actor_id
        self.reason = reason
        self.permanent = permanent
        super().__init__(f"Cannot resolve {actor_id}: {reason}")


class TransportError(RapError):
    """Base class for network collaborator failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class TransportTransient(TransportError):
    """Network error, timeout, 5xx or 429. Worth retrying."""


class TransportPermanent(TransportError):
    """4xx other than 429."""


class VerificationFailed(RapError):
    """An inbound message was rejected. Wraps the underlying cause."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class ApplicationError(RapError):
    """The storage collaborator rejected an inbound message. Retryable by the sender."""


class MalformedActivity(RapError):
    """A verified inbound body is not a JSON activity object."""
