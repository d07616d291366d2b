# rap/inbox.py
"""
Inbox processing.

An inbound POST is verified, deduplicated and applied to local state:

1. Parse the Signature header; the signer's actor id is the sender.
2. Derive the dedup key from sender and body. A key seen within the
   retention window is acknowledged without being applied again.
3. Resolve the sender's key and verify the signature.
4. Check the body is an activity by the signer.
5. Apply it through the store, then record the dedup key.

A failed apply leaves the key unrecorded so the sender's retry is
processed normally.
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import (
    ApplicationError,
    MalformedActivity,
    ResolutionError,
    SignatureError,
    SignatureMismatch,
    VerificationFailed,
)
from .keys import KeyManager
from .resolver import PeerResolver
from .signatures import (
    DEFAULT_MAX_SKEW,
    SignatureHeader,
    key_owner,
    parse_signature_header,
    verify_request,
)
from .store import RecentSet, Store
from .sync import KeyedLocks

logger = logging.getLogger(__name__)

# Failures from one sender before it is reported as suspicious
FAILURE_WARN_THRESHOLD = 5
_MAX_TRACKED_SENDERS = 10_000


def dedup_key(sender: str, body: bytes) -> str:
    """Deterministic fingerprint of an inbound message."""
    hasher = hashlib.sha256()
    hasher.update(sender.encode("utf-8"))
    hasher.update(b"\n")
    hasher.update(body)
    return hasher.hexdigest()


@dataclass
class InboundRequest:
    """A raw inbound request as handed over by the HTTP layer."""
    method: str
    path: str
    headers: Dict[str, str]
    body: bytes
    received_at: Optional[float] = None


@dataclass
class InboundMessage:
    """A verified inbound message."""
    sender: str
    payload: bytes
    dedup_key: str
    received_at: float
    activity: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "dedup_key": self.dedup_key,
            "received_at": self.received_at,
            "activity": self.activity,
        }


@dataclass
class InboxResult:
    """Outcome of a successfully handled inbound message."""
    dedup_key: str
    sender: str
    duplicate: bool = False


class InboxProcessor:
    """
    Verifies, deduplicates and applies inbound messages.

    Args:
        keys: Key manager (used for signature verification)
        resolver: Peer resolver for sender keys
        store: Storage collaborator; apply() receives each new message
        recent: Set of processed dedup keys
        max_skew: Accepted clock skew for signed Date headers, in seconds
        clock: Time source
    """

    def __init__(
        self,
        keys: KeyManager,
        resolver: PeerResolver,
        store: Store,
        recent: RecentSet,
        max_skew: float = DEFAULT_MAX_SKEW,
        clock: Callable[[], float] = time.time,
    ):
        self.keys = keys
        self.resolver = resolver
        self.store = store
        self.recent = recent
        self.max_skew = max_skew
        self.clock = clock
        self._locks = KeyedLocks()
        self._failures: Dict[str, int] = {}
        self._failures_lock = threading.Lock()

    def handle(self, request: InboundRequest) -> InboxResult:
        """
        Process one inbound message.

        Raises:
            VerificationFailed: bad or unverifiable signature, or the
                activity's actor is not the signer
            MalformedActivity: body is not a JSON object
            ApplicationError: the store rejected the message
        """
        now = request.received_at if request.received_at is not None else self.clock()
        headers = {name.lower(): value for name, value in request.headers.items()}

        try:
            signature = parse_signature_header(headers.get("signature", ""))
        except SignatureError as e:
            self._reject(None, e)

        sender = key_owner(signature.key_id)
        key = dedup_key(sender, request.body)

        with self._locks.hold(key):
            if key in self.recent:
                logger.debug(f"Duplicate message {key[:12]} from {sender}, skipping")
                return InboxResult(dedup_key=key, sender=sender, duplicate=True)

            self._verify(request, headers, signature, sender, now)
            activity = self._admit(sender, request.body)

            message = InboundMessage(
                sender=sender,
                payload=request.body,
                dedup_key=key,
                received_at=now,
                activity=activity,
            )
            try:
                self.store.apply(message)
            except Exception as e:
                logger.error(f"Failed to apply message {key[:12]} from {sender}: {e}")
                raise ApplicationError(f"Could not apply message from {sender}: {e}") from e

            self.recent.add(key)

        with self._failures_lock:
            self._failures.pop(sender, None)
        logger.info(f"Accepted {activity.get('type', 'activity')} {key[:12]} from {sender}")
        return InboxResult(dedup_key=key, sender=sender)

    def _verify(
        self,
        request: InboundRequest,
        headers: Dict[str, str],
        signature: SignatureHeader,
        sender: str,
        now: float,
    ):
        was_cached = self.resolver.is_cached(sender)
        try:
            actor = self.resolver.resolve_key(signature.key_id)
            self._check(request, headers, signature, actor.public_key_pem, now)
            return
        except ResolutionError as e:
            self._reject(sender, e)
        except SignatureMismatch as e:
            if not was_cached:
                self._reject(sender, e)
            mismatch = e
        except SignatureError as e:
            self._reject(sender, e)

        # The cached key may be stale after a key rotation; fetch it once more
        logger.debug(f"Signature from {sender} failed with cached key ({mismatch}), refreshing")
        self.resolver.invalidate(sender)
        try:
            actor = self.resolver.resolve_key(signature.key_id)
            self._check(request, headers, signature, actor.public_key_pem, now)
        except (ResolutionError, SignatureError) as e:
            self._reject(sender, e)

    def _check(
        self,
        request: InboundRequest,
        headers: Dict[str, str],
        signature: SignatureHeader,
        public_key_pem: str,
        now: float,
    ):
        verify_request(
            self.keys,
            request.method,
            request.path,
            headers,
            request.body,
            public_key_pem,
            now=now,
            max_skew=self.max_skew,
            signature=signature,
        )

    def _admit(self, sender: str, body: bytes) -> Dict[str, Any]:
        """Basic admission: a JSON object whose actor is the signer."""
        try:
            activity = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedActivity(f"Body is not JSON: {e}") from e
        if not isinstance(activity, dict):
            raise MalformedActivity("Body is not a JSON object")

        actor = activity.get("actor")
        if isinstance(actor, dict):
            actor = actor.get("id")
        if actor != sender:
            self._reject(sender, VerificationFailed(f"activity actor {actor!r} is not the signer"))
        return activity

    def _reject(self, sender: Optional[str], cause: Exception):
        """Log a verification failure and raise VerificationFailed."""
        if sender is not None:
            with self._failures_lock:
                if len(self._failures) >= _MAX_TRACKED_SENDERS:
                    self._failures.clear()
                count = self._failures.get(sender, 0) + 1
                self._failures[sender] = count
            if count >= FAILURE_WARN_THRESHOLD:
                logger.warning(
                    f"{count} consecutive verification failures from {sender} "
                    f"(possible attack or misconfiguration): {cause}"
                )
            else:
                logger.info(f"Rejected message from {sender}: {cause}")
        else:
            logger.info(f"Rejected unsigned or malformed message: {cause}")
        raise VerificationFailed(f"Verification failed: {cause}", cause) from cause

    def failure_count(self, sender: str) -> int:
        with self._failures_lock:
            return self._failures.get(sender, 0)
