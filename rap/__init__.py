# rap - ActivityPub federation server core
#
# Signs and verifies federation requests, processes inboxes idempotently
# and delivers outbound activities at least once.
#
# Core concepts:
# - KeyManager: The local actor's signing key
# - Signature codec: HTTP Signatures over (request-target), host, date, digest
# - PeerResolver: Remote actor lookup with caching and coalescing
# - DeliveryQueue: Durable per-destination ordered outbox with retry/backoff
# - InboxProcessor: Verify, deduplicate, apply

from .actor import LocalActor, RemoteActor
from .config import Config, load_config
from .delivery import BackoffPolicy, DeliveryQueue, DeliveryState, OutboundMessage
from .errors import (
    ApplicationError,
    ClockSkew,
    KeyMaterialError,
    MalformedActivity,
    MalformedSignature,
    RapError,
    ResolutionError,
    SignatureError,
    SignatureMismatch,
    TransportError,
    TransportPermanent,
    TransportTransient,
    VerificationFailed,
)
from .inbox import InboundMessage, InboundRequest, InboxProcessor, InboxResult
from .keys import KeyManager
from .metrics import ServerMetrics
from .resolver import PeerResolver
from .signatures import SignatureHeader, SignedRequest, sign_request, verify_request
from .store import JsonFileStore, MemoryStore, RecentSet, Store
from .transport import HttpTransport, Outcome, Response

__all__ = [
    # Services
    "KeyManager",
    "PeerResolver",
    "DeliveryQueue",
    "InboxProcessor",
    "HttpTransport",
    "ServerMetrics",
    # Data
    "LocalActor",
    "RemoteActor",
    "OutboundMessage",
    "DeliveryState",
    "BackoffPolicy",
    "InboundRequest",
    "InboundMessage",
    "InboxResult",
    "SignatureHeader",
    "SignedRequest",
    "Response",
    "Outcome",
    "sign_request",
    "verify_request",
    # Storage
    "Store",
    "MemoryStore",
    "JsonFileStore",
    "RecentSet",
    # Config
    "Config",
    "load_config",
    # Errors
    "RapError",
    "KeyMaterialError",
    "SignatureError",
    "MalformedSignature",
    "SignatureMismatch",
    "ClockSkew",
    "ResolutionError",
    "TransportError",
    "TransportTransient",
    "TransportPermanent",
    "VerificationFailed",
    "ApplicationError",
    "MalformedActivity",
]

__version__ = "0.1.0"
