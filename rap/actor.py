# rap/actor.py
"""
ActivityPub actors.

LocalActor is the identity this server signs as and serves documents for.
RemoteActor is what the peer resolver learns about other servers' actors:
where to deliver, and which key verifies their signatures.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from .errors import ResolutionError

AP_CONTEXT = [
    "https://www.w3.org/ns/activitystreams",
    "https://w3id.org/security/v1",
]


def _is_http(url: str) -> bool:
    return urlparse(url).scheme.lower() in ("https", "http")


@dataclass
class LocalActor:
    """
    The local actor.

    Attributes:
        domain: Federation hostname (e.g. "ap.example.com")
        username: Unique username (e.g. "relay")
        display_name: Human-readable name
    """
    domain: str
    username: str
    display_name: Optional[str] = None

    @property
    def id(self) -> str:
        """ActivityPub actor ID (URL)."""
        return f"https://{self.domain}/users/{self.username}"

    @property
    def handle(self) -> str:
        """Fediverse handle."""
        return f"@{self.username}@{self.domain}"

    @property
    def inbox(self) -> str:
        return f"{self.id}/inbox"

    @property
    def outbox(self) -> str:
        return f"{self.id}/outbox"

    @property
    def shared_inbox(self) -> str:
        return f"https://{self.domain}/inbox"

    @property
    def key_id(self) -> str:
        """Key ID for HTTP Signatures."""
        return f"{self.id}#main-key"

    def to_activitypub(self, public_key_pem: str) -> Dict[str, Any]:
        """Return ActivityPub JSON-LD representation."""
        return {
            "@context": AP_CONTEXT,
            "type": "Service",
            "id": self.id,
            "preferredUsername": self.username,
            "name": self.display_name or self.username,
            "inbox": self.inbox,
            "outbox": self.outbox,
            "endpoints": {"sharedInbox": self.shared_inbox},
            "publicKey": {
                "id": self.key_id,
                "owner": self.id,
                "publicKeyPem": public_key_pem,
            },
        }

    def to_webfinger(self) -> Dict[str, Any]:
        """Return the WebFinger document for acct:username@domain."""
        return {
            "subject": f"acct:{self.username}@{self.domain}",
            "aliases": [self.id],
            "links": [
                {
                    "rel": "self",
                    "type": "application/activity+json",
                    "href": self.id,
                },
            ],
        }


@dataclass
class RemoteActor:
    """
    A resolved remote actor.

    Attributes:
        id: Actor URI
        inbox: Delivery endpoint
        key_id: ID of the actor's public key
        public_key_pem: PEM-encoded public key
        cached_until: Timestamp after which the entry must be re-resolved
        shared_inbox: Server-wide inbox, if advertised
    """
    id: str
    inbox: str
    key_id: str
    public_key_pem: str
    cached_until: float = 0.0
    shared_inbox: Optional[str] = None

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < self.cached_until

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage."""
        return {
            "id": self.id,
            "inbox": self.inbox,
            "key_id": self.key_id,
            "public_key_pem": self.public_key_pem,
            "cached_until": self.cached_until,
            "shared_inbox": self.shared_inbox,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteActor":
        """Deserialize from storage."""
        return cls(
            id=data["id"],
            inbox=data["inbox"],
            key_id=data["key_id"],
            public_key_pem=data["public_key_pem"],
            cached_until=data.get("cached_until", 0.0),
            shared_inbox=data.get("shared_inbox"),
        )

    @classmethod
    def from_document(cls, actor_id: str, document: Any, cached_until: float) -> "RemoteActor":
        """
        Build from a fetched actor document.

        Raises:
            ResolutionError (permanent): document is not an actor or has no key
        """
        if not isinstance(document, dict):
            raise ResolutionError(actor_id, "actor document is not a JSON object", permanent=True)

        doc_id = document.get("id")
        if doc_id != actor_id:
            raise ResolutionError(actor_id, f"document id {doc_id!r} does not match", permanent=True)

        inbox = document.get("inbox")
        if not isinstance(inbox, str) or not inbox:
            raise ResolutionError(actor_id, "actor has no inbox", permanent=True)
        if not _is_http(inbox):
            raise ResolutionError(actor_id, f"inbox {inbox!r} is not an http(s) URL", permanent=True)

        key = document.get("publicKey")
        if isinstance(key, list):
            key = key[0] if key else None
        if not isinstance(key, dict) or not key.get("publicKeyPem") or not key.get("id"):
            raise ResolutionError(actor_id, "actor has no public key", permanent=True)
        owner = key.get("owner")
        if owner is not None and owner != actor_id:
            raise ResolutionError(actor_id, f"key is owned by {owner}", permanent=True)

        endpoints = document.get("endpoints")
        shared_inbox = endpoints.get("sharedInbox") if isinstance(endpoints, dict) else None
        if not isinstance(shared_inbox, str) or not _is_http(shared_inbox):
            shared_inbox = None

        return cls(
            id=actor_id,
            inbox=inbox,
            key_id=key["id"],
            public_key_pem=key["publicKeyPem"],
            cached_until=cached_until,
            shared_inbox=shared_inbox,
        )
