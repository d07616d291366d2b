# rap/resolver.py
"""
Peer resolver.

Maps a remote actor id to its inbox and public key, caching results for
a fixed time. Concurrent resolves of one id share a single lookup.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

from .actor import RemoteActor
from .errors import ResolutionError, TransportPermanent, TransportTransient
from .signatures import key_owner
from .store import Store
from .sync import KeyedLocks

logger = logging.getLogger(__name__)

# Fetches a JSON document by URL
FetchFn = Callable[[str], Any]


class _Lookup:
    """An outstanding lookup other callers can wait on."""

    def __init__(self):
        self.done = threading.Event()
        self.actor: Optional[RemoteActor] = None
        self.error: Optional[ResolutionError] = None


class PeerResolver:
    """
    Resolves and caches remote actors.

    Args:
        fetch_json: Network collaborator that GETs a JSON document
        ttl: Seconds a resolved actor stays valid
        store: Optional store to persist cache entries in
        clock: Time source
    """

    PREFIX = "actor:"
    SCHEMES = ("https", "http")

    def __init__(
        self,
        fetch_json: FetchFn,
        ttl: float = 3600.0,
        store: Optional[Store] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.fetch_json = fetch_json
        self.ttl = ttl
        self.store = store
        self.clock = clock
        self.lookups = 0
        self._cache: Dict[str, RemoteActor] = {}
        self._inflight: Dict[str, _Lookup] = {}
        # Guards the dicts and counter above; never held across store calls
        self._lock = threading.Lock()
        # Serializes cache and store updates for one actor id
        self._entries = KeyedLocks()

    def _cached(self, actor_id: str) -> Optional[RemoteActor]:
        """Fresh cache entry for actor_id, or None. Caller holds the entry lock."""
        with self._lock:
            actor = self._cache.get(actor_id)
        if actor is None and self.store is not None:
            data = self.store.get(self.PREFIX + actor_id)
            if data is not None:
                actor = RemoteActor.from_dict(data)
                with self._lock:
                    self._cache[actor_id] = actor

        if actor is None:
            return None
        if not actor.is_fresh(self.clock()):
            self._evict(actor_id)
            return None
        return actor

    def _evict(self, actor_id: str):
        """Caller holds the entry lock."""
        with self._lock:
            self._cache.pop(actor_id, None)
        if self.store is not None:
            self.store.delete(self.PREFIX + actor_id)

    def _remember(self, actor: RemoteActor):
        """Caller holds the entry lock."""
        with self._lock:
            self._cache[actor.id] = actor
        if self.store is not None:
            self.store.put(self.PREFIX + actor.id, actor.to_dict())

    def _lookup(self, actor_id: str) -> RemoteActor:
        """Fetch and parse the actor document."""
        logger.debug(f"Resolving {actor_id}")
        try:
            document = self.fetch_json(actor_id)
        except TransportPermanent as e:
            raise ResolutionError(actor_id, str(e), permanent=e.status in (None, 404, 410)) from e
        except TransportTransient as e:
            raise ResolutionError(actor_id, str(e)) from e
        except ValueError as e:
            raise ResolutionError(actor_id, str(e), permanent=True) from e
        except Exception as e:
            logger.error(f"Unexpected error fetching {actor_id}: {type(e).__name__}: {e}")
            raise ResolutionError(actor_id, f"{type(e).__name__}: {e}") from e
        return RemoteActor.from_document(actor_id, document, cached_until=self.clock() + self.ttl)

    def resolve(self, actor_id: str) -> RemoteActor:
        """
        Resolve an actor, from cache if fresh.

        Only http and https ids are looked up.

        Raises:
            ResolutionError: lookup failed; the cache entry is evicted
        """
        actor_id = key_owner(actor_id)
        if urlparse(actor_id).scheme.lower() not in self.SCHEMES:
            raise ResolutionError(actor_id, "actor id is not an http(s) URL", permanent=True)

        with self._entries.hold(actor_id):
            actor = self._cached(actor_id)
            if actor is not None:
                return actor
            with self._lock:
                lookup = self._inflight.get(actor_id)
                leader = lookup is None
                if leader:
                    lookup = _Lookup()
                    self._inflight[actor_id] = lookup
                    self.lookups += 1

        if not leader:
            lookup.done.wait()
            if lookup.error is not None:
                raise lookup.error
            return lookup.actor

        try:
            lookup.actor = self._lookup(actor_id)
        except ResolutionError as e:
            logger.warning(f"Resolution failed: {e}")
            lookup.error = e
            raise
        finally:
            try:
                with self._entries.hold(actor_id):
                    if lookup.actor is not None:
                        self._remember(lookup.actor)
                    else:
                        self._evict(actor_id)
            finally:
                with self._lock:
                    del self._inflight[actor_id]
                if lookup.actor is None and lookup.error is None:
                    lookup.error = ResolutionError(actor_id, "lookup aborted")
                lookup.done.set()

        return lookup.actor

    def resolve_key(self, key_id: str) -> RemoteActor:
        """
        Resolve the actor owning key_id and check it advertises that key.

        Raises:
            ResolutionError: lookup failed or the key is not the actor's
        """
        actor = self.resolve(key_owner(key_id))
        if actor.key_id != key_id:
            raise ResolutionError(actor.id, f"key {key_id} is not advertised by the actor", permanent=True)
        return actor

    def is_cached(self, actor_id: str) -> bool:
        """True if a fresh entry exists (no lookup is made)."""
        actor_id = key_owner(actor_id)
        with self._entries.hold(actor_id):
            return self._cached(actor_id) is not None

    def invalidate(self, actor_id: str):
        """Forget an actor so the next resolve fetches it again."""
        actor_id = key_owner(actor_id)
        with self._entries.hold(actor_id):
            self._evict(actor_id)
