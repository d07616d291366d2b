# rap/delivery.py
"""
Outbound delivery queue.

Each OutboundMessage moves through a small state machine:

    pending --attempt--+--> delivered
                       +--> pending (backed off)
                       +--> dead

Messages to one destination are attempted strictly in enqueue order:
only the head of a destination's queue is ever attempted, and never by
two workers at once. Different destinations proceed in parallel.

Every state change is written to the store, so a restarted queue picks
up where it left off. Store writes happen outside the registry lock.
While an attempt is in flight only the worker draining that destination
writes the message.
"""

import base64
import json
import logging
import random
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .errors import ResolutionError, TransportPermanent, TransportTransient
from .keys import KeyManager
from .resolver import PeerResolver
from .signatures import sign_request
from .store import MemoryStore, Store
from .sync import KeyedLocks
from .transport import HttpTransport, Outcome, classify

logger = logging.getLogger(__name__)

# Statuses that mean the destination is gone for good
GONE_STATUSES = (410,)


class DeliveryState(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    DEAD = "dead"


@dataclass
class BackoffPolicy:
    """
    Retry timing.

    The delay after the n-th failed attempt is base_delay * 2^(n-1),
    capped at max_delay, then scaled by a random factor in
    [1 - jitter, 1 + jitter] (and capped again).
    """
    base_delay: float = 30.0
    max_delay: float = 6 * 60 * 60.0
    max_attempts: int = 10
    jitter: float = 0.1

    def delay(self, attempts: int, rng: random.Random = None) -> float:
        exponent = max(0, attempts - 1)
        delay = min(self.max_delay, self.base_delay * (2 ** exponent))
        if self.jitter:
            rng = rng or random
            delay *= 1 + rng.uniform(-self.jitter, self.jitter)
        return max(0.0, min(self.max_delay, delay))


@dataclass
class OutboundMessage:
    """
    A message awaiting delivery to one remote actor.

    Attributes:
        message_id: Unique identifier
        destination: Actor id of the recipient
        payload: Request body
        created_at: Enqueue time
        seq: Enqueue order, used to keep per-destination ordering
        attempts: Number of attempts made so far
        next_attempt_at: Earliest time of the next attempt
        state: pending, delivered or dead
        last_error: Description of the most recent failure
        last_status: HTTP status of the most recent attempt, if any
    """
    message_id: str
    destination: str
    payload: bytes
    created_at: float
    seq: int
    attempts: int = 0
    next_attempt_at: float = 0.0
    state: DeliveryState = DeliveryState.PENDING
    last_error: Optional[str] = None
    last_status: Optional[int] = None
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "destination": self.destination,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "created_at": self.created_at,
            "seq": self.seq,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "state": self.state.value,
            "last_error": self.last_error,
            "last_status": self.last_status,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutboundMessage":
        return cls(
            message_id=data["message_id"],
            destination=data["destination"],
            payload=base64.b64decode(data["payload"]),
            created_at=data["created_at"],
            seq=data["seq"],
            attempts=data.get("attempts", 0),
            next_attempt_at=data.get("next_attempt_at", 0.0),
            state=DeliveryState(data.get("state", "pending")),
            last_error=data.get("last_error"),
            last_status=data.get("last_status"),
            finished_at=data.get("finished_at"),
        )


class DeliveryQueue:
    """
    Durable, per-destination ordered delivery queue.

    Usage:
        queue = DeliveryQueue(keys, resolver, transport, store)
        queue.enqueue("https://remote.example/users/bob", activity)
        queue.start()   # background worker
        ...
        queue.stop()

    Args:
        keys: Local signing keys
        resolver: Peer resolver for destination inboxes
        transport: Network collaborator with send(SignedRequest)
        store: Where queue state is persisted
        policy: Retry timing and attempt limit
        workers: Destinations attempted in parallel
        clock: Time source
        prefer_shared_inbox: Deliver to the actor's shared inbox if it has one
    """

    PREFIX = "outbox:"

    def __init__(
        self,
        keys: KeyManager,
        resolver: PeerResolver,
        transport: HttpTransport,
        store: Optional[Store] = None,
        policy: Optional[BackoffPolicy] = None,
        workers: int = 4,
        clock: Callable[[], float] = time.time,
        prefer_shared_inbox: bool = False,
        rng: Optional[random.Random] = None,
    ):
        self.keys = keys
        self.resolver = resolver
        self.transport = transport
        self.store = store if store is not None else MemoryStore()
        self.policy = policy or BackoffPolicy()
        self.clock = clock
        self.prefer_shared_inbox = prefer_shared_inbox
        self.rng = rng or random.Random()

        # Guards the registries below; never held across network or store calls
        self._lock = threading.Lock()
        self._queues: Dict[str, Deque[str]] = {}
        self._messages: Dict[str, OutboundMessage] = {}
        self._dead: Dict[str, OutboundMessage] = {}
        self._in_flight: Set[str] = set()
        self._cancel_requested: Set[str] = set()
        self._next_seq = 0
        self._delivered = 0

        # Held by whichever worker is draining a destination
        self._draining = KeyedLocks()
        # Keeps enqueue order per destination while persisting
        self._enqueueing = KeyedLocks()

        self.workers = max(1, workers)
        self._pool = self._new_pool()
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self._load()

    def _load(self):
        """Resume queue state from the store."""
        entries = [OutboundMessage.from_dict(v) for v in self.store.scan(self.PREFIX).values()]
        entries.sort(key=lambda m: m.seq)
        for message in entries:
            self._next_seq = max(self._next_seq, message.seq + 1)
            if message.state is DeliveryState.PENDING:
                self._messages[message.message_id] = message
                self._queues.setdefault(message.destination, deque()).append(message.message_id)
            elif message.state is DeliveryState.DEAD:
                self._dead[message.message_id] = message
        if self._messages:
            logger.info(f"Resumed {len(self._messages)} pending deliveries")

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="rap-delivery")

    def _persist(self, message: OutboundMessage):
        self.store.put(self.PREFIX + message.message_id, message.to_dict())

    def _unlink(self, message: OutboundMessage):
        """Remove a message from the pending registries. Caller holds the lock."""
        self._messages.pop(message.message_id, None)
        self._cancel_requested.discard(message.message_id)
        queue = self._queues.get(message.destination)
        if queue is not None:
            try:
                queue.remove(message.message_id)
            except ValueError:
                pass
            if not queue:
                del self._queues[message.destination]

    # -- public API ---------------------------------------------------------

    def enqueue(self, destination: str, payload: bytes | Dict[str, Any]) -> OutboundMessage:
        """
        Queue a payload for delivery to a remote actor.

        Dict payloads are serialized as JSON.
        """
        if isinstance(payload, dict):
            payload = json.dumps(payload).encode("utf-8")
        now = self.clock()
        with self._enqueueing.hold(destination):
            with self._lock:
                seq = self._next_seq
                self._next_seq += 1
            message = OutboundMessage(
                message_id=str(uuid.uuid4()),
                destination=destination,
                payload=payload,
                created_at=now,
                seq=seq,
                next_attempt_at=now,
            )
            self._persist(message)
            with self._lock:
                self._messages[message.message_id] = message
                self._queues.setdefault(destination, deque()).append(message.message_id)
        logger.debug(f"Queued {message.message_id} for {destination}")
        self._wakeup.set()
        return message

    def cancel(self, message_id: str) -> bool:
        """
        Cancel a pending message.

        A message being attempted right now is cancelled once the attempt
        finishes (if it succeeds it stays delivered).

        Returns:
            False if the message is unknown or already terminal
        """
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            if message_id in self._in_flight:
                self._cancel_requested.add(message_id)
                return True
            self._unlink(message)
        self.store.delete(self.PREFIX + message_id)
        logger.info(f"Cancelled delivery {message_id} to {message.destination}")
        return True

    def get(self, message_id: str) -> Optional[OutboundMessage]:
        """Pending or dead message by id."""
        with self._lock:
            return self._messages.get(message_id) or self._dead.get(message_id)

    def pending(self, destination: Optional[str] = None) -> List[OutboundMessage]:
        """Pending messages in enqueue order."""
        with self._lock:
            messages = [
                m for m in self._messages.values()
                if destination is None or m.destination == destination
            ]
        return sorted(messages, key=lambda m: m.seq)

    def dead_letters(self) -> List[OutboundMessage]:
        """Messages that will not be attempted again."""
        with self._lock:
            return sorted(self._dead.values(), key=lambda m: m.seq)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "pending": len(self._messages),
                "in_flight": len(self._in_flight),
                "delivered": self._delivered,
                "dead": len(self._dead),
                "destinations": len(self._queues),
            }

    def next_due(self) -> Optional[float]:
        """Earliest next_attempt_at among destination heads."""
        with self._lock:
            heads = [self._messages[q[0]].next_attempt_at for q in self._queues.values() if q]
        return min(heads) if heads else None

    # -- attempts -----------------------------------------------------------

    def _due_destinations(self, now: float) -> List[str]:
        with self._lock:
            return [
                destination for destination, queue in self._queues.items()
                if queue and self._messages[queue[0]].next_attempt_at <= now
            ]

    def run_pending(self) -> int:
        """
        Attempt everything that is due, one worker per destination.

        Blocks until the pass is complete.

        Returns:
            Number of attempts made
        """
        destinations = self._due_destinations(self.clock())
        if not destinations:
            return 0
        futures = [self._pool.submit(self._drain, d) for d in destinations]
        wait(futures)
        return sum(f.result() for f in futures)

    def _drain(self, destination: str) -> int:
        """Attempt due messages for one destination, head first."""
        if not self._draining.try_acquire(destination):
            return 0
        attempts = 0
        try:
            while True:
                with self._lock:
                    queue = self._queues.get(destination)
                    if not queue:
                        break
                    message = self._messages[queue[0]]
                    if message.next_attempt_at > self.clock():
                        break
                    self._in_flight.add(message.message_id)

                try:
                    self._attempt(message)
                except Exception as e:
                    logger.exception(f"Unexpected error delivering {message.message_id}")
                    self._record_failure(message, self.clock(), f"internal error: {e}")
                finally:
                    with self._lock:
                        self._in_flight.discard(message.message_id)
                attempts += 1
                self._apply_cancellation(message)

                if message.state is DeliveryState.PENDING:
                    # Backing off: later messages must wait behind it
                    break
        finally:
            self._draining.release(destination)
        return attempts

    def _attempt(self, message: OutboundMessage):
        """One delivery attempt: resolve, sign, send, record the outcome."""
        now = self.clock()
        try:
            actor = self.resolver.resolve(message.destination)
            inbox = actor.shared_inbox if self.prefer_shared_inbox and actor.shared_inbox else actor.inbox
            request = sign_request(self.keys, "POST", inbox, message.payload, now=now)
            response = self.transport.send(request)
        except ResolutionError as e:
            self._record_failure(message, now, str(e), permanent=e.permanent)
            return
        except TransportPermanent as e:
            self._record_failure(message, now, str(e), status=e.status, permanent=True)
            return
        except TransportTransient as e:
            self._record_failure(message, now, str(e), status=e.status)
            return

        outcome = classify(response.status)
        if outcome is Outcome.SUCCESS:
            self._record_success(message, now, response.status)
        elif outcome is Outcome.TRANSIENT:
            self._record_failure(message, now, f"HTTP {response.status}", status=response.status)
        else:
            self._record_failure(
                message,
                now,
                f"HTTP {response.status}",
                status=response.status,
                permanent=response.status in GONE_STATUSES,
            )

    def _record_success(self, message: OutboundMessage, now: float, status: int):
        message.attempts += 1
        message.last_status = status
        message.state = DeliveryState.DELIVERED
        message.finished_at = now
        self.store.delete(self.PREFIX + message.message_id)
        with self._lock:
            self._unlink(message)
            self._delivered += 1
        logger.info(
            f"Delivered {message.message_id} to {message.destination} "
            f"after {message.attempts} attempt(s)"
        )

    def _record_failure(
        self,
        message: OutboundMessage,
        now: float,
        error: str,
        status: Optional[int] = None,
        permanent: bool = False,
    ):
        message.attempts += 1
        message.last_error = error
        message.last_status = status

        if permanent or message.attempts >= self.policy.max_attempts:
            message.state = DeliveryState.DEAD
            message.finished_at = now
            self._persist(message)
            with self._lock:
                self._unlink(message)
                self._dead[message.message_id] = message
            logger.warning(
                f"Dead-lettered {message.message_id} to {message.destination} "
                f"after {message.attempts} attempt(s): {error}"
            )
            return

        delay = self.policy.delay(message.attempts, self.rng)
        message.next_attempt_at = max(message.next_attempt_at, now + delay)
        self._persist(message)
        logger.info(
            f"Delivery {message.message_id} to {message.destination} failed "
            f"(attempt {message.attempts}): {error}; retrying in {delay:.1f}s"
        )

    def _apply_cancellation(self, message: OutboundMessage):
        """Honour a cancel() that arrived while the message was in flight."""
        with self._lock:
            if message.message_id not in self._cancel_requested:
                return
            self._cancel_requested.discard(message.message_id)
            if message.state is not DeliveryState.PENDING:
                return
            self._unlink(message)
        self.store.delete(self.PREFIX + message.message_id)
        logger.info(f"Cancelled delivery {message.message_id} after in-flight attempt")

    # -- background worker --------------------------------------------------

    def _run(self, poll_interval: float):
        while not self._stopping.is_set():
            self._wakeup.clear()
            try:
                self.run_pending()
            except Exception:
                logger.exception("Delivery pass failed")

            timeout = poll_interval
            next_due = self.next_due()
            if next_due is not None:
                timeout = min(poll_interval, max(0.0, next_due - self.clock()))
            self._wakeup.wait(timeout)

    def start(self, poll_interval: float = 5.0) -> threading.Thread:
        """Run delivery passes on a background thread."""
        if self._worker is not None and self._worker.is_alive():
            return self._worker
        self._stopping.clear()
        self._worker = threading.Thread(target=self._run, args=(poll_interval,), name="rap-delivery-worker")
        self._worker.daemon = True
        self._worker.start()
        logger.info("Delivery worker started")
        return self._worker

    def stop(self, timeout: float = 10.0):
        """Stop the background worker; in-flight attempts finish first."""
        self._stopping.set()
        self._wakeup.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None
        # A fresh pool lets start() or run_pending() be used again
        pool, self._pool = self._pool, self._new_pool()
        pool.shutdown(wait=True)
        logger.info("Delivery worker stopped")
