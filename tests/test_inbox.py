# tests/test_inbox.py
"""Tests for inbox processing."""

import json
import logging
import threading

import pytest

from rap.errors import (
    ApplicationError,
    ClockSkew,
    MalformedActivity,
    MalformedSignature,
    ResolutionError,
    SignatureMismatch,
    VerificationFailed,
)
from rap.inbox import InboundRequest, InboxProcessor, dedup_key
from rap.keys import KeyManager
from rap.resolver import PeerResolver
from rap.signatures import sign_request
from rap.store import MemoryStore, RecentSet
from rap.transport import HttpTransport

from conftest import LOCAL_ACTOR, REMOTE_ACTOR, actor_document

LOCAL_INBOX = f"{LOCAL_ACTOR}/inbox"


class RecordingStore(MemoryStore):
    """Counts applied messages; can be told to fail."""

    def __init__(self):
        super().__init__()
        self.applied = []
        self.fail = False
        self._apply_lock = threading.Lock()

    def apply(self, message):
        if self.fail:
            raise IOError("disk full")
        with self._apply_lock:
            self.applied.append(message)
        super().apply(message)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def resolver(transport, clock, remote_keys):
    transport.documents[REMOTE_ACTOR] = actor_document(REMOTE_ACTOR, remote_keys.public_key_pem)
    return PeerResolver(transport.fetch_json, clock=clock)


@pytest.fixture
def processor(local_keys, resolver, store, clock):
    recent = RecentSet(retention=3600, clock=clock)
    return InboxProcessor(local_keys, resolver, store, recent, max_skew=12 * 3600, clock=clock)


def make_activity(actor=REMOTE_ACTOR, **fields):
    activity = {"id": f"{actor}/statuses/1/activity", "type": "Create", "actor": actor}
    activity.update(fields)
    return activity


def signed_request(keys, body, now, path="/users/relay/inbox"):
    if isinstance(body, dict):
        body = json.dumps(body).encode()
    signed = sign_request(keys, "POST", f"https://local.example{path}", body, now=now)
    return InboundRequest(method="POST", path=path, headers=signed.headers, body=body)


class TestInboxProcessor:
    """Test InboxProcessor class."""

    def test_accepts_signed_activity(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock())
        result = processor.handle(request)

        assert not result.duplicate
        assert result.sender == REMOTE_ACTOR
        assert result.dedup_key == dedup_key(REMOTE_ACTOR, request.body)
        [message] = store.applied
        assert message.activity["type"] == "Create"
        assert store.get(f"inbox:{result.dedup_key}")["sender"] == REMOTE_ACTOR

    def test_duplicate_applied_once(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock())
        processor.handle(request)
        result = processor.handle(request)

        assert result.duplicate
        assert len(store.applied) == 1

    def test_concurrent_duplicates_applied_once(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock())
        results = []

        def worker():
            results.append(processor.handle(request))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(store.applied) == 1
        assert sum(1 for r in results if not r.duplicate) == 1
        assert len(results) == 8

    def test_reapplied_after_retention(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock())
        processor.handle(request)
        clock.advance(3601)
        assert not processor.handle(request).duplicate
        assert len(store.applied) == 2

    def test_different_bodies_are_distinct(self, processor, store, remote_keys, clock):
        processor.handle(signed_request(remote_keys, make_activity(type="Like"), clock()))
        processor.handle(signed_request(remote_keys, make_activity(type="Announce"), clock()))
        assert len(store.applied) == 2

    def test_shared_inbox_path(self, processor, store, remote_keys, clock):
        processor.handle(signed_request(remote_keys, make_activity(), clock(), path="/inbox"))
        assert len(store.applied) == 1

    def test_missing_signature(self, processor, store):
        request = InboundRequest(method="POST", path="/inbox", headers={}, body=b"{}")
        with pytest.raises(VerificationFailed) as exc_info:
            processor.handle(request)
        assert isinstance(exc_info.value.cause, MalformedSignature)
        assert store.applied == []

    def test_clock_skew(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock() - 20 * 3600)
        with pytest.raises(VerificationFailed) as exc_info:
            processor.handle(request)
        assert isinstance(exc_info.value.cause, ClockSkew)
        assert store.applied == []

    def test_tampered_body(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock())
        request.body = json.dumps(make_activity(type="Delete")).encode()
        with pytest.raises(VerificationFailed) as exc_info:
            processor.handle(request)
        assert isinstance(exc_info.value.cause, SignatureMismatch)
        assert store.applied == []

    def test_rejected_message_is_not_remembered(self, processor, store, remote_keys, clock):
        good = signed_request(remote_keys, make_activity(), clock())
        forged = signed_request(remote_keys, make_activity(), clock())
        forged.headers = dict(forged.headers, Date="Mon, 04 Sep 2023 20:49:38 GMT")
        with pytest.raises(VerificationFailed):
            processor.handle(forged)
        assert not processor.handle(good).duplicate

    def test_unknown_sender(self, processor, local_keys, clock):
        request = signed_request(local_keys, make_activity(actor=LOCAL_ACTOR), clock())
        with pytest.raises(VerificationFailed) as exc_info:
            processor.handle(request)
        assert isinstance(exc_info.value.cause, ResolutionError)

    def test_signed_by_wrong_key(self, processor, transport, clock):
        impostor = KeyManager.generate(f"{REMOTE_ACTOR}#main-key")
        request = signed_request(impostor, make_activity(), clock())
        with pytest.raises(VerificationFailed) as exc_info:
            processor.handle(request)
        assert isinstance(exc_info.value.cause, SignatureMismatch)
        # Nothing was cached, so there is no second fetch
        assert transport.fetches == [REMOTE_ACTOR]

    def test_actor_must_be_signer(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(actor="https://elsewhere.example/users/eve"), clock())
        with pytest.raises(VerificationFailed):
            processor.handle(request)
        assert store.applied == []

    def test_embedded_actor_object(self, processor, store, remote_keys, clock):
        activity = make_activity(actor={"id": REMOTE_ACTOR, "type": "Person"})
        processor.handle(signed_request(remote_keys, activity, clock()))
        assert len(store.applied) == 1

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b"\xff\xfe"])
    def test_malformed_activity(self, processor, store, remote_keys, clock, body):
        with pytest.raises(MalformedActivity):
            processor.handle(signed_request(remote_keys, body, clock()))
        assert store.applied == []

    def test_store_failure_leaves_message_retryable(self, processor, store, remote_keys, clock):
        request = signed_request(remote_keys, make_activity(), clock())
        store.fail = True
        with pytest.raises(ApplicationError):
            processor.handle(request)

        store.fail = False
        result = processor.handle(request)
        assert not result.duplicate
        assert len(store.applied) == 1

    def test_key_rotation(self, processor, transport, store, remote_keys, clock):
        processor.handle(signed_request(remote_keys, make_activity(type="Follow"), clock()))
        assert transport.fetches == [REMOTE_ACTOR]

        rotated = KeyManager.generate(f"{REMOTE_ACTOR}#main-key")
        transport.documents[REMOTE_ACTOR] = actor_document(REMOTE_ACTOR, rotated.public_key_pem)
        processor.handle(signed_request(rotated, make_activity(type="Like"), clock()))

        assert transport.fetches == [REMOTE_ACTOR, REMOTE_ACTOR]
        assert len(store.applied) == 2

    def test_key_rotation_refetch_still_fails(self, processor, transport, remote_keys, clock):
        processor.handle(signed_request(remote_keys, make_activity(type="Follow"), clock()))
        impostor = KeyManager.generate(f"{REMOTE_ACTOR}#main-key")
        with pytest.raises(VerificationFailed):
            processor.handle(signed_request(impostor, make_activity(type="Like"), clock()))
        assert transport.fetches == [REMOTE_ACTOR, REMOTE_ACTOR]

    def test_repeated_failures_are_reported(self, processor, remote_keys, clock, caplog):
        request = signed_request(remote_keys, make_activity(), clock() - 20 * 3600)
        with caplog.at_level(logging.WARNING, logger="rap.inbox"):
            for _ in range(5):
                with pytest.raises(VerificationFailed):
                    processor.handle(request)
        assert processor.failure_count(REMOTE_ACTOR) == 5
        assert "possible attack or misconfiguration" in caplog.text

    def test_success_resets_failure_count(self, processor, remote_keys, clock):
        with pytest.raises(VerificationFailed):
            processor.handle(signed_request(remote_keys, make_activity(), clock() - 20 * 3600))
        assert processor.failure_count(REMOTE_ACTOR) == 1
        processor.handle(signed_request(remote_keys, make_activity(), clock()))
        assert processor.failure_count(REMOTE_ACTOR) == 0


class TestKeyIdSchemes:
    """Key ids that are not http(s) URLs are rejected without a fetch."""

    @pytest.fixture
    def processor(self, local_keys, store, clock):
        resolver = PeerResolver(HttpTransport(timeout=2).fetch_json, clock=clock)
        recent = RecentSet(retention=3600, clock=clock)
        return InboxProcessor(local_keys, resolver, store, recent, max_skew=12 * 3600, clock=clock)

    @pytest.mark.parametrize("key_id", [
        "data:application/json,{}#main-key",
        "file:///etc/hostname#main-key",
    ])
    def test_rejected(self, processor, store, clock, key_id):
        keys = KeyManager.generate(key_id)
        request = signed_request(keys, make_activity(actor=key_id.split("#")[0]), clock())
        with pytest.raises(VerificationFailed) as exc_info:
            processor.handle(request)
        assert isinstance(exc_info.value.cause, ResolutionError)
        assert exc_info.value.cause.permanent
        assert processor.resolver.lookups == 0
        assert store.applied == []
