# tests/conftest.py
"""Shared fixtures: keys, a controllable clock and an in-memory network."""

import json
import tempfile
import threading
from pathlib import Path

import pytest

from rap.errors import TransportPermanent
from rap.keys import KeyManager
from rap.transport import Response

LOCAL_ACTOR = "https://local.example/users/relay"
REMOTE_ACTOR = "https://remote.example/users/bob"

DATA_DIR = Path(__file__).parent / "data"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float):
        with self._lock:
            self.now += seconds


class FakeTransport:
    """
    Network stand-in.

    documents maps URL -> JSON served by fetch_json.
    responses maps inbox URL -> list of statuses (or exceptions) returned
    by successive send() calls; once exhausted, 202 is returned.
    """

    def __init__(self):
        self.documents = {}
        self.responses = {}
        self.sent = []
        self.fetches = []
        self.on_send = None
        self._lock = threading.Lock()

    def fetch_json(self, url):
        with self._lock:
            self.fetches.append(url)
            document = self.documents.get(url)
        if document is None:
            raise TransportPermanent(f"GET {url} returned 404", 404)
        if isinstance(document, Exception):
            raise document
        return document

    def send(self, request):
        with self._lock:
            self.sent.append(request)
            queued = self.responses.get(request.url)
            result = queued.pop(0) if queued else 202
        if self.on_send is not None:
            self.on_send(request)
        if isinstance(result, Exception):
            raise result
        return Response(status=result)

    def sent_to(self, url):
        with self._lock:
            return [r for r in self.sent if r.url == url]


def actor_document(actor_id, public_key_pem, key_id=None, shared_inbox=None):
    document = {
        "@context": ["https://www.w3.org/ns/activitystreams", "https://w3id.org/security/v1"],
        "id": actor_id,
        "type": "Person",
        "inbox": f"{actor_id}/inbox",
        "publicKey": {
            "id": key_id or f"{actor_id}#main-key",
            "owner": actor_id,
            "publicKeyPem": public_key_pem,
        },
    }
    if shared_inbox:
        document["endpoints"] = {"sharedInbox": shared_inbox}
    return document


@pytest.fixture(scope="session")
def local_keys():
    return KeyManager.generate(f"{LOCAL_ACTOR}#main-key")


@pytest.fixture(scope="session")
def remote_keys():
    return KeyManager.generate(f"{REMOTE_ACTOR}#main-key")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def temp_dir():
    """Create temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="session")
def signature_vectors():
    with open(DATA_DIR / "signature_vectors.json") as f:
        return json.load(f)
