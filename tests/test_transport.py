# tests/test_transport.py
"""Tests for the urllib transport against a local HTTP server."""

import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from rap.errors import TransportPermanent, TransportTransient
from rap.keys import KeyManager
from rap.signatures import SignedRequest, sign_request
from rap.transport import HttpTransport, Outcome, Response, classify

from conftest import REMOTE_ACTOR


class StubHandler(BaseHTTPRequestHandler):
    """
    Routes:
        /actor          - JSON document
        /status/<code>  - JSON error body with that status
        /text           - a body that is not JSON
        /slow           - sleeps before answering
        /garbage        - a reply that is not HTTP
        /inbox          - records POSTs and answers 202
    """

    requests = []

    def log_message(self, format, *args):
        pass

    def _reply(self, status, body=b"", content_type="application/activity+json"):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        self.requests.append(("GET", self.path, self.headers, b""))
        if self.path == "/actor":
            self._reply(200, json.dumps({"id": REMOTE_ACTOR, "type": "Person"}).encode())
        elif self.path.startswith("/status/"):
            self._reply(int(self.path.rsplit("/", 1)[1]), b'{"error": "nope"}')
        elif self.path == "/text":
            self._reply(200, b"<html>not json</html>", "text/html")
        elif self.path == "/slow":
            time.sleep(1)
            self._reply(200, b"{}")
        elif self.path == "/garbage":
            self.wfile.write(b"NOT HTTP\r\n\r\n")
            self.close_connection = True
        else:
            self._reply(404)

    def do_POST(self):
        body = self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.requests.append(("POST", self.path, self.headers, body))
        self._reply(202)


@pytest.fixture
def stub():
    StubHandler.requests = []
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), StubHandler)
    httpd.daemon_threads = True
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}"
    httpd.shutdown()
    httpd.server_close()


@pytest.fixture
def http():
    return HttpTransport(timeout=0.3)


def closed_port():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestClassify:
    """Test classify function."""

    @pytest.mark.parametrize("status", [200, 201, 202, 204, 299])
    def test_success(self, status):
        assert classify(status) is Outcome.SUCCESS

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504, 599])
    def test_transient(self, status):
        assert classify(status) is Outcome.TRANSIENT

    @pytest.mark.parametrize("status", [301, 400, 401, 403, 404, 410, 422])
    def test_permanent(self, status):
        assert classify(status) is Outcome.PERMANENT

    def test_response_outcome(self):
        assert Response(status=503).outcome is Outcome.TRANSIENT


class TestSend:
    """Test HttpTransport.send."""

    def test_posts_signed_request(self, stub, http, remote_keys):
        request = sign_request(remote_keys, "POST", f"{stub}/inbox", b'{"type": "Follow"}')
        response = http.send(request)

        assert response.status == 202
        assert response.outcome is Outcome.SUCCESS
        [(method, path, headers, body)] = StubHandler.requests
        assert (method, path, body) == ("POST", "/inbox", b'{"type": "Follow"}')
        assert headers["Signature"] == request.headers["Signature"]
        assert headers["User-Agent"].startswith("rap-server/")

    @pytest.mark.parametrize("status", [404, 410, 500, 503])
    def test_error_status_is_a_response(self, stub, http, status):
        response = http.send(SignedRequest(method="GET", url=f"{stub}/status/{status}", headers={}))
        assert response.status == status
        assert response.body == b'{"error": "nope"}'
        assert response.headers["Content-Type"] == "application/activity+json"

    def test_timeout_is_transient(self, stub, http):
        with pytest.raises(TransportTransient):
            http.send(SignedRequest(method="GET", url=f"{stub}/slow", headers={}))

    def test_malformed_reply_is_transient(self, stub, http):
        with pytest.raises(TransportTransient):
            http.send(SignedRequest(method="GET", url=f"{stub}/garbage", headers={}))

    def test_connection_refused_is_transient(self, http):
        with pytest.raises(TransportTransient):
            http.send(SignedRequest(method="GET", url=f"http://127.0.0.1:{closed_port()}/inbox", headers={}))

    @pytest.mark.parametrize("url", [
        "file:///etc/hostname",
        "data:application/json,{}",
        "ftp://remote.example/inbox",
    ])
    def test_other_schemes_refused(self, http, url):
        with pytest.raises(TransportPermanent) as exc_info:
            http.send(SignedRequest(method="POST", url=url, headers={}, body=b"{}"))
        assert exc_info.value.status is None


class TestFetchJson:
    """Test HttpTransport.fetch_json."""

    def test_document(self, stub, http):
        assert http.fetch_json(f"{stub}/actor") == {"id": REMOTE_ACTOR, "type": "Person"}
        [(_, _, headers, _)] = StubHandler.requests
        assert "application/activity+json" in headers["Accept"]
        assert "Signature" not in headers

    def test_signed_fetch(self, stub):
        keys = KeyManager.generate("https://local.example/users/relay#main-key")
        HttpTransport(timeout=1, keys=keys).fetch_json(f"{stub}/actor")
        [(_, _, headers, _)] = StubHandler.requests
        assert 'keyId="https://local.example/users/relay#main-key"' in headers["Signature"]

    @pytest.mark.parametrize("status", [404, 410, 403])
    def test_client_error_is_permanent(self, stub, http, status):
        with pytest.raises(TransportPermanent) as exc_info:
            http.fetch_json(f"{stub}/status/{status}")
        assert exc_info.value.status == status

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_error_is_transient(self, stub, http, status):
        with pytest.raises(TransportTransient) as exc_info:
            http.fetch_json(f"{stub}/status/{status}")
        assert exc_info.value.status == status

    def test_not_json(self, stub, http):
        with pytest.raises(ValueError):
            http.fetch_json(f"{stub}/text")

    def test_timeout_is_transient(self, stub, http):
        with pytest.raises(TransportTransient):
            http.fetch_json(f"{stub}/slow")

    @pytest.mark.parametrize("url", [
        "file:///etc/hostname",
        "data:application/json,{}",
    ])
    def test_other_schemes_refused(self, http, url):
        with pytest.raises(TransportPermanent):
            http.fetch_json(url)
