# rap/server.py
"""
HTTP server for rap.

Wires the federation services together and exposes them over HTTP.

Endpoints:
    GET  /.well-known/webfinger?resource=acct:user@domain
    GET  /users/:username          - Actor document
    POST /users/:username/inbox    - Inbox
    POST /inbox                    - Shared inbox
    GET  /health                   - Liveness and queue stats
    GET  /metrics                  - Prometheus metrics

Every request is logged at INFO with its status and elapsed time.
"""

import json
import logging
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from .actor import LocalActor
from .config import Config, load_config
from .delivery import DeliveryQueue, OutboundMessage
from .errors import ApplicationError, KeyMaterialError, MalformedActivity, VerificationFailed
from .inbox import InboundRequest, InboxProcessor
from .keys import KeyManager
from .metrics import ServerMetrics
from .resolver import PeerResolver
from .signatures import ACTIVITY_CONTENT_TYPE
from .store import JsonFileStore, MemoryStore, RecentSet, Store
from .transport import HttpTransport

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024


def _route(path: str, username: str) -> str:
    """Metrics label for a request path, so unknown paths share one series."""
    if path in ("/.well-known/webfinger", "/inbox", "/health", "/metrics"):
        return path
    if path == f"/users/{username}":
        return "/users/{username}"
    if path == f"/users/{username}/inbox":
        return "/users/{username}/inbox"
    return "other"


class FederationServer:
    """
    Owns the federation services for one local actor.

    Usage:
        server = FederationServer(load_config("config.yaml"))
        server.publish(activity, ["https://remote.example/users/bob"])
        server.start()  # Blocking
    """

    def __init__(
        self,
        config: Config,
        keys: Optional[KeyManager] = None,
        transport: Optional[HttpTransport] = None,
        store: Optional[Store] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.actor = LocalActor(config.domain, config.username, config.display_name)

        if keys is None:
            load = KeyManager.ensure if config.generate_key else KeyManager.load
            keys = load(config.key_path, self.actor.key_id)
        self.keys = keys

        if store is None:
            store = JsonFileStore(config.state_dir) if config.durable else MemoryStore()
        self.store = store
        durable_store = store if config.durable else None

        self.transport = transport or HttpTransport(
            timeout=config.delivery.request_timeout,
            keys=keys if config.resolver.signed_fetch else None,
        )
        self.resolver = PeerResolver(
            self.transport.fetch_json,
            ttl=config.resolver.cache_ttl,
            store=durable_store,
            clock=clock,
        )
        self.recent = RecentSet(
            retention=config.inbox.dedup_retention,
            capacity=config.inbox.dedup_capacity,
            store=durable_store,
            clock=clock,
        )
        self.inbox = InboxProcessor(
            keys,
            self.resolver,
            store,
            self.recent,
            max_skew=config.inbox.clock_skew,
            clock=clock,
        )
        self.queue = DeliveryQueue(
            keys,
            self.resolver,
            self.transport,
            store=store,
            policy=config.delivery.backoff(),
            workers=config.delivery.workers,
            clock=clock,
            prefer_shared_inbox=config.delivery.prefer_shared_inbox,
        )
        self.metrics = ServerMetrics(self.queue, self.resolver)
        self._httpd: Optional[ThreadingHTTPServer] = None

    def publish(self, activity: Dict[str, Any], recipients: List[str]) -> List[OutboundMessage]:
        """
        Queue an activity for delivery to each recipient actor.

        The activity's actor defaults to the local actor. The caller's
        dict is left untouched.
        """
        activity = dict(activity)
        activity.setdefault("actor", self.actor.id)
        if activity["actor"] != self.actor.id:
            raise ValueError(f"Cannot publish on behalf of {activity['actor']}")
        payload = json.dumps(activity).encode("utf-8")
        return [self.queue.enqueue(recipient, payload) for recipient in dict.fromkeys(recipients)]

    def receive(self, method: str, path: str, headers: Dict[str, str], body: bytes) -> Tuple[int, Dict[str, Any]]:
        """Run an inbound request through the inbox. Returns (status, response body)."""
        try:
            result = self.inbox.handle(InboundRequest(method=method, path=path, headers=headers, body=body))
        except VerificationFailed as e:
            return 401, {"error": str(e)}
        except MalformedActivity as e:
            return 400, {"error": str(e)}
        except ApplicationError as e:
            return 503, {"error": str(e)}
        if result.duplicate:
            return 200, {"status": "duplicate"}
        return 202, {"status": "accepted"}

    def webfinger(self, resource: str) -> Optional[Dict[str, Any]]:
        """WebFinger document if resource names the local actor."""
        handles = {
            f"acct:{self.actor.username}@{self.actor.domain}",
            self.actor.id,
        }
        if resource in handles:
            return self.actor.to_webfinger()
        return None

    def _create_handler(server_instance):
        """Create request handler with access to server instance."""

        class RequestHandler(BaseHTTPRequestHandler):
            server_ref = server_instance

            def log_message(self, format, *args):
                logger.debug(format % args)

            def _begin(self) -> str:
                """Start timing the request and return its path."""
                self._started = time.monotonic()
                self._path = urlparse(self.path).path
                return self._path

            def _send_raw(self, body: bytes, status: int, content_type: str):
                elapsed = time.monotonic() - self._started
                route = _route(self._path, self.server_ref.actor.username)
                self.server_ref.metrics.observe_request(self.command, route, status, elapsed)
                logger.info(f"{self.command} {self._path} {status} {elapsed * 1000:.1f}ms")

                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _send_json(self, data: Any, status: int = 200, content_type: str = "application/json"):
                self._send_raw(json.dumps(data).encode(), status, content_type)

            def _send_error(self, message: str, status: int = 400):
                self._send_json({"error": message}, status)

            def do_GET(self):
                path = self._begin()
                actor = self.server_ref.actor

                if path == "/.well-known/webfinger":
                    resource = parse_qs(urlparse(self.path).query).get("resource", [""])[0]
                    document = self.server_ref.webfinger(resource)
                    if document is None:
                        self._send_error("Unknown resource", 404)
                        return
                    self._send_json(document, content_type="application/jrd+json")

                elif path == f"/users/{actor.username}":
                    self._send_json(
                        actor.to_activitypub(self.server_ref.keys.public_key_pem),
                        content_type=ACTIVITY_CONTENT_TYPE,
                    )

                elif path == "/health":
                    self._send_json({"status": "ok", "delivery": self.server_ref.queue.stats()})

                elif path == "/metrics":
                    body, content_type = self.server_ref.metrics.render()
                    self._send_raw(body, 200, content_type)

                else:
                    self._send_error("Not found", 404)

            def do_POST(self):
                path = self._begin()
                actor = self.server_ref.actor
                if path not in (f"/users/{actor.username}/inbox", "/inbox"):
                    self._send_error("Not found", 404)
                    return

                try:
                    content_length = int(self.headers.get("Content-Length", 0))
                except ValueError:
                    self._send_error("Invalid Content-Length")
                    return
                if content_length < 0:
                    self._send_error("Invalid Content-Length")
                    return
                if content_length > MAX_BODY_BYTES:
                    self._send_error("Body too large", 413)
                    return
                body = self.rfile.read(content_length)

                status, response = self.server_ref.receive(
                    "POST",
                    self.path,
                    dict(self.headers.items()),
                    body,
                )
                self._send_json(response, status)

        return RequestHandler

    def bind(self) -> ThreadingHTTPServer:
        """Create the listening socket. Port 0 picks a free port."""
        if self._httpd is None:
            handler = self._create_handler()
            self._httpd = ThreadingHTTPServer((self.config.address, self.config.port), handler)
            self._httpd.daemon_threads = True
        return self._httpd

    @property
    def port(self) -> int:
        return self.bind().server_address[1]

    def start(self):
        """Start delivery and the HTTP server (blocking)."""
        httpd = self.bind()
        self.queue.start(poll_interval=self.config.delivery.poll_interval)
        logger.info(f"rap-server for {self.actor.handle} listening on {self.config.address}:{self.port}")
        try:
            httpd.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutting down...")
        finally:
            self.queue.stop()
            httpd.server_close()

    def start_background(self) -> threading.Thread:
        """Serve HTTP in a background thread (delivery is not started)."""
        httpd = self.bind()
        thread = threading.Thread(target=httpd.serve_forever, name="rap-http")
        thread.daemon = True
        thread.start()
        return thread

    def shutdown(self):
        """Stop a server started with start_background()."""
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
            self._httpd = None


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="rap federation server")
    parser.add_argument("--config", "-c", help="YAML config file")
    parser.add_argument("--host", help="Address to listen on (overrides ADDRESS)")
    parser.add_argument("--port", type=int, help="Port to listen on (overrides PORT)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    if args.host:
        config.address = args.host
    if args.port is not None:
        config.port = args.port

    logging.basicConfig(
        level=logging.DEBUG if (args.verbose or config.debug) else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        server = FederationServer(config)
    except KeyMaterialError as e:
        logger.critical(f"Cannot start: {e}")
        sys.exit(1)
    server.start()


if __name__ == "__main__":
    main()
