# rap/transport.py
"""
Network collaborator.

The core only cares about the class of an HTTP outcome (success,
transient failure, permanent failure) plus raw headers and body.
"""

import json
import logging
from http.client import HTTPException
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from .errors import TransportPermanent, TransportTransient
from .keys import KeyManager
from .signatures import SignedRequest, sign_request

logger = logging.getLogger(__name__)

ACCEPT_ACTIVITY = (
    'application/activity+json, '
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
)
USER_AGENT = "rap-server/0.1.0"
SCHEMES = ("https", "http")


class Outcome(Enum):
    """Status-code class of a response."""
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify(status: int) -> Outcome:
    """
    Map an HTTP status to an outcome.

    2xx succeed; 5xx, 429 and 408 are worth retrying; everything else is
    permanent.
    """
    if 200 <= status < 300:
        return Outcome.SUCCESS
    if status >= 500 or status in (408, 429):
        return Outcome.TRANSIENT
    return Outcome.PERMANENT


def _check_scheme(url: str):
    scheme = urlparse(url).scheme.lower()
    if scheme not in SCHEMES:
        raise TransportPermanent(f"Refusing {scheme or 'relative'} URL {url}")


@dataclass
class Response:
    """A received HTTP response."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def outcome(self) -> Outcome:
        return classify(self.status)


class HttpTransport:
    """
    urllib based transport.

    Args:
        timeout: Per-request timeout in seconds
        keys: When given, GET requests are signed too (for servers that
            require authorized fetch)
    """

    def __init__(self, timeout: float = 10.0, keys: Optional[KeyManager] = None):
        self.timeout = timeout
        self.keys = keys

    def _open(self, req: Request) -> Response:
        try:
            with urlopen(req, timeout=self.timeout) as response:
                return Response(
                    status=response.status,
                    headers=dict(response.headers.items()),
                    body=response.read(),
                )
        except HTTPError as e:
            return Response(status=e.code, headers=dict(e.headers.items()) if e.headers else {}, body=e.read())
        except (URLError, HTTPException, TimeoutError, OSError) as e:
            raise TransportTransient(f"{req.get_method()} {req.full_url} failed: {e}")

    def send(self, request: SignedRequest) -> Response:
        """
        Perform a signed request.

        Returns the response whatever its status.

        Raises:
            TransportTransient: connection failure or timeout
            TransportPermanent: the URL is not http or https
        """
        _check_scheme(request.url)
        headers = dict(request.headers)
        headers.setdefault("User-Agent", USER_AGENT)
        req = Request(request.url, data=request.body, headers=headers, method=request.method)
        response = self._open(req)
        logger.debug(f"{request.method} {request.url} -> {response.status}")
        return response

    def fetch_json(self, url: str) -> Any:
        """
        GET an ActivityPub document.

        Raises:
            TransportTransient: network failure, timeout, 5xx, 429
            TransportPermanent: other non-2xx status
            ValueError: response body is not JSON
        """
        _check_scheme(url)
        headers = {"Accept": ACCEPT_ACTIVITY}
        if self.keys is not None:
            request = sign_request(self.keys, "GET", url, extra_headers=headers)
        else:
            request = SignedRequest(method="GET", url=url, headers=headers)

        response = self.send(request)
        outcome = response.outcome
        if outcome is Outcome.TRANSIENT:
            raise TransportTransient(f"GET {url} returned {response.status}", response.status)
        if outcome is Outcome.PERMANENT:
            raise TransportPermanent(f"GET {url} returned {response.status}", response.status)

        try:
            return json.loads(response.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValueError(f"GET {url} returned invalid JSON: {e}") from e
