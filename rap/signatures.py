# rap/signatures.py
"""
HTTP Signatures for federation requests.

Implements the draft-cavage scheme used across the fediverse:

    Signature: keyId="https://example.com/users/alice#main-key",
               algorithm="rsa-sha256",
               headers="(request-target) host date digest",
               signature="<base64>"

The signed data (the "signing string") has one line per covered header,
"name: value", joined by newlines. The (request-target) pseudo-header is
the lowercased method, a space, and the request path.
"""

import base64
import hashlib
import re
import time
from dataclasses import dataclass, field
from datetime import timezone
from email.utils import formatdate, parsedate_to_datetime
from typing import Dict, List, Mapping, Optional
from urllib.parse import urldefrag, urlparse

from .errors import ClockSkew, MalformedSignature, SignatureMismatch
from .keys import KeyManager

ALGORITHM = "rsa-sha256"
ACCEPTED_ALGORITHMS = {"rsa-sha256", "hs2019"}
ACTIVITY_CONTENT_TYPE = "application/activity+json"
DEFAULT_MAX_SKEW = 12 * 60 * 60

REQUEST_TARGET = "(request-target)"
REQUIRED_HEADERS = (REQUEST_TARGET, "host", "date")

_TOKEN = re.compile(r"[!#$%&'*+.^_`|~0-9A-Za-z-]+")
_DIGESTS = {
    "sha-256": hashlib.sha256,
    "sha-512": hashlib.sha512,
}


@dataclass
class SignatureHeader:
    """Parsed contents of a Signature header."""
    key_id: str
    signature: str
    headers: List[str] = field(default_factory=lambda: ["date"])
    algorithm: Optional[str] = ALGORITHM

    def format(self) -> str:
        """Render as a Signature header value."""
        parts = [f'keyId="{_escape(self.key_id)}"']
        if self.algorithm:
            parts.append(f'algorithm="{_escape(self.algorithm)}"')
        parts.append(f'headers="{" ".join(self.headers)}"')
        parts.append(f'signature="{self.signature}"')
        return ",".join(parts)

    def signature_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.signature, validate=True)
        except ValueError as e:
            raise MalformedSignature(f"Signature is not valid base64: {e}") from e


@dataclass
class SignedRequest:
    """
    A request ready to send.

    Built fresh for every delivery attempt: the Date header it signs has
    to be current when the receiver checks it.
    """
    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[bytes] = None

    @property
    def signature(self) -> str:
        return self.headers["Signature"]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _skip_ws(value: str, pos: int) -> int:
    while pos < len(value) and value[pos] in " \t":
        pos += 1
    return pos


def _parse_params(value: str) -> Dict[str, str]:
    """
    Parse comma separated name=value pairs.

    Values are tokens or quoted strings with backslash escapes. Some
    implementations prefix the list with "Signature ", which is skipped.
    """
    params: Dict[str, str] = {}
    pos = _skip_ws(value, 0)
    if value.startswith("Signature ", pos):
        pos += len("Signature ")
    end = len(value)

    while True:
        pos = _skip_ws(value, pos)
        match = _TOKEN.match(value, pos)
        if not match:
            raise MalformedSignature(f"Expected parameter name at offset {pos}")
        name = match.group(0)
        pos = _skip_ws(value, match.end())
        if pos >= end or value[pos] != "=":
            raise MalformedSignature(f"Expected '=' after {name}")
        pos = _skip_ws(value, pos + 1)

        if pos < end and value[pos] == '"':
            pos += 1
            chars = []
            while True:
                if pos >= end:
                    raise MalformedSignature(f"Unterminated quoted value for {name}")
                char = value[pos]
                if char == "\\":
                    if pos + 1 >= end:
                        raise MalformedSignature(f"Dangling escape in {name}")
                    chars.append(value[pos + 1])
                    pos += 2
                elif char == '"':
                    pos += 1
                    break
                else:
                    chars.append(char)
                    pos += 1
            param_value = "".join(chars)
        else:
            match = _TOKEN.match(value, pos)
            if not match:
                raise MalformedSignature(f"Expected value for {name}")
            param_value = match.group(0)
            pos = match.end()

        if name in params:
            raise MalformedSignature(f"Duplicate parameter {name}")
        params[name] = param_value

        pos = _skip_ws(value, pos)
        if pos >= end:
            return params
        if value[pos] != ",":
            raise MalformedSignature(f"Expected ',' at offset {pos}")
        pos += 1


def parse_signature_header(value: str) -> SignatureHeader:
    """
    Parse a Signature header value.

    Raises:
        MalformedSignature: unparsable, or keyId/signature missing
    """
    if not value or not value.strip():
        raise MalformedSignature("Empty Signature header")

    params = _parse_params(value)
    if not params.get("keyId"):
        raise MalformedSignature("Signature header has no keyId")
    if not params.get("signature"):
        raise MalformedSignature("Signature header has no signature")

    headers = params.get("headers", "date").lower().split()
    if not headers:
        raise MalformedSignature("Signature header covers no headers")

    return SignatureHeader(
        key_id=params["keyId"],
        signature=params["signature"],
        headers=headers,
        algorithm=params.get("algorithm"),
    )


def key_owner(key_id: str) -> str:
    """Actor id that owns a key id (the key id with its fragment removed)."""
    return urldefrag(key_id)[0]


def content_digest(body: bytes, algorithm: str = "SHA-256") -> str:
    """Digest header value for body, e.g. "SHA-256=<base64>"."""
    hasher = _DIGESTS[algorithm.lower()]
    return f"{algorithm.upper()}={base64.b64encode(hasher(body).digest()).decode('ascii')}"


def http_date(timestamp: Optional[float] = None) -> str:
    """Format a timestamp as an HTTP date (IMF-fixdate)."""
    return formatdate(timestamp if timestamp is not None else time.time(), usegmt=True)


def parse_http_date(value: str) -> float:
    """Parse an HTTP date into a UTC timestamp."""
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError) as e:
        raise MalformedSignature(f"Invalid Date header: {value!r}") from e
    if parsed is None:
        raise MalformedSignature(f"Invalid Date header: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {name.lower(): value for name, value in headers.items()}


def build_signing_string(
    method: str,
    path: str,
    headers: Mapping[str, str],
    signed_headers: List[str],
) -> str:
    """
    Build the canonical string covered by a signature.

    Args:
        method: HTTP method
        path: Request path including any query string
        headers: Request headers (any case)
        signed_headers: Header names in signing order

    Raises:
        MalformedSignature: a covered header is missing from the request
    """
    lowered = _lower_headers(headers)
    lines = []
    for name in signed_headers:
        name = name.lower()
        if name == REQUEST_TARGET:
            lines.append(f"{REQUEST_TARGET}: {method.lower()} {path}")
        elif name.startswith("("):
            raise MalformedSignature(f"Unsupported pseudo-header {name}")
        elif name in lowered:
            lines.append(f"{name}: {lowered[name].strip()}")
        else:
            raise MalformedSignature(f"Signed header {name} missing from request")
    return "\n".join(lines)


def sign_request(
    keys: KeyManager,
    method: str,
    url: str,
    body: Optional[bytes] = None,
    now: Optional[float] = None,
    extra_headers: Optional[Mapping[str, str]] = None,
) -> SignedRequest:
    """
    Sign a request with the local actor's key.

    Covers (request-target), host, date and, when there is a body, digest.

    Returns:
        SignedRequest with Host, Date, Digest and Signature headers set
    """
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"

    headers: Dict[str, str] = dict(extra_headers or {})
    headers["Host"] = parsed.netloc
    headers["Date"] = http_date(now)
    signed = [REQUEST_TARGET, "host", "date"]
    if body is not None:
        headers["Digest"] = content_digest(body)
        headers.setdefault("Content-Type", ACTIVITY_CONTENT_TYPE)
        signed.append("digest")

    signing_string = build_signing_string(method, path, headers, signed)
    signature = base64.b64encode(keys.sign(signing_string.encode("utf-8"))).decode("ascii")
    headers["Signature"] = SignatureHeader(
        key_id=keys.key_id,
        signature=signature,
        headers=signed,
        algorithm=ALGORITHM,
    ).format()

    return SignedRequest(method=method.upper(), url=url, headers=headers, body=body)


def _check_digest(digest_header: str, body: bytes):
    """Compare a Digest header against the body. Unknown algorithms are skipped."""
    checked = False
    for entry in digest_header.split(","):
        algorithm, sep, value = entry.strip().partition("=")
        hasher = _DIGESTS.get(algorithm.lower())
        if not sep or hasher is None:
            continue
        expected = base64.b64encode(hasher(body).digest()).decode("ascii")
        if value.strip() != expected:
            raise SignatureMismatch(f"{algorithm} digest does not match body")
        checked = True
    if not checked:
        raise MalformedSignature(f"No supported digest in {digest_header!r}")


def verify_request(
    keys: KeyManager,
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: Optional[bytes],
    public_key_pem: str,
    now: Optional[float] = None,
    max_skew: float = DEFAULT_MAX_SKEW,
    signature: Optional[SignatureHeader] = None,
) -> SignatureHeader:
    """
    Verify the signature on an incoming request.

    Args:
        keys: Key manager used for the cryptographic check
        method: HTTP method of the request as received
        path: Request path as received (including query string)
        headers: Request headers
        body: Request body, or None to skip comparing it with Digest
        public_key_pem: Sender's public key
        now: Current time (defaults to time.time())
        max_skew: Accepted distance between Date and now, in seconds
        signature: Already parsed Signature header, if the caller has one

    Returns:
        The parsed SignatureHeader

    Raises:
        MalformedSignature, ClockSkew, SignatureMismatch
    """
    lowered = _lower_headers(headers)
    if signature is None:
        signature = parse_signature_header(lowered.get("signature", ""))

    if signature.algorithm and signature.algorithm.lower() not in ACCEPTED_ALGORITHMS:
        raise MalformedSignature(f"Unsupported algorithm {signature.algorithm}")

    required = list(REQUIRED_HEADERS)
    if body:
        required.append("digest")
    missing = [name for name in required if name not in signature.headers]
    if missing:
        raise MalformedSignature(f"Signature does not cover {', '.join(missing)}")

    if "date" not in lowered:
        raise MalformedSignature("Request has no Date header")
    now = time.time() if now is None else now
    skew = parse_http_date(lowered["date"]) - now
    if abs(skew) > max_skew:
        raise ClockSkew(skew, max_skew)

    if body is not None and "digest" in lowered:
        _check_digest(lowered["digest"], body)

    signing_string = build_signing_string(method, path, lowered, signature.headers)
    if not keys.verify(signing_string.encode("utf-8"), signature.signature_bytes(), public_key_pem):
        raise SignatureMismatch(f"Signature by {signature.key_id} does not verify")

    return signature
