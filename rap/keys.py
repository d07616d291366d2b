# rap/keys.py
"""
Signing key management for the local actor.

Keys are RSA-2048, signatures are RSA PKCS#1 v1.5 over SHA-256
("rsa-sha256" in HTTP Signatures terms, the scheme Mastodon uses).
A KeyManager is built once at startup and held for the process lifetime.
"""

import logging
import os
from pathlib import Path
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import KeyMaterialError

logger = logging.getLogger(__name__)

KEY_SIZE = 2048


def generate_keypair() -> Tuple[bytes, bytes]:
    """Generate an RSA key pair, returned as (private PEM, public PEM)."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=KEY_SIZE,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


def write_private_key(path: Path | str, private_pem: bytes) -> Path:
    """Write a private key PEM readable by the owner only."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(private_pem)
    os.chmod(path, 0o600)
    return path


class KeyManager:
    """
    Holds the local actor's key pair.

    Usage:
        keys = KeyManager.load("/etc/rap/main-key.pem", actor.key_id)
        signature = keys.sign(b"...")
        keys.verify(b"...", signature, remote_public_pem)
    """

    def __init__(self, private_key_pem: bytes, key_id: str):
        if not private_key_pem:
            raise KeyMaterialError("No private key material configured")
        try:
            self._private_key = serialization.load_pem_private_key(
                private_key_pem,
                password=None,
            )
        except (ValueError, TypeError) as e:
            raise KeyMaterialError(f"Invalid private key: {e}") from e
        if not isinstance(self._private_key, rsa.RSAPrivateKey):
            raise KeyMaterialError("Private key must be RSA")

        self.key_id = key_id
        self.public_key_pem = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")

    @classmethod
    def load(cls, path: Path | str, key_id: str) -> "KeyManager":
        """Load the private key from a PEM file."""
        path = Path(path)
        if not path.exists():
            raise KeyMaterialError(f"Key file not found: {path}")
        logger.info(f"Loading signing key from {path}")
        return cls(path.read_bytes(), key_id)

    @classmethod
    def ensure(cls, path: Path | str, key_id: str) -> "KeyManager":
        """Load the key at path, generating and saving one first if absent."""
        path = Path(path)
        if not path.exists():
            private_pem, _ = generate_keypair()
            write_private_key(path, private_pem)
            logger.info(f"Generated new signing key at {path}")
        return cls.load(path, key_id)

    @classmethod
    def generate(cls, key_id: str) -> "KeyManager":
        """Create a manager around a fresh in-memory key."""
        private_pem, _ = generate_keypair()
        return cls(private_pem, key_id)

    def sign(self, data: bytes) -> bytes:
        """Sign data with the local private key."""
        return self._private_key.sign(
            data,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

    def verify(self, data: bytes, signature: bytes, public_key_pem: str | bytes) -> bool:
        """
        Verify a signature made by the holder of public_key_pem.

        Returns False for a bad signature or an unusable public key.
        """
        if isinstance(public_key_pem, str):
            public_key_pem = public_key_pem.encode("utf-8")
        try:
            public_key = serialization.load_pem_public_key(public_key_pem)
            if not isinstance(public_key, rsa.RSAPublicKey):
                return False
            public_key.verify(
                signature,
                data,
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
            return True
        except (InvalidSignature, ValueError, TypeError):
            return False
