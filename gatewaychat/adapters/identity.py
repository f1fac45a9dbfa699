"""Device identity for signed gateway handshakes.

Each device profile owns one Ed25519 keypair. The gateway identifies the
device by the SHA-256 fingerprint of the raw public key and verifies a
signature over a pipe-delimited auth payload on every ``connect``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

logger = logging.getLogger(__name__)

DEVICE_STORE_KEY = "openclaw.gateway.device.v1"
IDENTITY_FORMAT_VERSION = 1


# ── Encoding helpers ─────────────────────────────────────────────────


def b64url_encode(data: bytes) -> str:
    """Base64-URL encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded)


def fingerprint_public_key(raw_public_key: bytes) -> str:
    """SHA-256 hex digest of the raw 32-byte public key."""
    return hashlib.sha256(raw_public_key).hexdigest()


def build_device_auth_payload(
    *,
    device_id: str,
    client_id: str,
    client_mode: str,
    role: str,
    scopes: list[str],
    signed_at_ms: int,
    token: str | None,
    nonce: str | None = None,
) -> str:
    """Build the device auth payload string (pipe-delimited).

    ``v1`` has eight fields. When the server issued a challenge nonce the
    version becomes ``v2`` and the nonce is appended as a ninth field.
    """
    version = "v2" if nonce else "v1"
    fields = [
        version,
        device_id,
        client_id,
        client_mode,
        role,
        ",".join(scopes),
        str(signed_at_ms),
        token or "",
    ]
    if version == "v2":
        fields.append(nonce or "")
    return "|".join(fields)


# ── Identity ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    public_key: bytes
    private_key: Ed25519PrivateKey

    @classmethod
    def from_private_key(cls, private_key: Ed25519PrivateKey) -> DeviceIdentity:
        raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        return cls(device_id=fingerprint_public_key(raw), public_key=raw, private_key=private_key)

    @property
    def public_key_b64url(self) -> str:
        return b64url_encode(self.public_key)

    def sign(self, payload: str) -> str:
        """Sign payload with Ed25519 and return base64url-encoded signature."""
        return b64url_encode(self.private_key.sign(payload.encode("utf-8")))

    def verify(self, payload: str, signature: str) -> bool:
        public = Ed25519PublicKey.from_public_bytes(self.public_key)
        try:
            public.verify(b64url_decode(signature), payload.encode("utf-8"))
        except (InvalidSignature, ValueError):
            return False
        return True


def supports_ed25519() -> bool:
    """Probe whether the cryptography backend can generate Ed25519 keys."""
    try:
        Ed25519PrivateKey.generate()
    except UnsupportedAlgorithm:
        return False
    return True


class DeviceIdentityStore:
    """Loads or creates the persistent device keypair stored at *path*."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load_or_create(self) -> DeviceIdentity | None:
        """Return the device identity, or ``None`` when Ed25519 is unavailable.

        A missing or unreadable blob is replaced by a freshly generated one;
        this method never raises.
        """
        if not supports_ed25519():
            logger.warning("Ed25519 unsupported by this cryptography backend; using token-only auth")
            return None

        if self.path.exists():
            try:
                return self._load()
            except (OSError, ValueError, KeyError, TypeError, AttributeError, UnsupportedAlgorithm) as exc:
                logger.warning("Discarding unreadable device identity at %s: %s", self.path, exc)

        return self._create()

    def _load(self) -> DeviceIdentity:
        data = json.loads(self.path.read_text())
        private_key = load_pem_private_key(data["privateKeyPem"].encode(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise TypeError(f"expected an Ed25519 key, got {type(private_key).__name__}")
        identity = DeviceIdentity.from_private_key(private_key)
        if data.get("deviceId") and data["deviceId"] != identity.device_id:
            logger.info("Stored deviceId did not match key fingerprint; using %s", identity.device_id)
        return identity

    def _create(self) -> DeviceIdentity:
        identity = DeviceIdentity.from_private_key(Ed25519PrivateKey.generate())
        public_key = Ed25519PublicKey.from_public_bytes(identity.public_key)
        blob = {
            "version": IDENTITY_FORMAT_VERSION,
            "deviceId": identity.device_id,
            "publicKeyPem": public_key.public_bytes(
                Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
            ).decode(),
            "privateKeyPem": identity.private_key.private_bytes(
                Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
            ).decode(),
            "createdAtMs": int(time.time() * 1000),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(blob, indent=2) + "\n")
            self.path.chmod(0o600)
        except OSError as exc:
            logger.warning("Could not persist device identity to %s: %s", self.path, exc)
        else:
            logger.info("Generated new device identity: %s", identity.device_id)
        return identity
