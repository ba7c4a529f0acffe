"""dwn.did

DID keys and resolution.

Profile:
- signers are identified by DID URLs (`did:key:z6Mk...#z6Mk...`); the base DID
  is the part before `#`
- only Ed25519 verification keys are supported
- `did:key` is resolved locally; other methods are delegated to an injected
  resolver implementing `DidResolver`

`Keyring` is the signing side: an Ed25519 private key bound to its DID URL.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from multiformats import multibase, multicodec

from dwn.core import b64url_decode, b64url_encode
from dwn.errors import DidNotFound, KeyNotFound


ED25519_CODEC = "ed25519-pub"
DID_KEY_PREFIX = "did:key:"


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------


def did_key_from_ed25519_public_key(pub: bytes) -> str:
    if len(pub) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(pub)}")
    return DID_KEY_PREFIX + multibase.encode(multicodec.wrap(ED25519_CODEC, pub), "base58btc")


def ed25519_public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a `did:key` (Ed25519) and return a cryptography public key."""

    did = base_did(did)
    if not did.startswith(DID_KEY_PREFIX + "z"):
        raise ValueError("Only did:key:z... supported")
    try:
        codec, raw = multicodec.unwrap(multibase.decode(did[len(DID_KEY_PREFIX):]))
    except Exception as ex:
        raise ValueError(f"did:key is not a multibase/multicodec value: {did}") from ex

    if codec.name != ED25519_CODEC:
        raise ValueError(f"did:key multicodec {codec.name} is not Ed25519")
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")

    return Ed25519PublicKey.from_public_bytes(raw)


def base_did(did_or_key_id: str) -> str:
    """Return base DID (strip fragment)."""

    return str(did_or_key_id or "").split("#", 1)[0]


def key_fragment(did_url: str) -> Optional[str]:
    parts = str(did_url or "").split("#", 1)
    return parts[1] if len(parts) == 2 and parts[1] else None


def public_key_bytes(pub: Ed25519PublicKey) -> bytes:
    return pub.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class DidResolver(abc.ABC):
    """Resolves a DID URL to the Ed25519 key that verifies its signatures."""

    @abc.abstractmethod
    async def resolve_verification_key(self, did_url: str) -> Ed25519PublicKey:
        """Return the public key, or raise DidNotFound / KeyNotFound."""


class DidKeyResolver(DidResolver):
    """Local `did:key` resolution; no network access."""

    async def resolve_verification_key(self, did_url: str) -> Ed25519PublicKey:
        did = base_did(did_url)
        if not did.startswith(DID_KEY_PREFIX):
            raise DidNotFound(f"Cannot resolve {did}: only did:key is supported", did=did)
        try:
            pub = ed25519_public_key_from_did_key(did)
        except ValueError as ex:
            raise DidNotFound(str(ex), did=did) from ex

        # A did:key document has exactly one verification method, named by
        # the multibase key itself.
        fragment = key_fragment(did_url)
        if fragment is not None and fragment != did[len(DID_KEY_PREFIX):]:
            raise KeyNotFound(f"{did} has no verification method #{fragment}", did_url=did_url)
        return pub


class StaticDidResolver(DidResolver):
    """Resolver over a fixed key table, keyed by base DID or full DID URL."""

    def __init__(self, keys: Optional[Dict[str, Ed25519PublicKey]] = None):
        self._keys: Dict[str, Ed25519PublicKey] = dict(keys or {})

    def add(self, did_url: str, key: Ed25519PublicKey) -> None:
        self._keys[did_url] = key

    async def resolve_verification_key(self, did_url: str) -> Ed25519PublicKey:
        if did_url in self._keys:
            return self._keys[did_url]
        did = base_did(did_url)
        if not any(base_did(k) == did for k in self._keys):
            raise DidNotFound(f"Unknown DID {did}", did=did)
        if did in self._keys and key_fragment(did_url) is None:
            return self._keys[did]
        raise KeyNotFound(f"Unknown key {did_url}", did_url=did_url)


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------


class Keyring:
    """An Ed25519 signing key bound to its `did:key` identity."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_bytes = public_key_bytes(private_key.public_key())
        self._did = did_key_from_ed25519_public_key(self._public_bytes)

    @classmethod
    def generate(cls) -> "Keyring":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keyring":
        """Deterministic keyring from a 32-byte seed (fixtures)."""
        if len(seed) != 32:
            raise ValueError("Ed25519 seed must be 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "Keyring":
        """Load from an OKP/Ed25519 private JWK."""

        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only OKP/Ed25519 JWK is supported")
        d = jwk.get("d")
        if not d:
            raise ValueError("JWK must include 'd' (private)")
        keyring = cls(Ed25519PrivateKey.from_private_bytes(b64url_decode(d)))
        x = jwk.get("x")
        if x and b64url_decode(x) != keyring._public_bytes:
            raise ValueError("JWK 'x' does not match the private key")
        return keyring

    def to_jwk(self, private: bool = False) -> Dict[str, Any]:
        jwk: Dict[str, Any] = {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url_encode(self._public_bytes),
            "kid": self.key_id,
        }
        if private:
            jwk["d"] = b64url_encode(
                self._private_key.private_bytes(
                    encoding=serialization.Encoding.Raw,
                    format=serialization.PrivateFormat.Raw,
                    encryption_algorithm=serialization.NoEncryption(),
                )
            )
        return jwk

    @property
    def did(self) -> str:
        return self._did

    @property
    def key_id(self) -> str:
        return f"{self._did}#{self._did[len(DID_KEY_PREFIX):]}"

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._private_key.public_key()

    def sign(self, data: bytes) -> bytes:
        return self._private_key.sign(data)

    def __repr__(self) -> str:
        return f"Keyring({self._did})"
