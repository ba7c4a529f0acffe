"""General JWS JSON envelopes (EdDSA only).

Envelope shape:

    {"payload": "<b64url(payload bytes)>",
     "signatures": [{"protected": "<b64url(header)>", "signature": "<b64url(sig)>"}]}

The protected header is the canonical JSON of `{"alg": "EdDSA", "kid": <DID URL>}`
and each signature covers `ASCII(protected + "." + payload)`. Payload bytes
are canonical JSON as well, so signing and verification never depend on the
serialization of the message that carried them.

Verification is conjunctive: every entry must verify. An envelope with no
entries is not an authorization and is rejected.
"""

from __future__ import annotations

import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from dwn.core import b64url_decode, b64url_encode, jcs_canonicalize
from dwn.errors import MalformedAuthorization, SignatureInvalid


ALG_EDDSA = "EdDSA"
ED25519_SIGNATURE_LENGTH = 64


@dataclass(frozen=True)
class SignatureEntry:
    protected: str
    signature: str

    def header(self) -> Dict[str, Any]:
        """Decode the protected header."""
        try:
            header = json.loads(b64url_decode(self.protected).decode("utf-8"))
        except ValueError as ex:
            raise MalformedAuthorization("Protected header is not base64url JSON") from ex
        if not isinstance(header, dict):
            raise MalformedAuthorization("Protected header must be a JSON object")
        return header

    @property
    def kid(self) -> str:
        kid = self.header().get("kid")
        if not isinstance(kid, str) or not kid:
            raise MalformedAuthorization("Protected header has no kid")
        return kid

    def signing_input(self, payload: str) -> bytes:
        try:
            return f"{self.protected}.{payload}".encode("ascii")
        except UnicodeEncodeError as ex:
            raise MalformedAuthorization("JWS segments must be ASCII base64url") from ex

    def to_dict(self) -> Dict[str, str]:
        return {"protected": self.protected, "signature": self.signature}


@dataclass(frozen=True)
class JwsEnvelope:
    payload: str
    signatures: Tuple[SignatureEntry, ...]

    def payload_bytes(self) -> bytes:
        try:
            return b64url_decode(self.payload)
        except ValueError as ex:
            raise MalformedAuthorization("JWS payload is not base64url") from ex

    def payload_json(self) -> Dict[str, Any]:
        try:
            obj = json.loads(self.payload_bytes().decode("utf-8"))
        except ValueError as ex:
            raise MalformedAuthorization("JWS payload is not JSON") from ex
        if not isinstance(obj, dict):
            raise MalformedAuthorization("JWS payload must be a JSON object")
        return obj

    def key_ids(self) -> List[str]:
        return [s.kid for s in self.signatures]

    def to_dict(self) -> Dict[str, Any]:
        return {"payload": self.payload, "signatures": [s.to_dict() for s in self.signatures]}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "JwsEnvelope":
        if not isinstance(d, Mapping):
            raise MalformedAuthorization("signature must be a JSON object")
        payload = d.get("payload")
        sigs = d.get("signatures")
        if not isinstance(payload, str) or not isinstance(sigs, list):
            raise MalformedAuthorization("signature requires 'payload' and 'signatures'")
        entries = []
        for s in sigs:
            if not isinstance(s, Mapping) or not isinstance(s.get("protected"), str) or not isinstance(s.get("signature"), str):
                raise MalformedAuthorization("signature entries require 'protected' and 'signature'")
            entries.append(SignatureEntry(protected=s["protected"], signature=s["signature"]))
        return cls(payload=payload, signatures=tuple(entries))


def sign(payload: Mapping[str, Any], keyrings: Sequence[Any]) -> JwsEnvelope:
    """Sign the canonical JSON of `payload` with each keyring.

    Keyrings expose `key_id` and `sign(bytes) -> bytes` (see `dwn.did.Keyring`).
    """
    encoded_payload = b64url_encode(jcs_canonicalize(dict(payload)))
    entries = []
    for keyring in keyrings:
        protected = b64url_encode(jcs_canonicalize({"alg": ALG_EDDSA, "kid": keyring.key_id}))
        entry = SignatureEntry(protected=protected, signature="")
        sig = keyring.sign(entry.signing_input(encoded_payload))
        entries.append(SignatureEntry(protected=protected, signature=b64url_encode(sig)))
    return JwsEnvelope(payload=encoded_payload, signatures=tuple(entries))


def verify(
    envelope: JwsEnvelope,
    keys: Mapping[str, Ed25519PublicKey],
    payload: Optional[bytes] = None,
) -> None:
    """Verify every signature entry; raise SignatureInvalid on the first failure.

    `keys` maps each entry's `kid` to its resolved public key. When `payload`
    is given, the envelope payload bytes must equal it.
    """
    if not envelope.signatures:
        raise SignatureInvalid("Authorization carries no signatures")

    if payload is not None and not hmac.compare_digest(envelope.payload_bytes(), payload):
        raise SignatureInvalid("Signed payload does not match the expected payload")

    for idx, entry in enumerate(envelope.signatures):
        header = entry.header()
        if header.get("alg") != ALG_EDDSA:
            raise SignatureInvalid(f"Unsupported JWS alg: {header.get('alg')!r}", index=idx)
        kid = entry.kid
        pub = keys.get(kid)
        if pub is None:
            raise SignatureInvalid(f"No verification key supplied for {kid}", index=idx)
        try:
            sig = b64url_decode(entry.signature)
        except ValueError as ex:
            raise SignatureInvalid("Signature is not base64url", index=idx) from ex
        if len(sig) != ED25519_SIGNATURE_LENGTH:
            raise SignatureInvalid(f"Ed25519 signature must be 64 bytes, got {len(sig)}", index=idx)
        try:
            pub.verify(sig, entry.signing_input(envelope.payload))
        except InvalidSignature as ex:
            raise SignatureInvalid(f"Signature by {kid} does not verify", index=idx, kid=kid) from ex
