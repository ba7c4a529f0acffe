"""DWN messages.

A message is a self-describing, signed request:

    {
      "recordId": "<cid>",                 # Records.Write
      "contextId": "<cid>[/<cid>...]",      # protocol Records.Write
      "descriptor": {"interface": ..., "method": ..., "messageTimestamp": ..., ...},
      "authorization": {
        "signature": <general JWS over the signature payload>,
        "authorDelegatedGrant": <Records.Write grant message>
      },
      "encodedData": "<b64url>"
    }

The signature payload binds the descriptor (through its CID) and the
record/context ids, so a signature over one message cannot be replayed onto
another. Messages are immutable; `Message.replace` produces a modified copy.

Builders at the bottom of the module (`create_records_write` and friends)
produce correctly signed messages and are what tests and clients use.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from dwn import jws
from dwn.cid import compute_cid, data_cid, derive_context_id, derive_record_id
from dwn.core import (
    b64url_decode,
    b64url_encode,
    clean_url,
    now_timestamp,
    omit_none,
    parse_timestamp,
)
from dwn.did import base_did
from dwn.errors import IntegrityViolation, MalformedAuthorization, MalformedDescriptor


class Interface(str, Enum):
    RECORDS = "Records"
    PROTOCOLS = "Protocols"
    PERMISSIONS = "Permissions"


class Method(str, Enum):
    WRITE = "Write"
    READ = "Read"
    QUERY = "Query"
    SUBSCRIBE = "Subscribe"
    DELETE = "Delete"
    CONFIGURE = "Configure"
    REQUEST = "Request"
    REVOKE = "Revoke"


# =============================================================================
# AUTHORIZATION
# =============================================================================

@dataclass(frozen=True)
class SignaturePayload:
    """The JSON object signed by the message author."""
    descriptor_cid: str
    record_id: Optional[str] = None
    context_id: Optional[str] = None
    permission_grant_id: Optional[str] = None
    delegated_grant_id: Optional[str] = None
    protocol_role: Optional[str] = None

    _FIELDS = {
        "descriptorCid": "descriptor_cid",
        "recordId": "record_id",
        "contextId": "context_id",
        "permissionGrantId": "permission_grant_id",
        "delegatedGrantId": "delegated_grant_id",
        "protocolRole": "protocol_role",
    }

    def to_dict(self) -> Dict[str, str]:
        return omit_none({k: getattr(self, attr) for k, attr in self._FIELDS.items()})

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SignaturePayload":
        unknown = set(d) - set(cls._FIELDS)
        if unknown:
            raise MalformedAuthorization(f"Unexpected signature payload fields: {sorted(unknown)}")
        for k, v in d.items():
            if v is not None and not isinstance(v, str):
                raise MalformedAuthorization(f"Signature payload field {k} must be a string")
        if not d.get("descriptorCid"):
            raise MalformedAuthorization("Signature payload is missing descriptorCid")
        return cls(**{attr: d.get(k) for k, attr in cls._FIELDS.items()})


@dataclass(frozen=True)
class Authorization:
    signature: jws.JwsEnvelope
    author_delegated_grant: Optional["Message"] = None

    def payload(self) -> SignaturePayload:
        return SignaturePayload.from_dict(self.signature.payload_json())

    @property
    def signer_key_id(self) -> str:
        if not self.signature.signatures:
            raise MalformedAuthorization("Authorization carries no signatures")
        return self.signature.signatures[0].kid

    @property
    def signer(self) -> str:
        """Base DID of the (first) signer."""
        return base_did(self.signer_key_id)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"signature": self.signature.to_dict()}
        if self.author_delegated_grant is not None:
            d["authorDelegatedGrant"] = self.author_delegated_grant.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Authorization":
        if not isinstance(d, Mapping) or "signature" not in d:
            raise MalformedAuthorization("authorization requires a signature")
        grant = d.get("authorDelegatedGrant")
        return cls(
            signature=jws.JwsEnvelope.from_dict(d["signature"]),
            author_delegated_grant=Message.from_dict(grant) if grant is not None else None,
        )


# =============================================================================
# MESSAGE
# =============================================================================

@dataclass(frozen=True)
class Message:
    descriptor: Dict[str, Any]
    authorization: Optional[Authorization] = None
    record_id: Optional[str] = None
    context_id: Optional[str] = None
    encoded_data: Optional[str] = None

    # -- descriptor accessors -------------------------------------------------

    @property
    def interface(self) -> Optional[str]:
        return self.descriptor.get("interface")

    @property
    def method(self) -> Optional[str]:
        return self.descriptor.get("method")

    @property
    def kind(self) -> str:
        return f"{self.interface}{self.method}"

    def is_a(self, interface: Interface, method: Method) -> bool:
        return self.interface == interface.value and self.method == method.value

    @property
    def message_timestamp(self) -> str:
        ts = self.descriptor.get("messageTimestamp")
        if not isinstance(ts, str):
            raise MalformedDescriptor("descriptor.messageTimestamp is required")
        return ts

    @property
    def timestamp(self) -> datetime:
        try:
            return parse_timestamp(self.message_timestamp)
        except ValueError as ex:
            raise MalformedDescriptor(str(ex)) from ex

    @property
    def filter(self) -> Dict[str, Any]:
        f = self.descriptor.get("filter")
        return f if isinstance(f, dict) else {}

    @property
    def protocol(self) -> Optional[str]:
        """Protocol the message addresses: descriptor, query filter or definition."""
        if self.descriptor.get("protocol"):
            return self.descriptor["protocol"]
        if self.filter.get("protocol"):
            return self.filter["protocol"]
        definition = self.descriptor.get("definition")
        if isinstance(definition, dict) and definition.get("protocol"):
            return definition["protocol"]
        return None

    @property
    def protocol_path(self) -> Optional[str]:
        return self.descriptor.get("protocolPath") or self.filter.get("protocolPath")

    @property
    def parent_id(self) -> Optional[str]:
        return self.descriptor.get("parentId")

    @property
    def recipient(self) -> Optional[str]:
        return self.descriptor.get("recipient")

    @property
    def schema(self) -> Optional[str]:
        return self.descriptor.get("schema")

    @property
    def data_cid(self) -> Optional[str]:
        return self.descriptor.get("dataCid")

    @property
    def data_size(self) -> Optional[int]:
        return self.descriptor.get("dataSize")

    @property
    def date_created(self) -> Optional[str]:
        return self.descriptor.get("dateCreated")

    @property
    def published(self) -> bool:
        return bool(self.descriptor.get("published"))

    @property
    def target_record_id(self) -> Optional[str]:
        """Record addressed by a Delete or Read."""
        return self.descriptor.get("recordId") or self.filter.get("recordId")

    # -- authorization accessors ----------------------------------------------

    @property
    def signer(self) -> Optional[str]:
        return self.authorization.signer if self.authorization else None

    @property
    def author(self) -> Optional[str]:
        """Logical author: the grantor when signed through a delegated grant."""
        if self.authorization is None:
            return None
        grant = self.authorization.author_delegated_grant
        if grant is not None:
            return grant.author
        return self.authorization.signer

    @property
    def protocol_role(self) -> Optional[str]:
        if self.authorization is None:
            return None
        return self.authorization.payload().protocol_role

    @property
    def permission_grant_id(self) -> Optional[str]:
        if self.authorization is None:
            return None
        return self.authorization.payload().permission_grant_id

    # -- identity ---------------------------------------------------------------

    def data(self) -> Optional[bytes]:
        if self.encoded_data is None:
            return None
        try:
            return b64url_decode(self.encoded_data)
        except ValueError as ex:
            raise MalformedDescriptor("encodedData is not base64url") from ex

    def descriptor_cid(self) -> str:
        return compute_cid(self.descriptor)

    def cid(self) -> str:
        """CID of the message without its inline data."""
        d = self.to_dict()
        d.pop("encodedData", None)
        return compute_cid(d)

    def is_initial_write(self) -> bool:
        """True when the record id derives from this message's own descriptor."""
        if not self.is_a(Interface.RECORDS, Method.WRITE) or not self.record_id or not self.author:
            return False
        return self.record_id == derive_record_id(self.descriptor, self.author)

    def verify_integrity(self, data: Optional[bytes] = None) -> None:
        """Check the content identifiers this message carries.

        - the signed descriptorCid equals the CID of the descriptor
        - signed recordId/contextId equal the message's
        - delegatedGrantId names the embedded grant
        - dataCid/dataSize match the data, when the data is present
        """
        if self.authorization is not None:
            payload = self.authorization.payload()
            if payload.descriptor_cid != self.descriptor_cid():
                raise IntegrityViolation("Signed descriptorCid does not match the descriptor")
            if payload.record_id != self.record_id:
                raise IntegrityViolation("Signed recordId does not match the message recordId")
            if payload.context_id != self.context_id:
                raise IntegrityViolation("Signed contextId does not match the message contextId")

            grant = self.authorization.author_delegated_grant
            if grant is None and payload.delegated_grant_id is not None:
                raise MalformedAuthorization("delegatedGrantId present without authorDelegatedGrant")
            if grant is not None:
                if payload.delegated_grant_id is None:
                    raise MalformedAuthorization("authorDelegatedGrant present without delegatedGrantId")
                if payload.delegated_grant_id != grant.record_id:
                    raise IntegrityViolation("delegatedGrantId does not match the embedded grant")

        if self.is_a(Interface.RECORDS, Method.WRITE):
            if not self.record_id:
                raise MalformedDescriptor("Records.Write requires recordId")
            if self.protocol:
                if not self.context_id or self.context_id.rsplit("/", 1)[-1] != self.record_id:
                    raise IntegrityViolation("contextId must end with the recordId")
            elif self.context_id is not None:
                raise IntegrityViolation("Non-protocol records carry no contextId")

            payload_bytes = data if data is not None else self.data()
            if payload_bytes is not None:
                if self.data_size != len(payload_bytes):
                    raise IntegrityViolation(
                        f"dataSize {self.data_size} does not match actual size {len(payload_bytes)}"
                    )
                if self.data_cid != data_cid(payload_bytes):
                    raise IntegrityViolation("dataCid does not match the data")

    # -- serialization ----------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.record_id is not None:
            d["recordId"] = self.record_id
        if self.context_id is not None:
            d["contextId"] = self.context_id
        d["descriptor"] = self.descriptor
        if self.authorization is not None:
            d["authorization"] = self.authorization.to_dict()
        if self.encoded_data is not None:
            d["encodedData"] = self.encoded_data
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Message":
        if not isinstance(d, Mapping):
            raise MalformedDescriptor("Message must be a JSON object")
        descriptor = d.get("descriptor")
        if not isinstance(descriptor, dict):
            raise MalformedDescriptor("Message requires a descriptor object")
        auth = d.get("authorization")
        for key in ("recordId", "contextId", "encodedData"):
            if d.get(key) is not None and not isinstance(d[key], str):
                raise MalformedDescriptor(f"{key} must be a string")
        return cls(
            descriptor=descriptor,
            authorization=Authorization.from_dict(auth) if auth is not None else None,
            record_id=d.get("recordId"),
            context_id=d.get("contextId"),
            encoded_data=d.get("encodedData"),
        )

    def replace(self, **changes: Any) -> "Message":
        return dataclasses.replace(self, **changes)


# =============================================================================
# BUILDERS
# =============================================================================

def _authorize(
    keyring: Any,
    descriptor: Dict[str, Any],
    *,
    record_id: Optional[str] = None,
    context_id: Optional[str] = None,
    protocol_role: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
    signers: Sequence[Any] = (),
) -> Authorization:
    payload = SignaturePayload(
        descriptor_cid=compute_cid(descriptor),
        record_id=record_id,
        context_id=context_id,
        permission_grant_id=permission_grant_id,
        delegated_grant_id=delegated_grant.record_id if delegated_grant is not None else None,
        protocol_role=protocol_role,
    )
    envelope = jws.sign(payload.to_dict(), [keyring, *signers])
    return Authorization(signature=envelope, author_delegated_grant=delegated_grant)


def create_records_write(
    keyring: Any,
    *,
    data: bytes,
    protocol: Optional[str] = None,
    protocol_path: Optional[str] = None,
    schema: Optional[str] = None,
    data_format: str = "application/json",
    recipient: Optional[str] = None,
    parent: Optional[Message] = None,
    published: Optional[bool] = None,
    message_timestamp: Optional[str] = None,
    date_created: Optional[str] = None,
    protocol_role: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
    tags: Optional[Dict[str, Any]] = None,
    include_data: bool = True,
) -> Message:
    """Build a signed initial Records.Write."""
    ts = message_timestamp or now_timestamp()
    descriptor = omit_none({
        "interface": Interface.RECORDS.value,
        "method": Method.WRITE.value,
        "protocol": clean_url(protocol) if protocol else None,
        "protocolPath": protocol_path,
        "schema": clean_url(schema) if schema else None,
        "dataFormat": data_format,
        "dataCid": data_cid(data),
        "dataSize": len(data),
        "dateCreated": date_created or ts,
        "messageTimestamp": ts,
        "recipient": recipient,
        "parentId": parent.record_id if parent is not None else None,
        "published": published,
        "datePublished": ts if published else None,
        "tags": tags,
    })

    author = delegated_grant.author if delegated_grant is not None else keyring.did
    record_id = derive_record_id(descriptor, author)
    context_id = None
    if protocol:
        context_id = derive_context_id(parent.context_id if parent is not None else None, record_id)

    return Message(
        descriptor=descriptor,
        authorization=_authorize(
            keyring,
            descriptor,
            record_id=record_id,
            context_id=context_id,
            protocol_role=protocol_role,
            delegated_grant=delegated_grant,
            permission_grant_id=permission_grant_id,
        ),
        record_id=record_id,
        context_id=context_id,
        encoded_data=b64url_encode(data) if include_data else None,
    )


def update_records_write(
    keyring: Any,
    existing: Message,
    *,
    data: Optional[bytes] = None,
    published: Optional[bool] = None,
    message_timestamp: Optional[str] = None,
    protocol_role: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
    tags: Optional[Dict[str, Any]] = None,
) -> Message:
    """Build a signed update of an existing record.

    Immutable fields are carried over from `existing`; record and context ids
    never change across updates.
    """
    ts = message_timestamp or now_timestamp()
    descriptor = dict(existing.descriptor)
    descriptor["messageTimestamp"] = ts
    encoded = existing.encoded_data
    if data is not None:
        descriptor["dataCid"] = data_cid(data)
        descriptor["dataSize"] = len(data)
        encoded = b64url_encode(data)
    if published is not None:
        descriptor["published"] = published
        if published:
            descriptor["datePublished"] = ts
        else:
            descriptor.pop("datePublished", None)
    if tags is not None:
        descriptor["tags"] = tags

    return Message(
        descriptor=descriptor,
        authorization=_authorize(
            keyring,
            descriptor,
            record_id=existing.record_id,
            context_id=existing.context_id,
            protocol_role=protocol_role,
            delegated_grant=delegated_grant,
            permission_grant_id=permission_grant_id,
        ),
        record_id=existing.record_id,
        context_id=existing.context_id,
        encoded_data=encoded,
    )


def create_records_delete(
    keyring: Any,
    record_id: str,
    *,
    prune: bool = False,
    message_timestamp: Optional[str] = None,
    protocol_role: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
) -> Message:
    descriptor = {
        "interface": Interface.RECORDS.value,
        "method": Method.DELETE.value,
        "recordId": record_id,
        "prune": prune,
        "messageTimestamp": message_timestamp or now_timestamp(),
    }
    return Message(
        descriptor=descriptor,
        authorization=_authorize(
            keyring,
            descriptor,
            protocol_role=protocol_role,
            delegated_grant=delegated_grant,
            permission_grant_id=permission_grant_id,
        ),
    )


def create_records_read(
    keyring: Optional[Any],
    record_id: str,
    *,
    message_timestamp: Optional[str] = None,
    protocol_role: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
) -> Message:
    """Build a Records.Read; `keyring=None` gives an anonymous read."""
    descriptor = {
        "interface": Interface.RECORDS.value,
        "method": Method.READ.value,
        "filter": {"recordId": record_id},
        "messageTimestamp": message_timestamp or now_timestamp(),
    }
    if keyring is None:
        return Message(descriptor=descriptor)
    return Message(
        descriptor=descriptor,
        authorization=_authorize(
            keyring,
            descriptor,
            protocol_role=protocol_role,
            delegated_grant=delegated_grant,
            permission_grant_id=permission_grant_id,
        ),
    )


def create_records_query(
    keyring: Optional[Any],
    filter: Dict[str, Any],
    *,
    method: Method = Method.QUERY,
    date_sort: Optional[str] = None,
    message_timestamp: Optional[str] = None,
    protocol_role: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
) -> Message:
    """Build a Records.Query (or Records.Subscribe with `method=Method.SUBSCRIBE`)."""
    if method not in (Method.QUERY, Method.SUBSCRIBE):
        raise ValueError("method must be Query or Subscribe")
    flt = dict(filter)
    if flt.get("protocol"):
        flt["protocol"] = clean_url(flt["protocol"])
    descriptor = omit_none({
        "interface": Interface.RECORDS.value,
        "method": method.value,
        "filter": flt,
        "dateSort": date_sort,
        "messageTimestamp": message_timestamp or now_timestamp(),
    })
    if keyring is None:
        return Message(descriptor=descriptor)
    return Message(
        descriptor=descriptor,
        authorization=_authorize(
            keyring,
            descriptor,
            protocol_role=protocol_role,
            delegated_grant=delegated_grant,
            permission_grant_id=permission_grant_id,
        ),
    )


def create_protocols_configure(
    keyring: Any,
    definition: Mapping[str, Any],
    *,
    message_timestamp: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
    permission_grant_id: Optional[str] = None,
) -> Message:
    defn = dict(definition)
    defn["protocol"] = clean_url(defn.get("protocol", ""))
    descriptor = {
        "interface": Interface.PROTOCOLS.value,
        "method": Method.CONFIGURE.value,
        "definition": defn,
        "messageTimestamp": message_timestamp or now_timestamp(),
    }
    return Message(
        descriptor=descriptor,
        authorization=_authorize(
            keyring,
            descriptor,
            delegated_grant=delegated_grant,
            permission_grant_id=permission_grant_id,
        ),
    )


def create_protocols_query(
    keyring: Optional[Any],
    protocol: Optional[str] = None,
    *,
    message_timestamp: Optional[str] = None,
) -> Message:
    descriptor: Dict[str, Any] = {
        "interface": Interface.PROTOCOLS.value,
        "method": Method.QUERY.value,
        "messageTimestamp": message_timestamp or now_timestamp(),
    }
    if protocol:
        descriptor["filter"] = {"protocol": clean_url(protocol)}
    if keyring is None:
        return Message(descriptor=descriptor)
    return Message(descriptor=descriptor, authorization=_authorize(keyring, descriptor))


def create_permissions_request(
    keyring: Any,
    scope: Mapping[str, Any],
    *,
    description: Optional[str] = None,
    delegated: Optional[bool] = None,
    message_timestamp: Optional[str] = None,
) -> Message:
    descriptor = omit_none({
        "interface": Interface.PERMISSIONS.value,
        "method": Method.REQUEST.value,
        "scope": dict(scope),
        "description": description,
        "delegated": delegated,
        "messageTimestamp": message_timestamp or now_timestamp(),
    })
    return Message(descriptor=descriptor, authorization=_authorize(keyring, descriptor))


def create_permissions_revoke(
    keyring: Any,
    grant_id: str,
    *,
    description: Optional[str] = None,
    message_timestamp: Optional[str] = None,
) -> Message:
    descriptor = omit_none({
        "interface": Interface.PERMISSIONS.value,
        "method": Method.REVOKE.value,
        "permissionGrantId": grant_id,
        "description": description,
        "messageTimestamp": message_timestamp or now_timestamp(),
    })
    return Message(descriptor=descriptor, authorization=_authorize(keyring, descriptor))


def message_from_json(text: str) -> Message:
    try:
        obj = json.loads(text)
    except ValueError as ex:
        raise MalformedDescriptor("Message is not valid JSON") from ex
    return Message.from_dict(obj)


__all__: List[str] = [
    "Interface",
    "Method",
    "SignaturePayload",
    "Authorization",
    "Message",
    "create_records_write",
    "update_records_write",
    "create_records_delete",
    "create_records_read",
    "create_records_query",
    "create_protocols_configure",
    "create_protocols_query",
    "create_permissions_request",
    "create_permissions_revoke",
    "message_from_json",
]
