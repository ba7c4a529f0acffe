"""Permission grants and effective-actor resolution.

A grant is an ordinary Records.Write in the built-in permissions protocol
(path `grant`). Its data is JSON:

    {
      "grantedTo": "did:key:...",     # delegate
      "grantedBy": "did:key:...",     # grantor, the grant's author
      "dateExpires": "2026-01-01T00:00:00.000000Z",
      "delegated": true,              # may sign on the grantor's behalf
      "scope": {"interface": "Records", "method": "Write", "protocol": "..."},
      "conditions": {"publication": "required" | "prohibited"}
    }

Grants are used two ways:

- delegated: the grant message is embedded in the outer message's
  `authorization.authorDelegatedGrant`; the delegate signs and the message is
  authored by the grantor. Embedded grants may themselves be delegated, so
  resolution recurses, bounded by `authorization.max_grant_chain_depth`.
- stored: the signature payload names a `permissionGrantId`; the grant was
  issued by the tenant and is fetched from the store.

Validity is always judged at the outer message's `messageTimestamp`, never
at wall-clock time, so a decision can be reproduced later.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from dwn import jws
from dwn.config import EngineConfig
from dwn.core import clean_url, jcs_canonicalize, omit_none, parse_timestamp
from dwn.did import DidResolver, base_did
from dwn.errors import (
    GrantChainTooDeep,
    GrantExpired,
    GrantNotActive,
    GrantNotFound,
    GrantRevoked,
    GrantScopeMismatch,
    GrantSignerMismatch,
    IntegrityViolation,
    MalformedDescriptor,
)
from dwn.messages import Authorization, Interface, Message, Method, create_records_write
from dwn.protocols import GRANT_PATH, PERMISSIONS_PROTOCOL
from dwn.store import RecordStore


# =============================================================================
# SCOPE
# =============================================================================

@dataclass(frozen=True)
class Scope:
    interface: str
    method: str
    protocol: Optional[str] = None
    context_id: Optional[str] = None
    protocol_path: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Scope":
        if not isinstance(d, Mapping) or not d.get("interface") or not d.get("method"):
            raise MalformedDescriptor("Grant scope requires interface and method")
        if d.get("contextId") and d.get("protocolPath"):
            raise MalformedDescriptor("Grant scope cannot restrict both contextId and protocolPath")
        protocol = d.get("protocol")
        return cls(
            interface=d["interface"],
            method=d["method"],
            protocol=clean_url(protocol) if protocol else None,
            context_id=d.get("contextId"),
            protocol_path=d.get("protocolPath"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return omit_none({
            "interface": self.interface,
            "method": self.method,
            "protocol": self.protocol,
            "contextId": self.context_id,
            "protocolPath": self.protocol_path,
        })

    def covers(self, message: Message, target: Optional[Any] = None) -> bool:
        """True when the message falls inside this scope.

        `target` supplies protocol/context for messages that address a stored
        record (Delete, Read) instead of carrying them in the descriptor.
        """
        if message.interface != self.interface or message.method != self.method:
            return False

        if self.protocol is not None:
            protocol = message.protocol or (target.protocol if target is not None else None)
            if not protocol or clean_url(protocol) != self.protocol:
                return False

        if self.context_id is not None:
            context_id = (
                message.context_id
                or message.filter.get("contextId")
                or (target.context_id if target is not None else None)
            )
            if not context_id or not (
                context_id == self.context_id or context_id.startswith(self.context_id + "/")
            ):
                return False

        if self.protocol_path is not None:
            path = message.protocol_path or (target.protocol_path if target is not None else None)
            if path != self.protocol_path:
                return False

        return True

    def contains(self, other: "Scope") -> bool:
        """True when every message `other` covers is also covered here."""
        if other.interface != self.interface or other.method != self.method:
            return False
        if self.protocol is not None and other.protocol != self.protocol:
            return False
        if self.context_id is not None:
            context_id = other.context_id
            if not context_id or not (
                context_id == self.context_id or context_id.startswith(self.context_id + "/")
            ):
                return False
        if self.protocol_path is not None and other.protocol_path != self.protocol_path:
            return False
        return True


# =============================================================================
# GRANT
# =============================================================================

@dataclass(frozen=True)
class Grant:
    id: str
    grantor: str
    grantee: str
    granted_by: str
    date_granted: str
    date_expires: str
    scope: Scope
    delegated: bool = False
    description: Optional[str] = None
    request_id: Optional[str] = None
    conditions: Dict[str, Any] = field(default_factory=dict)
    message: Optional[Message] = field(default=None, compare=False, repr=False)

    @classmethod
    def from_message(cls, message: Message) -> "Grant":
        if (
            not message.is_a(Interface.RECORDS, Method.WRITE)
            or message.protocol != PERMISSIONS_PROTOCOL
            or message.protocol_path != GRANT_PATH
        ):
            raise GrantNotFound(f"Message {message.record_id} is not a permission grant")
        raw = message.data()
        if raw is None:
            raise MalformedDescriptor(f"Grant {message.record_id} carries no data")
        try:
            data = json.loads(raw.decode("utf-8"))
        except ValueError as ex:
            raise MalformedDescriptor(f"Grant {message.record_id} data is not JSON") from ex
        if not isinstance(data, dict):
            raise MalformedDescriptor(f"Grant {message.record_id} data must be an object")

        for key in ("grantedTo", "grantedBy", "dateExpires", "scope"):
            if not data.get(key):
                raise MalformedDescriptor(f"Grant {message.record_id} is missing {key}")
        if not isinstance(data["dateExpires"], str):
            raise MalformedDescriptor("dateExpires must be a timestamp string")
        conditions = data.get("conditions") or {}
        if conditions.get("publication") not in (None, "required", "prohibited"):
            raise MalformedDescriptor("conditions.publication must be 'required' or 'prohibited'")

        return cls(
            id=message.record_id,
            grantor=message.author,
            grantee=data["grantedTo"],
            granted_by=data["grantedBy"],
            date_granted=message.date_created or message.message_timestamp,
            date_expires=data["dateExpires"],
            scope=Scope.from_dict(data["scope"]),
            delegated=bool(data.get("delegated", False)),
            description=data.get("description"),
            request_id=data.get("requestId"),
            conditions=dict(conditions),
            message=message,
        )

    def check_active(self, at: datetime) -> None:
        """Raise unless `at` is inside the grant window; a grant is still valid at exactly `dateExpires`."""
        if at < _parse(self.date_granted, "dateCreated"):
            raise GrantNotActive(f"Grant {self.id} is not active before {self.date_granted}", grant_id=self.id)
        if _parse(self.date_expires, "dateExpires") < at:
            raise GrantExpired(f"Grant {self.id} expired at {self.date_expires}", grant_id=self.id)

    def check_scope(self, message: Message, target: Optional[Any] = None) -> None:
        if not self.scope.covers(message, target):
            raise GrantScopeMismatch(
                f"Grant {self.id} scope {self.scope.interface}.{self.scope.method} does not cover {message.kind}",
                grant_id=self.id,
            )
        publication = self.conditions.get("publication")
        if publication and message.is_a(Interface.RECORDS, Method.WRITE):
            if publication == "required" and not message.published:
                raise GrantScopeMismatch(f"Grant {self.id} requires published records", grant_id=self.id)
            if publication == "prohibited" and message.published:
                raise GrantScopeMismatch(f"Grant {self.id} prohibits published records", grant_id=self.id)


def _parse(ts: str, name: str) -> datetime:
    try:
        return parse_timestamp(ts)
    except ValueError as ex:
        raise MalformedDescriptor(f"Invalid {name}: {ts!r}") from ex


def create_grant(
    keyring: Any,
    granted_to: str,
    scope: Mapping[str, Any],
    date_expires: str,
    *,
    delegated: bool = False,
    description: Optional[str] = None,
    request_id: Optional[str] = None,
    conditions: Optional[Dict[str, Any]] = None,
    message_timestamp: Optional[str] = None,
    delegated_grant: Optional[Message] = None,
) -> Message:
    """Issue a grant as a Records.Write in the permissions protocol."""
    grantor = delegated_grant.author if delegated_grant is not None else keyring.did
    data = omit_none({
        "grantedTo": granted_to,
        "grantedBy": grantor,
        "dateExpires": date_expires,
        "delegated": delegated or None,
        "description": description,
        "requestId": request_id,
        "conditions": conditions,
        "scope": dict(scope),
    })
    return create_records_write(
        keyring,
        data=jcs_canonicalize(data),
        protocol=PERMISSIONS_PROTOCOL,
        protocol_path=GRANT_PATH,
        recipient=granted_to,
        data_format="application/json",
        message_timestamp=message_timestamp,
        delegated_grant=delegated_grant,
    )


# =============================================================================
# EFFECTIVE ACTOR
# =============================================================================

@dataclass(frozen=True)
class EffectiveActor:
    """Who a message acts as.

    `did` is the logical author (the grantor for delegated messages, None for
    anonymous requests); `signer` is the DID whose key signed.
    """
    did: Optional[str]
    signer: Optional[str] = None
    key_id: Optional[str] = None
    grant: Optional[Grant] = None
    protocol_role: Optional[str] = None
    chain_depth: int = 0

    @classmethod
    def anonymous(cls) -> "EffectiveActor":
        return cls(did=None)

    @property
    def is_anonymous(self) -> bool:
        return self.did is None

    @property
    def is_delegate(self) -> bool:
        return self.grant is not None and self.signer != self.did


class GrantResolver:
    """Authenticates signatures and grant chains against a resolver and store."""

    def __init__(
        self,
        resolver: DidResolver,
        store: RecordStore,
        tenant: str,
        config: Optional[EngineConfig] = None,
    ):
        self.resolver = resolver
        self.store = store
        self.tenant = tenant
        self.config = config or EngineConfig()

    @property
    def max_chain_depth(self) -> int:
        return self.config.authorization.max_grant_chain_depth.get()

    async def verify_signatures(self, authorization: Authorization) -> None:
        keys = {}
        for kid in authorization.signature.key_ids():
            if kid not in keys:
                keys[kid] = await self.resolver.resolve_verification_key(kid)
        jws.verify(authorization.signature, keys)

    async def resolve_effective_signer(
        self,
        message: Message,
        target: Optional[Any] = None,
        depth: int = 0,
        outer: Optional[Message] = None,
    ) -> EffectiveActor:
        """Authenticate `message` and return the actor it speaks for.

        `outer` is the message that started the resolution. Every grant in a
        delegated chain must be active and unrevoked at its timestamp, and a
        re-delegated grant may only narrow the scope of the grant it was
        issued under.
        """
        auth = message.authorization
        if auth is None:
            return EffectiveActor.anonymous()

        payload = auth.payload()
        await self.verify_signatures(auth)

        grant_message = auth.author_delegated_grant
        if grant_message is None:
            return EffectiveActor(
                did=auth.signer,
                signer=auth.signer,
                key_id=auth.signer_key_id,
                protocol_role=payload.protocol_role,
            )

        if depth >= self.max_chain_depth:
            raise GrantChainTooDeep(f"Delegated grant chain exceeds {self.max_chain_depth}", depth=depth)

        grant_message.verify_integrity()
        grantor = await self.resolve_effective_signer(grant_message, depth=depth + 1, outer=outer or message)
        if not grant_message.is_initial_write():
            raise IntegrityViolation("Embedded grant recordId does not derive from its descriptor")

        grant = Grant.from_message(grant_message)
        if grant.granted_by != grantor.did:
            raise GrantSignerMismatch(f"Grant {grant.id} grantedBy is not its author", grant_id=grant.id)
        if grant.grantee != auth.signer:
            raise GrantSignerMismatch(
                f"Grant {grant.id} was issued to {grant.grantee}, not {auth.signer}", grant_id=grant.id
            )
        if not grant.delegated:
            raise GrantScopeMismatch(f"Grant {grant.id} does not allow delegation", grant_id=grant.id)
        if grantor.grant is not None:
            self.check_narrows(grantor.grant, grant)

        await self.check_grant(grant, message, target)
        if outer is not None:
            await self.check_validity(grant, outer)
        return EffectiveActor(
            did=grantor.did,
            signer=auth.signer,
            key_id=auth.signer_key_id,
            grant=grant,
            protocol_role=payload.protocol_role,
            chain_depth=grantor.chain_depth + 1,
        )

    async def resolve_permission_grant(
        self,
        message: Message,
        actor: EffectiveActor,
        target: Optional[Any] = None,
    ) -> Grant:
        """Fetch and check the stored grant named by `permissionGrantId`."""
        grant_id = message.permission_grant_id
        if not grant_id:
            raise GrantNotFound("Message does not reference a permission grant")
        record = await self.store.get_record(grant_id)
        if record is None or record.is_deleted:
            raise GrantNotFound(f"Grant {grant_id} not found", grant_id=grant_id)

        grant = Grant.from_message(record.initial_write)
        if grant.grantee != base_did(actor.signer or ""):
            raise GrantSignerMismatch(f"Grant {grant.id} was not issued to {actor.signer}", grant_id=grant.id)
        if grant.grantor != self.tenant or grant.granted_by != grant.grantor:
            raise GrantSignerMismatch(f"Grant {grant.id} was not issued by the tenant", grant_id=grant.id)

        await self.check_grant(grant, message, target)
        return grant

    async def check_grant(self, grant: Grant, message: Message, target: Optional[Any] = None) -> None:
        """Scope, validity window and revocation at the message timestamp."""
        grant.check_scope(message, target)
        await self.check_validity(grant, message)

    async def check_validity(self, grant: Grant, message: Message) -> None:
        grant.check_active(message.timestamp)
        revocation = await self.store.get_latest_revocation(grant.id, at=message.message_timestamp)
        if revocation is not None:
            raise GrantRevoked(
                f"Grant {grant.id} revoked at {revocation.message_timestamp}",
                grant_id=grant.id,
            )

    @staticmethod
    def check_narrows(parent: Grant, child: Grant) -> None:
        """A re-delegated grant stays inside the scope of the grant it was issued under."""
        if not parent.scope.contains(child.scope):
            raise GrantScopeMismatch(
                f"Grant {child.id} scope is broader than its issuing grant {parent.id}",
                grant_id=child.id,
            )
