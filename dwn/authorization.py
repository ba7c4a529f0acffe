"""Authorization orchestrator.

`Authorizer.authorize` turns one inbound message into a `Decision` for the
node's tenant (its owner DID):

    1. shape       bundled JSON schema for the interface/method
    2. integrity   descriptor CID, record/context id binding, data CID/size,
                   record id derivation or immutable fields of an update
    3. actor       signatures and grant chain (`dwn.permissions`)
    4. method      owner bypass, stored permission grants, protocol rules

Every check raises the most specific `DwnError` at the point of failure; the
orchestrator converts it into `Decision.reject` exactly once, logs it and, for
security-relevant failures, appends it to the audit chain. `StoreError`
propagates to the caller untouched so it can retry the whole authorization.

The engine keeps no state between calls; the store and DID resolver are the
only suspension points.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from dwn import rules
from dwn.config import EngineConfig
from dwn.core import clean_url
from dwn.did import DidKeyResolver, DidResolver
from dwn.errors import (
    ActionNotPermitted,
    DwnError,
    GrantNotFound,
    IntegrityViolation,
    MalformedAuthorization,
    MalformedDescriptor,
    ProtocolNotFound,
    ProtocolNotPublished,
    RecordNotFound,
)
from dwn.messages import Interface, Message, Method
from dwn.observability import (
    AuditLogger,
    DwnLayer,
    DwnLogger,
    correlation_id_var,
    generate_correlation_id,
    get_logger,
)
from dwn.permissions import EffectiveActor, Grant, GrantResolver
from dwn.protocols import (
    PERMISSIONS_PROTOCOL,
    Action,
    ProtocolDefinition,
    permissions_definition,
    verify_structure,
)
from dwn.schema import validate_message
from dwn.store import Record, RecordStore


IMMUTABLE_WRITE_FIELDS = ("protocol", "protocolPath", "schema", "parentId", "recipient", "dateCreated")


@dataclass(frozen=True)
class Decision:
    accepted: bool
    actor: Optional[EffectiveActor] = None
    error: Optional[DwnError] = None

    @classmethod
    def accept(cls, actor: EffectiveActor) -> "Decision":
        return cls(accepted=True, actor=actor)

    @classmethod
    def reject(cls, error: DwnError, actor: Optional[EffectiveActor] = None) -> "Decision":
        return cls(accepted=False, actor=actor, error=error)

    @property
    def reason(self) -> Optional[str]:
        return self.error.detail if self.error is not None else None

    @property
    def status_code(self) -> int:
        return 202 if self.accepted else self.error.status

    def to_reply(self, message: Union[Message, Mapping[str, Any], None]) -> Dict[str, Any]:
        """Reply body: status plus the echoed descriptor."""
        if isinstance(message, Message):
            descriptor = message.descriptor
        elif isinstance(message, Mapping):
            descriptor = message.get("descriptor")
        else:
            descriptor = None
        return {
            "status": {"code": self.status_code, "detail": "Accepted" if self.accepted else self.reason},
            "descriptor": descriptor,
        }


class Authorizer:
    """Authorizes messages addressed to one tenant."""

    def __init__(
        self,
        tenant: str,
        store: RecordStore,
        resolver: Optional[DidResolver] = None,
        config: Optional[EngineConfig] = None,
        logger: Optional[DwnLogger] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.tenant = tenant
        self.store = store
        self.resolver = resolver or DidKeyResolver()
        self.config = config or EngineConfig()
        self.grants = GrantResolver(self.resolver, store, tenant, self.config)

        obs = self.config.observability
        self.logger = logger or get_logger("authorizer", DwnLayer.AUTHORIZATION, obs.log_level.get(), obs.log_format.get())
        if audit is None and obs.audit_rejections.get():
            audit = AuditLogger(max_entries=obs.audit_max_entries.get())
        self.audit = audit

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def authorize_wire(
        self,
        wire: Mapping[str, Any],
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]] = None,
        ancestry: Optional[Sequence[Record]] = None,
        data: Optional[bytes] = None,
    ) -> Decision:
        """Authorize a message in wire (JSON object) form."""
        try:
            validate_message(wire)
            message = Message.from_dict(wire)
        except DwnError as ex:
            return self._reject(None, ex, None)
        return await self.authorize(message, definition, ancestry, data)

    async def authorize(
        self,
        message: Message,
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]] = None,
        ancestry: Optional[Sequence[Record]] = None,
        data: Optional[bytes] = None,
    ) -> Decision:
        """Decide whether `message` may be applied to this tenant's node.

        `definition` and `ancestry` may be supplied by callers that already
        hold them; otherwise they are fetched from the store.
        """
        token = correlation_id_var.set(generate_correlation_id())
        actor: Optional[EffectiveActor] = None
        try:
            try:
                validate_message(message.to_dict())
                message.verify_integrity(data)
                target = await self._load_target(message)
                if message.is_a(Interface.RECORDS, Method.WRITE):
                    self._check_record_identity(message, target)
                actor = await self.grants.resolve_effective_signer(message, target)
                await self._authorize_method(message, actor, target, definition, ancestry)
            except DwnError as ex:
                return self._reject(message, ex, actor)

            self.logger.info(
                "Message accepted",
                operation="authorize",
                kind=message.kind,
                actor=actor.did,
                signer=actor.signer,
                record_id=message.record_id or message.target_record_id,
            )
            return Decision.accept(actor)
        finally:
            correlation_id_var.reset(token)

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    async def _load_target(self, message: Message) -> Optional[Record]:
        """Stored record a message addresses, if any."""
        if message.is_a(Interface.RECORDS, Method.WRITE):
            return await self.store.get_record(message.record_id)
        if message.interface == Interface.RECORDS.value and message.method in (Method.DELETE.value, Method.READ.value):
            return await self.store.get_record(message.target_record_id)
        return None

    @staticmethod
    def _check_record_identity(message: Message, stored: Optional[Record]) -> None:
        if message.is_initial_write():
            return
        if stored is None:
            raise IntegrityViolation("recordId does not derive from the descriptor and no initial write exists")
        initial = stored.initial_write
        for name in IMMUTABLE_WRITE_FIELDS:
            if initial.descriptor.get(name) != message.descriptor.get(name):
                raise IntegrityViolation(f"{name} cannot change after the initial write", field=name)
        if message.context_id != initial.context_id:
            raise IntegrityViolation("contextId cannot change after the initial write")

    # ------------------------------------------------------------------
    # Method dispatch
    # ------------------------------------------------------------------

    def _is_owner(self, actor: EffectiveActor) -> bool:
        return actor.did is not None and actor.did == self.tenant

    async def _authorize_method(
        self,
        message: Message,
        actor: EffectiveActor,
        target: Optional[Record],
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
        ancestry: Optional[Sequence[Record]],
    ) -> None:
        interface, method = message.interface, message.method

        if interface == Interface.RECORDS.value:
            if method == Method.WRITE.value:
                await self._authorize_records_write(message, actor, target, definition, ancestry)
            elif method == Method.DELETE.value:
                await self._authorize_records_delete(message, actor, target, definition, ancestry)
            elif method == Method.READ.value:
                await self._authorize_records_read(message, actor, target, definition, ancestry)
            else:
                await self._authorize_records_query(message, actor, definition)
        elif interface == Interface.PROTOCOLS.value:
            if method == Method.CONFIGURE.value:
                await self._authorize_protocols_configure(message, actor)
        elif interface == Interface.PERMISSIONS.value:
            if method == Method.REVOKE.value:
                await self._authorize_permissions_revoke(message, actor)
            elif actor.is_anonymous:
                raise MalformedAuthorization("Permission requests must be signed")
        else:
            raise MalformedDescriptor(f"Unsupported interface {interface}")

    async def _permission_grant(
        self,
        message: Message,
        actor: EffectiveActor,
        target: Optional[Record],
    ) -> Optional[Grant]:
        if actor.is_anonymous or not message.permission_grant_id:
            return None
        return await self.grants.resolve_permission_grant(message, actor, target)

    async def _definition(
        self,
        protocol: str,
        supplied: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
    ) -> ProtocolDefinition:
        uri = clean_url(protocol)
        if supplied is not None:
            if not isinstance(supplied, ProtocolDefinition):
                supplied = ProtocolDefinition.from_dict(supplied)
            if supplied.protocol == uri:
                return supplied
        if uri == PERMISSIONS_PROTOCOL:
            return permissions_definition()
        found = await self.store.get_protocol_definition(uri)
        if found is None:
            raise ProtocolNotFound(f"No protocol definition installed for {uri}", protocol=uri)
        return found

    async def _ancestors(self, context_id: Optional[str], supplied: Optional[Sequence[Record]]) -> Sequence[Record]:
        """Stored parent chain of the record at `context_id`, root first."""
        if supplied is not None:
            return list(supplied)
        if not context_id or "/" not in context_id:
            return []
        return await self.store.get_ancestors(context_id.rsplit("/", 1)[0])

    async def _role_records(
        self,
        definition: ProtocolDefinition,
        actor: EffectiveActor,
        context_id: Optional[str],
    ) -> Sequence[Record]:
        if actor.protocol_role is None or actor.is_anonymous:
            return []
        rules.verify_invoked_role(definition, actor.protocol_role, context_id)
        return await self.store.get_role_records(definition.protocol, actor.protocol_role, actor.did)

    def _rule_settings(self) -> Dict[str, Any]:
        return {"role_inheritance": self.config.authorization.role_inheritance.get()}

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def _authorize_records_write(
        self,
        message: Message,
        actor: EffectiveActor,
        stored: Optional[Record],
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
        ancestry: Optional[Sequence[Record]],
    ) -> None:
        if stored is not None and stored.is_deleted:
            raise RecordNotFound(f"Record {message.record_id} has been deleted", record_id=message.record_id)

        owner = self._is_owner(actor)
        grant = None if owner else await self._permission_grant(message, actor, stored)

        if not message.protocol:
            if owner or grant is not None:
                return
            raise ActionNotPermitted(actions=rules.allowed_actions(message, stored, actor), actor=actor.did)

        defn = await self._definition(message.protocol, definition)
        enforce = self.config.authorization.enforce_protocol_publication.get()
        if enforce and not defn.published and not owner and grant is None:
            raise ProtocolNotPublished(f"{defn.protocol} is not published", protocol=defn.protocol)

        parents = await self._ancestors(message.context_id, ancestry)
        path = message.protocol_path
        existing_roles: Sequence[Record] = []
        rule_set = defn.rule_set(path)
        if rule_set is not None and rule_set.role and message.recipient:
            existing_roles = await self.store.get_role_records(defn.protocol, path, message.recipient)
        rules.verify_write_structure(
            defn,
            message,
            parents,
            existing_role_records=existing_roles,
            max_depth=self.config.authorization.max_record_depth.get(),
        )

        if owner or grant is not None:
            return

        role_records = await self._role_records(defn, actor, message.context_id)
        rules.authorize(
            defn,
            rules.allowed_actions(message, stored, actor),
            actor,
            path,
            parents,
            target=stored if stored is not None else message,
            role_records=role_records,
            **self._rule_settings(),
        )

    async def _authorize_records_delete(
        self,
        message: Message,
        actor: EffectiveActor,
        target: Optional[Record],
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
        ancestry: Optional[Sequence[Record]],
    ) -> None:
        if target is None or target.is_deleted:
            raise RecordNotFound(f"Record {message.target_record_id} not found", record_id=message.target_record_id)
        if self._is_owner(actor) or await self._permission_grant(message, actor, target) is not None:
            return

        actions = rules.allowed_actions(message, target, actor)
        if not target.protocol:
            raise ActionNotPermitted(actions=actions, actor=actor.did)

        defn = await self._definition(target.protocol, definition)
        parents = await self._ancestors(target.context_id, ancestry)
        role_records = await self._role_records(defn, actor, target.context_id)
        rules.authorize(
            defn,
            actions,
            actor,
            target.protocol_path,
            parents,
            target=target,
            role_records=role_records,
            **self._rule_settings(),
        )

    async def _authorize_records_read(
        self,
        message: Message,
        actor: EffectiveActor,
        target: Optional[Record],
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
        ancestry: Optional[Sequence[Record]],
    ) -> None:
        if target is None or target.is_deleted:
            raise RecordNotFound(f"Record {message.target_record_id} not found", record_id=message.target_record_id)
        if self._is_owner(actor) or target.published:
            return
        if actor.did is not None and actor.did in (target.author, target.recipient):
            return
        if await self._permission_grant(message, actor, target) is not None:
            return

        if not target.protocol:
            raise ActionNotPermitted(actions=[Action.READ], actor=actor.did)

        defn = await self._definition(target.protocol, definition)
        parents = await self._ancestors(target.context_id, ancestry)
        role_records = await self._role_records(defn, actor, target.context_id)
        rules.authorize(
            defn,
            [Action.READ],
            actor,
            target.protocol_path,
            parents,
            target=target,
            role_records=role_records,
            **self._rule_settings(),
        )

    async def _authorize_records_query(
        self,
        message: Message,
        actor: EffectiveActor,
        definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
    ) -> None:
        """Only role-invoking queries are rule-checked; the store filters the rest."""
        if self._is_owner(actor):
            return
        if await self._permission_grant(message, actor, None) is not None:
            return
        if actor.protocol_role is None:
            return

        flt = message.filter
        if not flt.get("protocol") or not flt.get("protocolPath"):
            raise MalformedDescriptor("Role-authorized queries require filter.protocol and filter.protocolPath")

        defn = await self._definition(flt["protocol"], definition)
        context_id = flt.get("contextId")
        lineage = await self.store.get_ancestors(context_id) if context_id else []
        role_records = await self._role_records(defn, actor, context_id)
        rules.authorize(
            defn,
            rules.allowed_actions(message, None, actor),
            actor,
            flt["protocolPath"],
            lineage,
            role_records=role_records,
            **self._rule_settings(),
        )

    # ------------------------------------------------------------------
    # Protocols / Permissions
    # ------------------------------------------------------------------

    async def _authorize_protocols_configure(self, message: Message, actor: EffectiveActor) -> None:
        defn = ProtocolDefinition.from_dict(message.descriptor.get("definition"))
        if defn.protocol == PERMISSIONS_PROTOCOL:
            raise MalformedDescriptor(f"{PERMISSIONS_PROTOCOL} is built in and cannot be configured")
        verify_structure(defn, self.config.authorization.max_record_depth.get())
        if self._is_owner(actor) or await self._permission_grant(message, actor, None) is not None:
            return
        raise ActionNotPermitted(actions=["configure"], actor=actor.did)

    async def _authorize_permissions_revoke(self, message: Message, actor: EffectiveActor) -> None:
        grant_id = message.descriptor.get("permissionGrantId")
        record = await self.store.get_record(grant_id)
        if record is None:
            raise GrantNotFound(f"Grant {grant_id} not found", grant_id=grant_id)
        grant = Grant.from_message(record.initial_write)
        if actor.did is not None and actor.did in (self.tenant, grant.grantor):
            return
        raise ActionNotPermitted(actions=["revoke"], actor=actor.did)

    # ------------------------------------------------------------------
    # Rejection
    # ------------------------------------------------------------------

    def _reject(
        self,
        message: Optional[Message],
        error: DwnError,
        actor: Optional[EffectiveActor],
    ) -> Decision:
        kind = message.kind if message is not None else "unknown"
        resource = ""
        if message is not None:
            resource = message.record_id or message.target_record_id or ""
        actor_did = actor.did if actor is not None else None

        self.logger.warning(
            "Message rejected",
            error_code=error.code,
            operation="authorize",
            kind=kind,
            status=error.status,
            reason=error.message,
            actor=actor_did,
            record_id=resource,
        )
        if self.audit is not None and error.security_relevant:
            self.audit.log(
                self.tenant,
                actor_did,
                message.interface if message is not None else "",
                message.method if message is not None else "",
                resource,
                "rejected",
                error_code=error.code,
                reason=error.message,
            )
        return Decision.reject(error, actor)


async def authorize_message(
    message: Message,
    definition: Optional[Union[ProtocolDefinition, Mapping[str, Any]]],
    ancestry: Optional[Sequence[Record]],
    store: RecordStore,
    *,
    tenant: str,
    resolver: Optional[DidResolver] = None,
    config: Optional[EngineConfig] = None,
) -> Decision:
    """One-shot authorization without keeping an `Authorizer` around."""
    return await Authorizer(tenant, store, resolver, config).authorize(message, definition, ancestry)
