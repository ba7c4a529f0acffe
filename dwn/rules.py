"""Protocol rule evaluation.

`authorize` walks the action rules at a protocol path in declaration order
and returns the first rule that grants one of the requested actions to the
actor. Rules are permissive: there is no deny rule, and a request is refused
only when nothing matches.

When the actor invokes a role (`protocolRole` in the signature payload) only
`anyone` and role rules are considered; author/recipient rules apply to
requests made on the actor's own behalf.

`verify_write_structure` checks that a protocol Records.Write fits the tree
before any rule is evaluated: the path exists, the parent chain mirrors the
path, the type's schema/dataFormats, `$size`, `$tags` and role-record
uniqueness.
"""

from __future__ import annotations

from typing import Any, FrozenSet, Iterable, Optional, Sequence

from jsonschema import Draft202012Validator

from dwn.cid import derive_context_id
from dwn.errors import (
    ActionNotPermitted,
    IntegrityViolation,
    MalformedAuthorization,
    MalformedDescriptor,
    UnknownProtocolPath,
)
from dwn.messages import Interface, Message, Method
from dwn.protocols import (
    MAX_NESTING_DEPTH,
    Action,
    ActionRule,
    Anyone,
    ProtocolDefinition,
    Role,
    RuleContext,
    RuleSet,
)


def allowed_actions(message: Message, target: Optional[Any], actor: Any) -> FrozenSet[Action]:
    """Actions a message asks for.

    `target` is the stored record a Write updates or a Delete removes.
    """
    method = message.method
    if method == Method.WRITE.value:
        if message.is_initial_write():
            return frozenset({Action.CREATE})
        if target is not None and actor.did is not None and target.author == actor.did:
            return frozenset({Action.UPDATE, Action.CO_UPDATE})
        return frozenset({Action.CO_UPDATE})
    if method == Method.DELETE.value:
        is_author = target is not None and actor.did is not None and target.author == actor.did
        if message.descriptor.get("prune"):
            return frozenset({Action.PRUNE, Action.CO_PRUNE} if is_author else {Action.CO_PRUNE})
        return frozenset({Action.DELETE, Action.CO_DELETE} if is_author else {Action.CO_DELETE})
    if method == Method.READ.value:
        return frozenset({Action.READ})
    if method == Method.QUERY.value:
        return frozenset({Action.QUERY})
    if method == Method.SUBSCRIBE.value:
        return frozenset({Action.SUBSCRIBE})
    raise MalformedDescriptor(f"{message.kind} is not governed by protocol rules")


def authorize(
    definition: ProtocolDefinition,
    actions: Iterable[Action],
    actor: Any,
    target_path: Optional[str],
    ancestry: Sequence[Any],
    *,
    target: Optional[Any] = None,
    role_records: Sequence[Any] = (),
    role_inheritance: str = "transitive",
) -> ActionRule:
    """Return the first action rule at `target_path` permitting `actions` to `actor`.

    Raises UnknownProtocolPath when the path is not in the definition and
    ActionNotPermitted when no rule matches.
    """
    rule_set = definition.rule_set(target_path)
    if rule_set is None:
        raise UnknownProtocolPath(f"No rule set at '{target_path}' in {definition.protocol}", path=target_path)

    requested = frozenset(actions)
    ctx = RuleContext(
        ancestry=tuple(ancestry),
        # A record being created is not yet part of its own lineage.
        target=target if Action.CREATE not in requested else None,
        role_records=tuple(role_records),
        role_inheritance=role_inheritance,
    )

    for rule in rule_set.actions:
        if not rule.can & requested:
            continue
        if actor.protocol_role is not None and not isinstance(rule.who, (Anyone, Role)):
            continue
        if rule.who.matches(actor, ctx):
            return rule

    raise ActionNotPermitted(actions=requested, actor=actor.did, path=target_path)


def verify_invoked_role(definition: ProtocolDefinition, role: str, context_id: Optional[str]) -> RuleSet:
    """Check a `protocolRole` names a role path usable in this context."""
    rule_set = definition.rule_set(role)
    if rule_set is None:
        raise UnknownProtocolPath(f"Invoked role '{role}' is not in {definition.protocol}", path=role)
    if not rule_set.role:
        raise MalformedAuthorization(f"Protocol path '{role}' is not a role")
    if "/" in role and not context_id:
        raise MalformedDescriptor(f"Context role '{role}' requires a contextId")
    return rule_set


def verify_ancestry(message: Message, ancestry: Sequence[Any]) -> None:
    """The stored parent chain of a protocol record mirrors its protocol path."""
    segments = (message.protocol_path or "").split("/")
    if len(ancestry) != len(segments) - 1:
        raise IntegrityViolation(
            f"Expected {len(segments) - 1} ancestors for '{message.protocol_path}', found {len(ancestry)}"
        )
    for i, record in enumerate(ancestry):
        expected = "/".join(segments[: i + 1])
        if getattr(record, "is_deleted", False):
            raise IntegrityViolation(f"Ancestor {record.record_id} has been deleted")
        if record.protocol_path != expected:
            raise IntegrityViolation(f"Ancestor at depth {i} has path '{record.protocol_path}', expected '{expected}'")
        if record.protocol != message.protocol:
            raise IntegrityViolation(f"Ancestor {record.record_id} belongs to another protocol")
        if i > 0 and record.context_id != derive_context_id(ancestry[i - 1].context_id, record.record_id):
            raise IntegrityViolation(f"Ancestor {record.record_id} contextId does not chain")

    if ancestry:
        parent = ancestry[-1]
        if message.parent_id != parent.record_id:
            raise IntegrityViolation("parentId does not name the parent record")
        if message.context_id != derive_context_id(parent.context_id, message.record_id):
            raise IntegrityViolation("contextId does not extend the parent contextId")
    else:
        if message.parent_id is not None:
            raise IntegrityViolation(f"Root path '{message.protocol_path}' cannot have a parent")
        if message.context_id != message.record_id:
            raise IntegrityViolation("Root record contextId must equal its recordId")


def verify_write_structure(
    definition: ProtocolDefinition,
    message: Message,
    ancestry: Sequence[Any],
    *,
    existing_role_records: Sequence[Any] = (),
    max_depth: int = MAX_NESTING_DEPTH,
) -> RuleSet:
    """Validate a protocol Records.Write against the definition's tree."""
    if not message.is_a(Interface.RECORDS, Method.WRITE):
        raise MalformedDescriptor(f"Expected RecordsWrite, got {message.kind}")
    path = message.protocol_path
    if not path:
        raise MalformedDescriptor("Protocol records require protocolPath")
    if path.count("/") + 1 > max_depth:
        raise MalformedDescriptor(f"Record nesting depth exceeds {max_depth}")

    rule_set = definition.rule_set(path)
    if rule_set is None:
        raise UnknownProtocolPath(f"No rule set at '{path}' in {definition.protocol}", path=path)

    verify_ancestry(message, ancestry)

    type_name = path.rsplit("/", 1)[-1]
    protocol_type = definition.types.get(type_name)
    if protocol_type is None:
        raise MalformedDescriptor(f"Type '{type_name}' is not declared in {definition.protocol}")
    if protocol_type.schema and message.schema != protocol_type.schema:
        raise MalformedDescriptor(f"Type '{type_name}' requires schema {protocol_type.schema}")
    if protocol_type.data_formats is not None and message.descriptor.get("dataFormat") not in protocol_type.data_formats:
        raise MalformedDescriptor(f"dataFormat not allowed for type '{type_name}'")

    if rule_set.size is not None and not rule_set.size.contains(message.data_size or 0):
        raise MalformedDescriptor(f"dataSize {message.data_size} outside $size for '{path}'")

    schema = rule_set.tags_schema()
    if schema is not None:
        errors = sorted(Draft202012Validator(schema).iter_errors(message.descriptor.get("tags") or {}), key=lambda e: list(e.path))
        if errors:
            raise MalformedDescriptor(f"tags do not match $tags at '{path}': {errors[0].message}")

    if rule_set.role:
        if not message.recipient:
            raise MalformedDescriptor(f"Role record at '{path}' requires a recipient")
        parent_context = message.context_id.rsplit("/", 1)[0] if "/" in (message.context_id or "") else None
        for other in existing_role_records:
            if other.record_id == message.record_id or other.recipient != message.recipient:
                continue
            other_parent = other.context_id.rsplit("/", 1)[0] if "/" in (other.context_id or "") else None
            if other_parent == parent_context:
                raise MalformedDescriptor(f"{message.recipient} already holds role '{path}' in this context")

    return rule_set
