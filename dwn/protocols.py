"""Protocol definitions.

A protocol definition describes an application's record tree:

    {
      "protocol": "https://example.com/chat",
      "published": true,
      "types": {"thread": {"schema": "...", "dataFormats": ["application/json"]}, ...},
      "structure": {
        "thread": {
          "$actions": [{"who": "anyone", "can": ["create"]}],
          "participant": {"$role": true, "$actions": [...]},
          "message": {
            "$actions": [{"role": "thread/participant", "can": ["create", "read", "query", "subscribe"]}],
            "$size": {"max": 1024}
          }
        }
      }
    }

Protocol paths are the slash-joined type names from the root
(`thread/message`). Each position carries a rule set:

    $actions  ordered action rules; a request is allowed if any rule allows it
    $role     records at this path are role records
    $size     min/max data size
    $tags     JSON schema for descriptor tags

Action rules name an actor with one of four closed variants (`Anyone`,
`Author`, `Recipient`, `Role`), each answering `matches(actor, context)`.
Evaluation lives in `dwn.rules`; this module holds the model and the
definition-time structural checks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from dwn.core import clean_url
from dwn.errors import MalformedDescriptor


PERMISSIONS_PROTOCOL = "https://tbd.website/dwn/permissions"
GRANT_PATH = "grant"
REQUEST_PATH = "request"
REVOCATION_PATH = "grant/revocation"

MAX_NESTING_DEPTH = 10

ROLE_INHERITANCE_MODES = ("transitive", "immediate")


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    PRUNE = "prune"
    QUERY = "query"
    SUBSCRIBE = "subscribe"
    CO_CREATE = "co-create"
    CO_UPDATE = "co-update"
    CO_DELETE = "co-delete"
    CO_PRUNE = "co-prune"

    @classmethod
    def parse(cls, value: Any) -> "Action":
        try:
            return cls(value)
        except ValueError as ex:
            raise MalformedDescriptor(f"Unknown action {value!r}") from ex


READ_LIKE = frozenset({Action.READ, Action.QUERY, Action.SUBSCRIBE})
RECIPIENT_WITHOUT_OF = frozenset({Action.CO_UPDATE, Action.CO_DELETE, Action.CO_PRUNE})


# =============================================================================
# RULE CONTEXT
# =============================================================================

@dataclass(frozen=True)
class RuleContext:
    """Everything an actor variant may look at.

    `ancestry` runs root first and excludes the target. Records are any
    objects exposing `protocol_path`, `author`, `recipient` and `context_id`
    (stored `dwn.store.Record`s or in-flight `dwn.messages.Message`s).
    """
    ancestry: Tuple[Any, ...] = ()
    target: Optional[Any] = None
    role_records: Tuple[Any, ...] = ()
    role_inheritance: str = "transitive"

    @property
    def lineage(self) -> Tuple[Any, ...]:
        if self.target is None:
            return self.ancestry
        return self.ancestry + (self.target,)

    def nearest(self, path: str) -> Optional[Any]:
        """Closest record in the lineage at `path`."""
        for record in reversed(self.lineage):
            if record.protocol_path == path:
                return record
        return None

    def role_scope(self) -> FrozenSet[str]:
        """Contexts a context-scoped role record may hang under."""
        if self.role_inheritance == "immediate":
            if self.ancestry:
                ctx = self.ancestry[-1].context_id
            else:
                ctx = self.target.context_id if self.target is not None else None
            return frozenset([ctx]) if ctx else frozenset()
        return frozenset(r.context_id for r in self.lineage if r.context_id)


# =============================================================================
# ACTOR VARIANTS
# =============================================================================

@dataclass(frozen=True)
class Anyone:
    def matches(self, actor: Any, ctx: RuleContext) -> bool:
        return True

    def key(self) -> Tuple[str, Optional[str]]:
        return ("anyone", None)

    def to_dict(self) -> Dict[str, Any]:
        return {"who": "anyone"}


@dataclass(frozen=True)
class Author:
    of: str

    def matches(self, actor: Any, ctx: RuleContext) -> bool:
        if actor.did is None:
            return False
        record = ctx.nearest(self.of)
        return record is not None and record.author == actor.did

    def key(self) -> Tuple[str, Optional[str]]:
        return ("author", self.of)

    def to_dict(self) -> Dict[str, Any]:
        return {"who": "author", "of": self.of}


@dataclass(frozen=True)
class Recipient:
    of: Optional[str] = None

    def matches(self, actor: Any, ctx: RuleContext) -> bool:
        if actor.did is None:
            return False
        record = ctx.nearest(self.of) if self.of else ctx.target
        return record is not None and record.recipient == actor.did

    def key(self) -> Tuple[str, Optional[str]]:
        return ("recipient", self.of)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"who": "recipient"}
        if self.of:
            d["of"] = self.of
        return d


@dataclass(frozen=True)
class Role:
    path: str

    def matches(self, actor: Any, ctx: RuleContext) -> bool:
        if actor.did is None or actor.protocol_role != self.path:
            return False
        scope = None if "/" not in self.path else ctx.role_scope()
        for record in ctx.role_records:
            if record.protocol_path != self.path or record.recipient != actor.did:
                continue
            if scope is None:
                return True
            parent_context = (record.context_id or "").rsplit("/", 1)[0]
            if parent_context in scope:
                return True
        return False

    def key(self) -> Tuple[str, Optional[str]]:
        return ("role", self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.path}


# =============================================================================
# MODEL
# =============================================================================

@dataclass(frozen=True)
class ActionRule:
    who: Any
    can: FrozenSet[Action]

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ActionRule":
        if not isinstance(d, Mapping):
            raise MalformedDescriptor("Action rule must be an object")
        can = d.get("can")
        if not isinstance(can, list) or not can:
            raise MalformedDescriptor("Action rule requires a non-empty 'can' list")
        actions = frozenset(Action.parse(a) for a in can)

        who = d.get("who")
        of = d.get("of")
        role = d.get("role")
        if role is not None:
            if who is not None:
                raise MalformedDescriptor("Action rule cannot set both 'who' and 'role'")
            return cls(who=Role(str(role)), can=actions)
        if who == "anyone":
            if of is not None:
                raise MalformedDescriptor("'of' must not be set when 'who' is 'anyone'")
            return cls(who=Anyone(), can=actions)
        if who == "author":
            if not of:
                raise MalformedDescriptor("'of' must be set when 'who' is 'author'")
            return cls(who=Author(str(of)), can=actions)
        if who == "recipient":
            return cls(who=Recipient(str(of) if of else None), can=actions)
        if isinstance(who, str) and who:
            return cls(who=Role(who), can=actions)
        raise MalformedDescriptor("Action rule requires 'who' or 'role'")

    def to_dict(self) -> Dict[str, Any]:
        d = self.who.to_dict()
        d["can"] = sorted(a.value for a in self.can)
        return d


@dataclass(frozen=True)
class SizeRange:
    min: Optional[int] = None
    max: Optional[int] = None

    def contains(self, size: int) -> bool:
        if self.min is not None and size < self.min:
            return False
        if self.max is not None and size > self.max:
            return False
        return True


@dataclass(frozen=True)
class RuleSet:
    actions: Tuple[ActionRule, ...] = ()
    role: bool = False
    size: Optional[SizeRange] = None
    tags: Optional[Dict[str, Any]] = None
    children: Dict[str, "RuleSet"] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], path: str = "") -> "RuleSet":
        if not isinstance(d, Mapping):
            raise MalformedDescriptor(f"Rule set at '{path}' must be an object")
        actions = d.get("$actions") or []
        if not isinstance(actions, list):
            raise MalformedDescriptor(f"$actions at '{path}' must be a list")
        size = d.get("$size")
        if size is not None:
            if not isinstance(size, Mapping) or any(
                v is not None and (not isinstance(v, int) or isinstance(v, bool) or v < 0)
                for v in (size.get("min"), size.get("max"))
            ):
                raise MalformedDescriptor(f"$size at '{path}' must hold non-negative integers")
            size = SizeRange(min=size.get("min"), max=size.get("max"))
        tags = d.get("$tags")
        if tags is not None and not isinstance(tags, dict):
            raise MalformedDescriptor(f"$tags at '{path}' must be an object")

        children: Dict[str, RuleSet] = {}
        for name, sub in d.items():
            if name.startswith("$"):
                if name not in ("$actions", "$role", "$size", "$tags"):
                    raise MalformedDescriptor(f"Unknown rule set directive {name} at '{path}'")
                continue
            children[name] = cls.from_dict(sub, f"{path}/{name}" if path else name)

        return cls(
            actions=tuple(ActionRule.from_dict(a) for a in actions),
            role=bool(d.get("$role", False)),
            size=size,
            tags=tags,
            children=children,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.actions:
            d["$actions"] = [a.to_dict() for a in self.actions]
        if self.role:
            d["$role"] = True
        if self.size is not None:
            d["$size"] = {k: v for k, v in (("min", self.size.min), ("max", self.size.max)) if v is not None}
        if self.tags is not None:
            d["$tags"] = self.tags
        for name, child in self.children.items():
            d[name] = child.to_dict()
        return d

    def tags_schema(self) -> Optional[Dict[str, Any]]:
        """JSON schema for descriptor tags built from `$tags`."""
        if self.tags is None:
            return None
        properties = {k: v for k, v in self.tags.items() if not k.startswith("$")}
        return {
            "type": "object",
            "properties": properties,
            "required": list(self.tags.get("$requiredTags") or []),
            "additionalProperties": bool(self.tags.get("$allowUndefinedTags", False)),
        }


@dataclass(frozen=True)
class ProtocolType:
    schema: Optional[str] = None
    data_formats: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ProtocolType":
        if not isinstance(d, Mapping):
            raise MalformedDescriptor("Protocol type must be an object")
        formats = d.get("dataFormats")
        if formats is not None and (not isinstance(formats, list) or not all(isinstance(f, str) for f in formats)):
            raise MalformedDescriptor("dataFormats must be a list of strings")
        schema = d.get("schema")
        return cls(
            schema=clean_url(schema) if schema else None,
            data_formats=tuple(formats) if formats is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.schema:
            d["schema"] = self.schema
        if self.data_formats is not None:
            d["dataFormats"] = list(self.data_formats)
        return d


@dataclass(frozen=True)
class ProtocolDefinition:
    protocol: str
    published: bool
    types: Dict[str, ProtocolType]
    structure: Dict[str, RuleSet]

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ProtocolDefinition":
        if not isinstance(d, Mapping):
            raise MalformedDescriptor("Protocol definition must be an object")
        protocol = d.get("protocol")
        if not isinstance(protocol, str) or not protocol:
            raise MalformedDescriptor("Protocol definition requires 'protocol'")
        types = d.get("types") or {}
        structure = d.get("structure") or {}
        if not isinstance(types, Mapping) or not isinstance(structure, Mapping):
            raise MalformedDescriptor("'types' and 'structure' must be objects")
        return cls(
            protocol=clean_url(protocol),
            published=bool(d.get("published", False)),
            types={name: ProtocolType.from_dict(t) for name, t in types.items()},
            structure={name: RuleSet.from_dict(rs, name) for name, rs in structure.items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "published": self.published,
            "types": {k: v.to_dict() for k, v in self.types.items()},
            "structure": {k: v.to_dict() for k, v in self.structure.items()},
        }

    def rule_set(self, path: Optional[str]) -> Optional[RuleSet]:
        """Rule set at a protocol path, or None when the path is not defined."""
        if not path:
            return None
        segments = path.split("/")
        current = self.structure.get(segments[0])
        for segment in segments[1:]:
            if current is None:
                return None
            current = current.children.get(segment)
        return current

    def role_paths(self) -> List[str]:
        return [p for p, rs in self.walk() if rs.role]

    def walk(self) -> List[Tuple[str, RuleSet]]:
        """All (path, rule set) pairs, parents before children."""
        out: List[Tuple[str, RuleSet]] = []

        def visit(prefix: str, children: Mapping[str, RuleSet]) -> None:
            for name, rs in children.items():
                path = f"{prefix}/{name}" if prefix else name
                out.append((path, rs))
                visit(path, rs.children)

        visit("", self.structure)
        return out


# =============================================================================
# DEFINITION VALIDATION
# =============================================================================

def verify_structure(definition: ProtocolDefinition, max_depth: int = MAX_NESTING_DEPTH) -> None:
    """Validate a definition before it is installed.

    Raises MalformedDescriptor describing the first problem found.
    """
    roles = set(definition.role_paths())

    for path, rule_set in definition.walk():
        name = path.rsplit("/", 1)[-1]
        depth = path.count("/") + 1
        if depth > max_depth:
            raise MalformedDescriptor(f"Record nesting depth exceeds {max_depth} at '{path}'")
        if name not in definition.types:
            raise MalformedDescriptor(f"Rule set '{name}' is not declared in types")

        if rule_set.size is not None:
            lo, hi = rule_set.size.min, rule_set.size.max
            if lo is not None and hi is not None and lo > hi:
                raise MalformedDescriptor(f"Invalid $size range at '{path}'")

        if rule_set.tags is not None:
            _verify_tags_schema(rule_set, path)

        _verify_action_rules(rule_set.actions, path, roles, definition)


def _verify_tags_schema(rule_set: RuleSet, path: str) -> None:
    tags = rule_set.tags or {}
    required = tags.get("$requiredTags")
    if required is not None and (not isinstance(required, list) or not all(isinstance(t, str) for t in required)):
        raise MalformedDescriptor(f"$requiredTags at '{path}' must be a list of tag names")
    try:
        Draft202012Validator.check_schema(rule_set.tags_schema())
    except SchemaError as ex:
        raise MalformedDescriptor(f"Invalid $tags schema at '{path}': {ex.message}") from ex


def _verify_action_rules(
    actions: Sequence[ActionRule],
    path: str,
    roles: set,
    definition: ProtocolDefinition,
) -> None:
    seen = set()
    for rule in actions:
        who = rule.who
        if isinstance(who, Role):
            if who.path not in roles:
                raise MalformedDescriptor(f"Role '{who.path}' used at '{path}' is not a $role path")
            if not READ_LIKE.issubset(rule.can):
                raise MalformedDescriptor(f"Role '{who.path}' at '{path}' must allow read, query and subscribe")
        if isinstance(who, (Author, Recipient)) and who.of is not None:
            if definition.rule_set(who.of) is None:
                raise MalformedDescriptor(f"'of' path '{who.of}' at '{path}' is not defined")
        if isinstance(who, Recipient) and who.of is None and not rule.can.issubset(RECIPIENT_WITHOUT_OF):
            raise MalformedDescriptor(
                f"Recipient rule without 'of' at '{path}' may only allow co-update, co-delete and co-prune"
            )
        if Action.UPDATE in rule.can and Action.CREATE not in rule.can:
            raise MalformedDescriptor(f"Rule at '{path}' allows 'update' without 'create'")
        if Action.DELETE in rule.can and Action.CREATE not in rule.can:
            raise MalformedDescriptor(f"Rule at '{path}' allows 'delete' without 'create'")

        key = who.key()
        if key in seen:
            raise MalformedDescriptor(f"Duplicate action rule for {key[0]} {key[1] or ''} at '{path}'".rstrip())
        seen.add(key)


# =============================================================================
# BUILT-IN PERMISSIONS PROTOCOL
# =============================================================================

def permissions_definition() -> ProtocolDefinition:
    """Definition of the built-in permissions protocol.

    Grants, requests and revocations are owner-only records: no action rules,
    so only the tenant (or a grant holder) may write them.
    """
    return ProtocolDefinition(
        protocol=PERMISSIONS_PROTOCOL,
        published=True,
        types={
            "request": ProtocolType(data_formats=("application/json",)),
            "grant": ProtocolType(data_formats=("application/json",)),
            "revocation": ProtocolType(data_formats=("application/json",)),
        },
        structure={
            "request": RuleSet(),
            "grant": RuleSet(children={"revocation": RuleSet()}),
        },
    )
