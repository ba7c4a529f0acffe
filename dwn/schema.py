"""JSON Schema validation.

Two validators live here:

- message shape validation: every interface/method pair has a bundled
  Draft 2020-12 schema under `dwn/schemas/`. Schemas reference shared
  definitions (`defs.json`) and, for embedded delegated grants, each other;
  `$ref`s resolve through a `referencing.Registry` built from the bundle.
- record data validation (`DataSchemaValidator`): schemas registered by URI
  and applied to record data by the node's caller, not by the engine.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError, ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from dwn.core import PACKAGE_ROOT, clean_url, load_json
from dwn.errors import MalformedAuthorization, MalformedDescriptor, SchemaViolation


SCHEMAS_DIR = PACKAGE_ROOT / "schemas"
SCHEMA_BASE_URI = "https://identity.foundation/dwn/json-schemas/"

MESSAGE_SCHEMAS: Dict[Tuple[str, str], str] = {
    ("Records", "Write"): "records-write.json",
    ("Records", "Read"): "records-read.json",
    ("Records", "Query"): "records-query.json",
    ("Records", "Subscribe"): "records-subscribe.json",
    ("Records", "Delete"): "records-delete.json",
    ("Protocols", "Configure"): "protocols-configure.json",
    ("Protocols", "Query"): "protocols-query.json",
    ("Permissions", "Request"): "permissions-request.json",
    ("Permissions", "Revoke"): "permissions-revoke.json",
}


@lru_cache(maxsize=1)
def _schema_registry(schemas_dir: Path = SCHEMAS_DIR) -> Registry:
    """Registry of all bundled schemas, keyed by `$id`."""
    resources = []
    for schema_path in sorted(schemas_dir.glob("*.json")):
        schema = load_json(schema_path)
        schema_id = schema.get("$id") or SCHEMA_BASE_URI + schema_path.name
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def message_validator(name: str) -> Draft202012Validator:
    """Validator for one bundled message schema (e.g. `records-write.json`)."""
    schema = load_json(SCHEMAS_DIR / name)
    return Draft202012Validator(schema, registry=_schema_registry())


def message_errors(message: Mapping[str, Any]) -> List[ValidationError]:
    descriptor = message.get("descriptor") if isinstance(message, Mapping) else None
    if not isinstance(descriptor, Mapping):
        raise MalformedDescriptor("Message requires a descriptor object")
    key = (descriptor.get("interface"), descriptor.get("method"))
    name = MESSAGE_SCHEMAS.get(key)  # type: ignore[arg-type]
    if name is None:
        raise MalformedDescriptor(f"Unsupported interface/method: {key[0]}.{key[1]}")
    return sorted(
        message_validator(name).iter_errors(message),
        key=lambda e: [str(p) for p in e.absolute_path],
    )


def validate_message(message: Mapping[str, Any]) -> None:
    """Validate wire-form message shape.

    Raises MalformedAuthorization for problems in the authorization envelope,
    MalformedDescriptor for everything else.
    """
    errors = message_errors(message)
    if not errors:
        return
    first = errors[0]
    path = list(first.absolute_path)
    detail = f"{first.json_path}: {first.message}"
    if path and path[0] == "authorization":
        raise MalformedAuthorization(detail)
    if not path and first.validator == "required" and "'authorization'" in first.message:
        raise MalformedAuthorization(detail)
    raise MalformedDescriptor(detail)


class DataSchemaValidator:
    """Validates record data against schemas registered by URI."""

    def __init__(self, schemas: Optional[Mapping[str, Dict[str, Any]]] = None):
        self._validators: Dict[str, Draft202012Validator] = {}
        for uri, schema in (schemas or {}).items():
            self.register(uri, schema)

    def register(self, schema_uri: str, schema: Dict[str, Any]) -> None:
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as ex:
            raise ValueError(f"Invalid JSON schema for {schema_uri}: {ex.message}") from ex
        self._validators[clean_url(schema_uri)] = Draft202012Validator(schema)

    def is_registered(self, schema_uri: str) -> bool:
        return clean_url(schema_uri) in self._validators

    def validate(self, schema_uri: str, data: bytes) -> None:
        validator = self._validators.get(clean_url(schema_uri))
        if validator is None:
            raise SchemaViolation(f"No schema registered for {schema_uri}", schema=schema_uri)
        try:
            instance = json.loads(data.decode("utf-8"))
        except ValueError as ex:
            raise SchemaViolation("Record data is not JSON", schema=schema_uri) from ex
        errors = sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
        if errors:
            raise SchemaViolation(f"{errors[0].json_path}: {errors[0].message}", schema=schema_uri)
