"""
DWN: Authorization & Protocol-Rule Engine

Decides whether a signed Decentralized Web Node message may be applied to a
tenant's node, and why not when it may not.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                      AUTHORIZATION ORCHESTRATOR                          │
    │    authorization.py  schema → integrity → actor → method rules          │
    │                                                                          │
    │  RULES                                                                   │
    │    protocols.py   Definitions, action rules, structure validation       │
    │    rules.py       Rule evaluation, write structure, ancestry            │
    │    permissions.py Grants, delegated chains, effective actor             │
    │                                                                          │
    │  IDENTITY & ENCODING                                                     │
    │    messages.py    Messages, signature payload, builders                 │
    │    jws.py         General JWS (EdDSA) signing and verification          │
    │    did.py         did:key, resolvers, signing keyrings                  │
    │    cid.py         DAG-CBOR encoding, CIDs, record/context ids           │
    │    schema.py      Bundled message schemas, record data schemas          │
    │                                                                          │
    │  COLLABORATORS & AMBIENT                                                 │
    │    store.py       Record store contract, in-memory store                │
    │    cache.py       Injected TTL caches for resolver and store            │
    │    config.py      Engine configuration (YAML + environment)             │
    │    observability.py  Structured logging, audit chain                    │
    │    errors.py      Rejection taxonomy with reply status codes            │
    └─────────────────────────────────────────────────────────────────────────┘

Usage
─────

    from dwn import Authorizer, InMemoryRecordStore

    authorizer = Authorizer(tenant_did, store)
    decision = await authorizer.authorize(message)
    reply = decision.to_reply(message)   # {"status": {"code": 202, ...}, ...}

The engine is stateless between calls. Store and resolver lookups are its
only suspension points; store failures (`StoreError`) propagate to the caller.
"""

from dwn.authorization import Authorizer, Decision, authorize_message
from dwn.config import ConfigManager, EngineConfig, load_config
from dwn.did import DidKeyResolver, DidResolver, Keyring, StaticDidResolver
from dwn.errors import DwnError, StoreError
from dwn.messages import Interface, Message, Method
from dwn.permissions import EffectiveActor, Grant, GrantResolver, Scope
from dwn.protocols import Action, ProtocolDefinition, verify_structure
from dwn.store import InMemoryRecordStore, Record, RecordStore

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Action",
    "Authorizer",
    "ConfigManager",
    "Decision",
    "DidKeyResolver",
    "DidResolver",
    "DwnError",
    "EffectiveActor",
    "EngineConfig",
    "Grant",
    "GrantResolver",
    "InMemoryRecordStore",
    "Interface",
    "Keyring",
    "Message",
    "Method",
    "ProtocolDefinition",
    "Record",
    "RecordStore",
    "Scope",
    "StaticDidResolver",
    "StoreError",
    "authorize_message",
    "load_config",
    "verify_structure",
]
