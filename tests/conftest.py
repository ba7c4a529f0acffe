import hashlib
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import dwn`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from dwn.config import EngineConfig  # noqa: E402
from dwn.did import Keyring  # noqa: E402
from dwn.store import InMemoryRecordStore  # noqa: E402


def keyring_for(name: str) -> Keyring:
    """Deterministic keyring per name, so DIDs are stable across runs."""
    return Keyring.from_seed(hashlib.sha256(name.encode("utf-8")).digest())


@pytest.fixture
def alice() -> Keyring:
    """The tenant (node owner)."""
    return keyring_for("alice")


@pytest.fixture
def bob() -> Keyring:
    return keyring_for("bob")


@pytest.fixture
def carol() -> Keyring:
    return keyring_for("carol")


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def config(monkeypatch) -> EngineConfig:
    for name in list(os.environ):
        if name.startswith("DWN_"):
            monkeypatch.delenv(name, raising=False)
    return EngineConfig()


SOCIAL_PROTOCOL = "https://example.com/social"
THREAD_SCHEMA = "https://example.com/schemas/thread"


@pytest.fixture
def social_definition() -> dict:
    """Posts with replies, a root `friend` role and threads with a context role."""
    return {
        "protocol": SOCIAL_PROTOCOL,
        "published": True,
        "types": {
            "friend": {},
            "post": {"dataFormats": ["application/json"]},
            "reply": {"dataFormats": ["application/json"]},
            "thread": {"schema": THREAD_SCHEMA},
            "participant": {},
            "message": {},
            "attachment": {},
        },
        "structure": {
            "friend": {
                "$role": True,
                "$actions": [{"who": "anyone", "can": ["read"]}],
            },
            "post": {
                "$actions": [
                    {"who": "anyone", "can": ["create"]},
                    {"role": "friend", "can": ["read", "query", "subscribe"]},
                    {"who": "recipient", "of": "post", "can": ["co-update"]},
                    {"who": "author", "of": "post", "can": ["create", "update", "delete"]},
                ],
                "reply": {
                    "$actions": [
                        {"who": "author", "of": "post", "can": ["create", "read"]},
                        {"who": "recipient", "of": "post", "can": ["create"]},
                    ],
                },
            },
            "thread": {
                "$actions": [{"who": "anyone", "can": ["create"]}],
                "participant": {
                    "$role": True,
                    "$actions": [{"who": "author", "of": "thread", "can": ["create"]}],
                },
                "message": {
                    "$size": {"max": 64},
                    "$tags": {"$requiredTags": ["topic"], "topic": {"type": "string"}},
                    "$actions": [
                        {"role": "thread/participant", "can": ["create", "read", "query", "subscribe"]},
                    ],
                    "attachment": {
                        "$actions": [
                            {"role": "thread/participant", "can": ["create", "read", "query", "subscribe"]},
                        ],
                    },
                },
            },
        },
    }
