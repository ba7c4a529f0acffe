"""Record store contract.

The engine only reads from the store. Every lookup is an `await` point and
may raise `dwn.errors.StoreError` for transient failures, which the engine
propagates unchanged.

`InMemoryRecordStore` is the reference implementation used by tests and by
embedders that keep a node's state in process. Its write-side helpers
(`put_write`, `put_delete`, ...) are synchronous and are not part of the
contract.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Dict, List, Optional

from dwn.core import clean_url, parse_timestamp
from dwn.messages import Interface, Message, Method
from dwn.protocols import ProtocolDefinition


@dataclass(frozen=True)
class Record:
    """A record as the store knows it: its initial write and latest state."""
    initial_write: Message
    latest: Message
    deleted: Optional[Message] = None

    @property
    def record_id(self) -> str:
        return self.initial_write.record_id

    @property
    def context_id(self) -> Optional[str]:
        return self.initial_write.context_id

    @property
    def protocol(self) -> Optional[str]:
        return self.initial_write.protocol

    @property
    def protocol_path(self) -> Optional[str]:
        return self.initial_write.protocol_path

    @property
    def author(self) -> Optional[str]:
        return self.initial_write.author

    @property
    def recipient(self) -> Optional[str]:
        return self.latest.recipient

    @property
    def published(self) -> bool:
        return self.latest.published

    @property
    def is_deleted(self) -> bool:
        return self.deleted is not None


class RecordStore(abc.ABC):
    """Read-side store contract for one tenant."""

    @abc.abstractmethod
    async def get_record(self, record_id: str) -> Optional[Record]:
        """Record by id, deleted records included."""

    @abc.abstractmethod
    async def get_ancestors(self, context_id: str) -> List[Record]:
        """Records along a context id, root first, including the record itself.

        Missing records are omitted; callers check the chain is complete.
        """

    @abc.abstractmethod
    async def get_latest_revocation(self, grant_id: str, at: Optional[str] = None) -> Optional[Message]:
        """Most recent Permissions.Revoke of a grant, optionally at or before `at`."""

    @abc.abstractmethod
    async def get_protocol_definition(self, protocol: str) -> Optional[ProtocolDefinition]:
        """Installed definition for a protocol URI."""

    @abc.abstractmethod
    async def get_role_records(self, protocol: str, role_path: str, recipient: str) -> List[Record]:
        """Non-deleted role records at `role_path` whose recipient is `recipient`."""


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store."""

    def __init__(self) -> None:
        self._records: Dict[str, Record] = {}
        self._revocations: Dict[str, List[Message]] = {}
        self._protocols: Dict[str, Message] = {}

    # -- write side ---------------------------------------------------------------

    def put_write(self, message: Message) -> Record:
        if not message.is_a(Interface.RECORDS, Method.WRITE):
            raise ValueError(f"Expected RecordsWrite, got {message.kind}")
        existing = self._records.get(message.record_id)
        if existing is None:
            if not message.is_initial_write():
                raise ValueError(f"No initial write stored for record {message.record_id}")
            record = Record(initial_write=message, latest=message)
        elif parse_timestamp(message.message_timestamp) >= parse_timestamp(existing.latest.message_timestamp):
            record = Record(initial_write=existing.initial_write, latest=message, deleted=existing.deleted)
        else:
            record = existing
        self._records[record.record_id] = record
        return record

    def put_delete(self, message: Message) -> Record:
        if not message.is_a(Interface.RECORDS, Method.DELETE):
            raise ValueError(f"Expected RecordsDelete, got {message.kind}")
        existing = self._records.get(message.target_record_id)
        if existing is None:
            raise ValueError(f"Unknown record {message.target_record_id}")
        record = Record(initial_write=existing.initial_write, latest=existing.latest, deleted=message)
        self._records[record.record_id] = record
        return record

    def put_configure(self, message: Message) -> ProtocolDefinition:
        if not message.is_a(Interface.PROTOCOLS, Method.CONFIGURE):
            raise ValueError(f"Expected ProtocolsConfigure, got {message.kind}")
        protocol = clean_url(message.protocol)
        current = self._protocols.get(protocol)
        if current is None or parse_timestamp(message.message_timestamp) >= parse_timestamp(current.message_timestamp):
            self._protocols[protocol] = message
        return ProtocolDefinition.from_dict(self._protocols[protocol].descriptor["definition"])

    def put_revocation(self, message: Message) -> None:
        if not message.is_a(Interface.PERMISSIONS, Method.REVOKE):
            raise ValueError(f"Expected PermissionsRevoke, got {message.kind}")
        grant_id = message.descriptor["permissionGrantId"]
        revocations = self._revocations.setdefault(grant_id, [])
        revocations.append(message)
        revocations.sort(key=lambda m: parse_timestamp(m.message_timestamp))

    # -- read side ----------------------------------------------------------------

    async def get_record(self, record_id: str) -> Optional[Record]:
        return self._records.get(record_id)

    async def get_ancestors(self, context_id: str) -> List[Record]:
        ids = context_id.split("/") if context_id else []
        return [self._records[rid] for rid in ids if rid in self._records]

    async def get_latest_revocation(self, grant_id: str, at: Optional[str] = None) -> Optional[Message]:
        revocations = self._revocations.get(grant_id) or []
        if at is not None:
            cutoff = parse_timestamp(at)
            revocations = [m for m in revocations if parse_timestamp(m.message_timestamp) <= cutoff]
        return revocations[-1] if revocations else None

    async def get_protocol_definition(self, protocol: str) -> Optional[ProtocolDefinition]:
        message = self._protocols.get(clean_url(protocol))
        if message is None:
            return None
        return ProtocolDefinition.from_dict(message.descriptor["definition"])

    async def get_role_records(self, protocol: str, role_path: str, recipient: str) -> List[Record]:
        protocol = clean_url(protocol)
        return [
            r for r in self._records.values()
            if not r.is_deleted
            and r.protocol == protocol
            and r.protocol_path == role_path
            and r.recipient == recipient
        ]
