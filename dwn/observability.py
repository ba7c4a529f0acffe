"""
DWN Observability

Structured logging and audit trail for the authorization engine.

    logger = get_logger("authorizer", DwnLayer.AUTHORIZATION)
    logger.info("Message accepted", record_id=rid, actor=did)

emits one JSON object per event on stderr:

    {"timestamp": "...", "level": "info", "logger": "dwn.authorization.authorizer",
     "message": "Message accepted", "correlation_id": "corr-...",
     "layer": "authorization", "context": {"record_id": "...", "actor": "..."}}

Correlation ids live in a context variable, so concurrent authorizations on
one event loop keep their own ids. Security-relevant rejections (integrity,
signature and grant failures) also go to a hash-chained `AuditLogger`.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import traceback
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "dwn_correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class DwnLayer(Enum):
    """Engine layers for categorization."""
    ENCODING = "encoding"
    SIGNATURE = "signature"
    GRANTS = "grants"
    RULES = "rules"
    AUTHORIZATION = "authorization"
    STORE = "store"
    CACHE = "cache"
    CONFIG = "config"
    AUDIT = "audit"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None, fmt: str = "json"):
        super().__init__()
        self.stream = stream or sys.stderr
        self.fmt = fmt

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            if self.fmt == "text":
                ctx = " ".join(f"{k}={v}" for k, v in event.context.items())
                line = f"{event.timestamp} {event.level.upper()} {event.logger}: {event.message} {ctx}".rstrip()
            else:
                line = event.to_json()
            self.stream.write(line + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class DwnLogger:
    """
    Structured logger for engine components.

    Adds the correlation id and layer to every event.
    """

    def __init__(
        self,
        name: str,
        layer: DwnLayer,
        level: LogLevel = LogLevel.INFO,
        fmt: str = "json",
    ):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"dwn.{layer.value}.{name}")
        self._logger.setLevel(getattr(logging, level.value.upper()))

        if not any(isinstance(h, StructuredHandler) for h in self._logger.handlers):
            self._logger.addHandler(StructuredHandler(fmt=fmt))

    @property
    def logger_name(self) -> str:
        return self._logger.name

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, error_code: str = "", **context: Any) -> None:
        self._log(logging.WARNING, message, error_code=error_code, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Log error message."""
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: DwnLayer, level: str = "info", fmt: str = "json") -> DwnLogger:
    """Get a logger for an engine component."""
    return DwnLogger(name, layer, LogLevel(level), fmt)


# Audit trail for security-relevant rejections
@dataclass
class AuditEvent:
    event_id: str
    timestamp: str
    tenant: str
    actor_did: str
    interface: str
    method: str
    resource_id: str
    outcome: str  # accepted, rejected
    error_code: str = ""
    correlation_id: str = ""
    previous_hash: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Append-only audit log.

    Each event hash covers the event and the previous hash, so removing or
    editing an entry breaks `verify_chain`. Only the newest `max_entries`
    events are kept; the hash of the last dropped event anchors the chain.
    """

    GENESIS = "genesis"

    def __init__(self, logger: Optional[DwnLogger] = None, max_entries: int = 10000):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._logger = logger or get_logger("audit", DwnLayer.AUDIT)
        self._last_hash: str = self.GENESIS
        self._base_hash: str = self.GENESIS
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    @staticmethod
    def _compute_hash(event: AuditEvent) -> str:
        data = json.dumps(event.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def log(
        self,
        tenant: str,
        actor_did: Optional[str],
        interface: str,
        method: str,
        resource_id: str,
        outcome: str,
        error_code: str = "",
        **details: Any,
    ) -> AuditEvent:
        with self._lock:
            event = AuditEvent(
                event_id=uuid.uuid4().hex,
                timestamp=datetime.now(timezone.utc).isoformat(),
                tenant=tenant,
                actor_did=actor_did or "anonymous",
                interface=interface,
                method=method,
                resource_id=resource_id,
                outcome=outcome,
                error_code=error_code,
                correlation_id=get_correlation_id(),
                previous_hash=self._last_hash,
                details={k: str(v) for k, v in details.items()},
            )
            event_hash = self._compute_hash(event)
            self._last_hash = event_hash
            if len(self._entries) == self._entries.maxlen:
                self._base_hash = self._entries[0]["hash"]
            self._entries.append({"event": event, "hash": event_hash})

        self._logger.warning(
            f"AUDIT: {interface}{method} {outcome}",
            error_code=error_code,
            operation="audit",
            event_hash=event_hash,
            **{k: v for k, v in event.to_dict().items() if k != "error_code"},
        )
        return event

    @property
    def max_entries(self) -> int:
        return self._entries.maxlen

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return [e["event"] for e in self._entries]

    def verify_chain(self) -> bool:
        with self._lock:
            previous = self._base_hash
            for entry in self._entries:
                event = entry["event"]
                if event.previous_hash != previous or self._compute_hash(event) != entry["hash"]:
                    return False
                previous = entry["hash"]
            return True
