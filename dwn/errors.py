"""
DWN Error Types

Every rejection the engine can produce is a subclass of `DwnError`. Each class
carries a stable machine-readable `code` and the HTTP-style `status` that the
node reports back in its reply:

    400  malformed input, integrity failures, unknown protocol paths
    401  signature and key resolution failures
    403  grant failures, unpermitted actions, unpublished protocols
    404  referenced record not found

`StoreError` is outside this hierarchy. It signals a transient
storage or network failure; the orchestrator never converts it into a
decision, the caller decides whether to retry.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Tuple


# =============================================================================
# BASE
# =============================================================================

class DwnError(Exception):
    """Base exception for authorization failures."""

    code = "DwnError"
    status = 400
    security_relevant = False

    def __init__(self, message: str = "", **context: Any):
        self.message = message or self.__class__.__doc__ or self.code
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    @property
    def detail(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code, "status": self.status, "message": self.message}
        if self.context:
            d["context"] = {k: str(v) for k, v in self.context.items()}
        return d


# =============================================================================
# 400: MALFORMED / INTEGRITY
# =============================================================================

class MalformedDescriptor(DwnError):
    """Descriptor is missing required fields or has the wrong shape."""
    code = "MalformedDescriptor"


class MalformedAuthorization(DwnError):
    """Authorization envelope or signature payload is malformed."""
    code = "MalformedAuthorization"


class IntegrityViolation(DwnError):
    """Content identifiers do not match the message content."""
    code = "IntegrityViolation"
    security_relevant = True


class UnknownProtocolPath(DwnError):
    """Protocol path does not exist in the protocol definition."""
    code = "UnknownProtocolPath"


class ProtocolNotFound(DwnError):
    """No protocol definition is installed for the referenced protocol."""
    code = "ProtocolNotFound"


class SchemaViolation(DwnError):
    """Record data does not conform to its declared schema."""
    code = "SchemaViolation"


# =============================================================================
# 401: AUTHENTICATION
# =============================================================================

class SignatureInvalid(DwnError):
    """A signature in the authorization envelope failed verification."""
    code = "SignatureInvalid"
    status = 401
    security_relevant = True


class DidNotFound(DwnError):
    """The signer DID could not be resolved."""
    code = "DidNotFound"
    status = 401


class KeyNotFound(DwnError):
    """The DID document has no verification method for the key id."""
    code = "KeyNotFound"
    status = 401


# =============================================================================
# 403: GRANTS / RULES
# =============================================================================

class GrantError(DwnError):
    """Permission grant failed validation."""
    code = "GrantError"
    status = 403
    security_relevant = True


class GrantNotFound(GrantError):
    """Referenced permission grant does not exist."""
    code = "GrantNotFound"


class GrantExpired(GrantError):
    """Permission grant expired before the message timestamp."""
    code = "GrantExpired"


class GrantNotActive(GrantError):
    """Message timestamp precedes the grant's creation."""
    code = "GrantNotActive"


class GrantRevoked(GrantError):
    """Permission grant was revoked at or before the message timestamp."""
    code = "GrantRevoked"


class GrantScopeMismatch(GrantError):
    """Permission grant does not cover the requested operation."""
    code = "GrantScopeMismatch"


class GrantSignerMismatch(GrantError):
    """Grant parties do not match the message signer or grantor."""
    code = "GrantSignerMismatch"


class GrantChainTooDeep(GrantError):
    """Delegated grant chain exceeds the configured depth."""
    code = "GrantChainTooDeep"


class ProtocolNotPublished(DwnError):
    """Protocol is not published and the actor is not the owner."""
    code = "ProtocolNotPublished"
    status = 403


class ActionNotPermitted(DwnError):
    """No protocol rule permits the requested actions."""
    code = "ActionNotPermitted"
    status = 403

    def __init__(self, message: str = "", *, actions: Iterable[Any] = (), actor: Optional[str] = None, **context: Any):
        self.actions: Tuple[str, ...] = tuple(sorted(str(getattr(a, "value", a)) for a in actions))
        self.actor = actor
        if not message:
            who = actor or "anonymous"
            message = f"{who} may not {', '.join(self.actions) or 'act'}"
        super().__init__(message, **context)


# =============================================================================
# 404
# =============================================================================

class RecordNotFound(DwnError):
    """Referenced record does not exist."""
    code = "RecordNotFound"
    status = 404


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

class StoreError(Exception):
    """Transient storage or network failure; safe to retry."""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)
