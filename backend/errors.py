# errors.py — Registry error kinds
# Every failed mutation raises one of these; nothing is partially applied.
from typing import Any, Dict, Optional


class RegistryError(Exception):
    """Base class for all registry failures"""
    code = "registry_error"
    http_status = 400

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.detail, "context": self.context}


class Unauthorized(RegistryError):
    """Role or permission check failed"""
    code = "unauthorized"
    http_status = 403


class NotFound(RegistryError):
    code = "not_found"
    http_status = 404


class AlreadyExists(RegistryError):
    code = "already_exists"
    http_status = 409


class OwnerProtected(RegistryError):
    """Attempted removal or revocation of a workspace/document owner"""
    code = "owner_protected"
    http_status = 409


class InvalidState(RegistryError):
    code = "invalid_state"
    http_status = 409


class ReentrantMutation(InvalidState):
    code = "reentrant_mutation"


class DependenciesUnmet(RegistryError):
    code = "dependencies_unmet"
    http_status = 409


class InsufficientPayment(RegistryError):
    code = "insufficient_payment"
    http_status = 402


class PaymentForwardingFailed(RegistryError):
    """Treasury rejected or could not be reached; the enclosing mutation is rolled back"""
    code = "payment_rejected"
    http_status = 502
