# errors.py
"""
Scratch Your Card — error taxonomy.

Every failure the services raise on purpose is a ScratchError. The HTTP layer
renders them as {"ok": false, "error": ...} with `status_code`; errors that are
not `public` are logged and answered with a generic message instead.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional


class ScratchError(Exception):
    status_code: int = 500
    public: bool = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message}


# ---------- caller mistakes ----------
class ValidationFailed(ScratchError):
    status_code = 400
    public = True

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [message])

    def to_body(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, "errors": self.errors}


class AuthorizationFailed(ScratchError):
    status_code = 403
    public = True


class BatchPreconditionFailed(ScratchError):
    """The batch cannot start (e.g. admin wallet cannot cover funding)."""
    status_code = 409
    public = True


# ---------- infrastructure ----------
class ConfigurationError(ScratchError):
    """Server-side setting missing or malformed; the message names the setting only."""
    status_code = 500
    public = True


class StoreUnavailable(ScratchError):
    status_code = 500


class ChainError(ScratchError):
    status_code = 500


class ChainUnavailable(ChainError):
    pass


class ContractNotDeployed(ChainError):
    pass


class TransactionReverted(ChainError):
    status_code = 502
    public = True

    def __init__(self, message: str, *, tx_hash: Optional[str] = None, selector: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.selector = selector


class BatchAborted(ScratchError):
    """A batch run stopped part-way; `partial` holds what already landed on-chain."""
    status_code = 500
    public = True

    def __init__(self, message: str, partial: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.partial = partial or {}

    def to_body(self) -> Dict[str, Any]:
        return {"ok": False, "error": self.message, "partial": self.partial}
