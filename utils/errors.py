"""
Error kinds raised by the pricing, allocation and settlement engines.

ValidationError  malformed input, never retried.
ConflictError    invariant violated by current state; refresh and retry with corrected input.
NotFoundError    referenced record does not exist.
StoreError       transient persistence failure; `ambiguous` tells whether it may have been applied.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    kind = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": str(self)}


class ValidationError(EngineError):
    kind = "validation"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class ConflictError(EngineError):
    kind = "conflict"

    def __init__(self, message: str, current: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.current = current

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.current is not None:
            data["current"] = self.current
        return data


class NotFoundError(EngineError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["entity"] = self.entity
        data["id"] = self.entity_id
        return data


class StoreError(EngineError):
    kind = "store"

    def __init__(self, message: str, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["ambiguous"] = self.ambiguous
        return data
