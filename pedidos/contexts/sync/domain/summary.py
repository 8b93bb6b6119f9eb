from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


CREATED = "created"
UPDATED = "updated"
FAILED = "failed"


@dataclass(frozen=True)
class ReconcileOutcome:
    kind: str
    external_id: Any = None
    local_id: int | None = None
    message: str | None = None

    @property
    def failed(self) -> bool:
        return self.kind == FAILED


@dataclass(frozen=True)
class ErrorDetail:
    external_id: Any
    message: str
    local_id: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        detail = {"external_id": self.external_id, "message": self.message}
        if self.local_id is not None:
            detail["local_id"] = self.local_id
        return detail


@dataclass
class SyncRunSummary:
    """Accounting for one sync run: total == created + updated + errors."""

    entity_kind: str
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0
    error_details: List[ErrorDetail] = field(default_factory=list)

    def record(self, outcome: ReconcileOutcome) -> None:
        self.total += 1
        if outcome.kind == CREATED:
            self.created += 1
        elif outcome.kind == UPDATED:
            self.updated += 1
        else:
            self.errors += 1
            self.error_details.append(ErrorDetail(outcome.external_id, outcome.message or "error", outcome.local_id))

    def stats(self) -> Dict[str, int]:
        return {"created": self.created, "updated": self.updated, "errors": self.errors, "total": self.total}

    def to_response_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": True, "stats": self.stats()}
        if self.error_details:
            payload["errorDetails"] = [detail.to_dict() for detail in self.error_details]
        return payload

    def to_log_extra(self) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"entity_kind": self.entity_kind}
        extra.update(self.stats())
        return extra
