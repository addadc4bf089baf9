from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from tripdesk.db.repositories import AuditRepository


@dataclass
class AuditRecord:
    id: str
    timestamp: str
    action: str
    component: str
    subject_reference: str | None
    detail: dict[str, Any]


class AuditStore:
    def __init__(self, repository: AuditRepository | None = None) -> None:
        self.repository = repository or AuditRepository()

    def reset(self) -> None:
        self.repository.reset()

    def log(
        self,
        action: str,
        component: str,
        subject_reference: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditRecord:
        row = {
            "id": str(uuid4()),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "component": component,
            "subject_reference": subject_reference,
            "detail": detail or {},
        }
        stored = self.repository.insert(row)
        return AuditRecord(
            id=stored["id"],
            timestamp=stored["timestamp"],
            action=stored["action"],
            component=stored["component"],
            subject_reference=stored.get("subject_reference"),
            detail=stored.get("detail") or {},
        )

    def get_history(self, subject_reference: str) -> list[AuditRecord]:
        rows = self.repository.get_by_subject(subject_reference)
        return [
            AuditRecord(
                id=row["id"],
                timestamp=row["timestamp"],
                action=row["action"],
                component=row["component"],
                subject_reference=row.get("subject_reference"),
                detail=row.get("detail") or {},
            )
            for row in rows
        ]
