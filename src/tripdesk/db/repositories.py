from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

from tripdesk.db.supabase_client import get_client

FOREIGN_KEY_VIOLATION = "23503"
UNIQUE_VIOLATION = "23505"
ROW_LEVEL_SECURITY_VIOLATION = "42501"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SUPABASE = "supabase"


class StoreErrorKind(str, Enum):
    OWNER_REFERENCE = "owner_reference"
    OTHER = "other"


class StoreWriteError(Exception):
    def __init__(self, code: str | None, message: str) -> None:
        super().__init__(message)
        self.code = code


def classify_store_error(exc: BaseException) -> StoreErrorKind:
    code = getattr(exc, "code", None)
    if code in {FOREIGN_KEY_VIOLATION, ROW_LEVEL_SECURITY_VIOLATION}:
        return StoreErrorKind.OWNER_REFERENCE
    return StoreErrorKind.OTHER


def get_storage_backend() -> StorageBackend:
    raw = os.getenv("TRIPDESK_STORAGE_BACKEND", StorageBackend.MEMORY.value).strip().lower()
    if raw == StorageBackend.SUPABASE.value:
        return StorageBackend.SUPABASE
    return StorageBackend.MEMORY


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_datetime(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _execute_write(query: Any) -> Any:
    try:
        return query.execute()
    except Exception as exc:
        raise StoreWriteError(getattr(exc, "code", None), str(exc)) from exc


@dataclass
class _MemoryState:
    users: set[str] = field(default_factory=set)
    bookings: dict[str, dict[str, Any]] = field(default_factory=dict)
    quotes: dict[str, dict[str, Any]] = field(default_factory=dict)
    inquiries: dict[str, dict[str, Any]] = field(default_factory=dict)
    audit_log: list[dict[str, Any]] = field(default_factory=list)
    job_runs: dict[str, dict[str, Any]] = field(default_factory=dict)
    job_task_runs: dict[str, dict[str, Any]] = field(default_factory=dict)

    def reset(self) -> None:
        self.users.clear()
        self.bookings.clear()
        self.quotes.clear()
        self.inquiries.clear()
        self.audit_log.clear()
        self.job_runs.clear()
        self.job_task_runs.clear()


_MEMORY_STATE = _MemoryState()


class _BaseRepository:
    def __init__(self) -> None:
        self.backend = get_storage_backend()
        self.client = get_client() if self.backend == StorageBackend.SUPABASE else None


class UserRepository(_BaseRepository):
    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            row = {**row, "id": row.get("id") or str(uuid4())}
            _MEMORY_STATE.users.add(row["id"])
            return row
        response = _execute_write(self.client.table("users").insert(row))
        return (response.data or [row])[0]


class BookingRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            _MEMORY_STATE.bookings.clear()
            return
        self.client.table("bookings").delete().neq("booking_reference", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            owner = row.get("user_id")
            if owner is not None and owner not in _MEMORY_STATE.users:
                raise StoreWriteError(
                    FOREIGN_KEY_VIOLATION,
                    'insert on table "bookings" violates foreign key constraint "bookings_user_id_fkey"',
                )
            if any(
                existing["booking_reference"] == row["booking_reference"]
                for existing in _MEMORY_STATE.bookings.values()
            ):
                raise StoreWriteError(UNIQUE_VIOLATION, "duplicate key value violates unique constraint")
            row = {**row, "id": row.get("id") or str(uuid4())}
            _MEMORY_STATE.bookings[row["id"]] = row
            return dict(row)
        response = _execute_write(self.client.table("bookings").insert(row))
        return (response.data or [row])[0]

    def update(self, booking_id: str, values: dict[str, Any]) -> dict[str, Any]:
        payload = {**values, "updated_at": _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            if booking_id not in _MEMORY_STATE.bookings:
                raise KeyError("Booking not found")
            _MEMORY_STATE.bookings[booking_id].update(payload)
            return dict(_MEMORY_STATE.bookings[booking_id])
        response = _execute_write(self.client.table("bookings").update(payload).eq("id", booking_id))
        rows = response.data or []
        if not rows:
            raise KeyError("Booking not found")
        return rows[0]

    def get(self, booking_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = _MEMORY_STATE.bookings.get(booking_id)
            return dict(row) if row else None
        response = self.client.table("bookings").select("*").eq("id", booking_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def find_by_reference(self, reference: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            for row in _MEMORY_STATE.bookings.values():
                details = row.get("booking_details") or {}
                if row.get("booking_reference") == reference or details.get("order_id") == reference:
                    return dict(row)
            return None
        for column in ("booking_reference", "booking_details->>order_id"):
            response = (
                self.client.table("bookings")
                .select("*")
                .eq(column, reference)
                .order("created_at")
                .limit(1)
                .execute()
            )
            rows = response.data or []
            if rows:
                return rows[0]
        return None

    def find_by_idempotency_key(self, key: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            for row in _MEMORY_STATE.bookings.values():
                if (row.get("booking_details") or {}).get("idempotency_key") == key:
                    return dict(row)
            return None
        response = (
            self.client.table("bookings")
            .select("*")
            .eq("booking_details->>idempotency_key", key)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return rows[0] if rows else None

    def list_for_owner(self, owner_id: str, active_only: bool = False) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            rows = [
                dict(row)
                for row in _MEMORY_STATE.bookings.values()
                if row.get("user_id") == owner_id
                or (row.get("booking_details") or {}).get("original_user_id") == owner_id
            ]
        else:
            merged: dict[str, dict[str, Any]] = {}
            for column in ("user_id", "booking_details->>original_user_id"):
                response = self.client.table("bookings").select("*").eq(column, owner_id).execute()
                for row in response.data or []:
                    merged.setdefault(str(row["id"]), row)
            rows = list(merged.values())
        if active_only:
            rows = [row for row in rows if row.get("status") != "cancelled"]
        rows.sort(key=lambda row: row.get("created_at") or "", reverse=True)
        return rows


class QuoteRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            _MEMORY_STATE.quotes.clear()
            return
        self.client.table("quotes").delete().neq("status", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            row = {**row, "id": row.get("id") or str(uuid4())}
            _MEMORY_STATE.quotes[row["id"]] = row
            return dict(row)
        response = _execute_write(self.client.table("quotes").insert(row))
        return (response.data or [row])[0]

    def get(self, quote_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = _MEMORY_STATE.quotes.get(quote_id)
            return dict(row) if row else None
        response = self.client.table("quotes").select("*").eq("id", quote_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def list_for_inquiry(self, inquiry_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [dict(row) for row in _MEMORY_STATE.quotes.values() if row.get("inquiry_id") == inquiry_id]
        response = self.client.table("quotes").select("*").eq("inquiry_id", inquiry_id).execute()
        return response.data or []

    def update_if_status(
        self, quote_id: str, values: dict[str, Any], expected_statuses: Iterable[str]
    ) -> dict[str, Any] | None:
        """Apply ``values`` only while the row is still in one of ``expected_statuses``."""
        expected = list(expected_statuses)
        payload = {**values, "updated_at": _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            row = _MEMORY_STATE.quotes.get(quote_id)
            if not row or row.get("status") not in expected:
                return None
            row.update(payload)
            return dict(row)
        response = _execute_write(
            self.client.table("quotes").update(payload).eq("id", quote_id).in_("status", expected)
        )
        rows = response.data or []
        return rows[0] if rows else None

    def list_by_status(
        self,
        statuses: Iterable[str],
        expires_after: datetime | None = None,
        expires_until: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Quotes in ``statuses`` with ``expires_after < expires_at <= expires_until``."""
        wanted = list(statuses)
        if self.backend == StorageBackend.MEMORY:
            rows = []
            for row in _MEMORY_STATE.quotes.values():
                if row.get("status") not in wanted:
                    continue
                if expires_after is not None or expires_until is not None:
                    if not row.get("expires_at"):
                        continue
                    expires_at = to_datetime(row["expires_at"])
                    if expires_after is not None and expires_at <= expires_after:
                        continue
                    if expires_until is not None and expires_at > expires_until:
                        continue
                rows.append(dict(row))
            rows.sort(key=lambda row: row.get("expires_at") or "")
            return rows
        query = self.client.table("quotes").select("*").in_("status", wanted)
        if expires_after is not None:
            query = query.gt("expires_at", expires_after.isoformat())
        if expires_until is not None:
            query = query.lte("expires_at", expires_until.isoformat())
        response = query.order("expires_at").execute()
        return response.data or []

    def update_many_if_status(
        self, quote_ids: list[str], values: dict[str, Any], expected_statuses: Iterable[str]
    ) -> list[dict[str, Any]]:
        expected = list(expected_statuses)
        if not quote_ids:
            return []
        payload = {**values, "updated_at": _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            updated = []
            for quote_id in quote_ids:
                row = _MEMORY_STATE.quotes.get(quote_id)
                if row and row.get("status") in expected:
                    row.update(payload)
                    updated.append(dict(row))
            return updated
        response = _execute_write(
            self.client.table("quotes").update(payload).in_("id", quote_ids).in_("status", expected)
        )
        return response.data or []


class InquiryRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            _MEMORY_STATE.inquiries.clear()
            return
        self.client.table("inquiries").delete().neq("status", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            row = {**row, "id": row.get("id") or str(uuid4())}
            _MEMORY_STATE.inquiries[row["id"]] = row
            return dict(row)
        response = _execute_write(self.client.table("inquiries").insert(row))
        return (response.data or [row])[0]

    def get(self, inquiry_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            row = _MEMORY_STATE.inquiries.get(inquiry_id)
            return dict(row) if row else None
        response = self.client.table("inquiries").select("*").eq("id", inquiry_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def update_status(self, inquiry_id: str, status: str) -> dict[str, Any]:
        payload = {"status": status, "updated_at": _now_iso()}
        if self.backend == StorageBackend.MEMORY:
            if inquiry_id not in _MEMORY_STATE.inquiries:
                raise KeyError("Inquiry not found")
            _MEMORY_STATE.inquiries[inquiry_id].update(payload)
            return dict(_MEMORY_STATE.inquiries[inquiry_id])
        response = _execute_write(self.client.table("inquiries").update(payload).eq("id", inquiry_id))
        rows = response.data or []
        if not rows:
            raise KeyError("Inquiry not found")
        return rows[0]


class AuditRepository(_BaseRepository):
    def reset(self) -> None:
        if self.backend == StorageBackend.MEMORY:
            _MEMORY_STATE.audit_log.clear()
            return
        self.client.table("audit_log").delete().neq("action", "").execute()

    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if "id" not in row:
                row = {**row, "id": str(uuid4())}
            _MEMORY_STATE.audit_log.append(row)
            _MEMORY_STATE.audit_log.sort(key=lambda item: item["timestamp"])
            return row
        response = self.client.table("audit_log").insert(row).execute()
        return (response.data or [row])[0]

    def get_by_subject(self, subject_reference: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [row for row in _MEMORY_STATE.audit_log if row.get("subject_reference") == subject_reference]
        response = (
            self.client.table("audit_log")
            .select("*")
            .eq("subject_reference", subject_reference)
            .order("timestamp")
            .execute()
        )
        return response.data or []


class JobRunRepository(_BaseRepository):
    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if "id" not in row:
                row = {**row, "id": str(uuid4())}
            _MEMORY_STATE.job_runs[row["id"]] = row
            return row
        response = self.client.table("job_runs").insert(row).execute()
        return (response.data or [row])[0]

    def update(self, run_id: str, values: dict[str, Any]) -> None:
        if self.backend == StorageBackend.MEMORY:
            _MEMORY_STATE.job_runs[run_id].update(values)
            return
        self.client.table("job_runs").update(values).eq("id", run_id).execute()

    def get(self, run_id: str) -> dict[str, Any] | None:
        if self.backend == StorageBackend.MEMORY:
            return _MEMORY_STATE.job_runs.get(run_id)
        response = self.client.table("job_runs").select("*").eq("id", run_id).limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None


class JobTaskRunRepository(_BaseRepository):
    def insert(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.backend == StorageBackend.MEMORY:
            if "id" not in row:
                row = {**row, "id": str(uuid4())}
            _MEMORY_STATE.job_task_runs[row["id"]] = row
            return row
        response = self.client.table("job_task_runs").insert(row).execute()
        return (response.data or [row])[0]

    def update(self, task_run_id: str, values: dict[str, Any]) -> None:
        if self.backend == StorageBackend.MEMORY:
            _MEMORY_STATE.job_task_runs[task_run_id].update(values)
            return
        self.client.table("job_task_runs").update(values).eq("id", task_run_id).execute()

    def get_by_run(self, job_run_id: str) -> list[dict[str, Any]]:
        if self.backend == StorageBackend.MEMORY:
            return [row for row in _MEMORY_STATE.job_task_runs.values() if row["job_run_id"] == job_run_id]
        response = self.client.table("job_task_runs").select("*").eq("job_run_id", job_run_id).execute()
        return response.data or []


def reset_memory_backend() -> None:
    _MEMORY_STATE.reset()
