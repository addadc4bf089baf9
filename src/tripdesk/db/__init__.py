from .repositories import (
    AuditRepository,
    BookingRepository,
    InquiryRepository,
    JobRunRepository,
    JobTaskRunRepository,
    QuoteRepository,
    StorageBackend,
    StoreErrorKind,
    StoreWriteError,
    UserRepository,
    classify_store_error,
    get_storage_backend,
)

__all__ = [
    "AuditRepository",
    "BookingRepository",
    "InquiryRepository",
    "JobRunRepository",
    "JobTaskRunRepository",
    "QuoteRepository",
    "StorageBackend",
    "StoreErrorKind",
    "StoreWriteError",
    "UserRepository",
    "classify_store_error",
    "get_storage_backend",
]
