"""Single-slot storage for the outstanding one-time code."""

from dataclasses import dataclass
from typing import Protocol

from database.db import (
    delete_verification_slot,
    get_verification_slot,
    set_verification_slot,
)


@dataclass(frozen=True)
class VerificationRecord:
    code: str
    issued_at: float  # epoch seconds


class VerificationStore(Protocol):
    def get(self) -> VerificationRecord | None: ...

    def set(self, record: VerificationRecord) -> None: ...

    def delete(self, expected: VerificationRecord | None = None) -> bool:
        """Clear the slot; with `expected`, only if it still holds that record."""
        ...


class InMemoryVerificationStore:
    def __init__(self) -> None:
        self._record: VerificationRecord | None = None

    def get(self) -> VerificationRecord | None:
        return self._record

    def set(self, record: VerificationRecord) -> None:
        self._record = record

    def delete(self, expected: VerificationRecord | None = None) -> bool:
        if self._record is None:
            return False
        if expected is not None and self._record != expected:
            return False
        self._record = None
        return True


class SqliteVerificationStore:
    """Keeps the slot in the application database so every worker sees the same code."""

    def get(self) -> VerificationRecord | None:
        row = get_verification_slot()
        if row is None:
            return None
        code, issued_at = row
        return VerificationRecord(code=code, issued_at=issued_at)

    def set(self, record: VerificationRecord) -> None:
        set_verification_slot(record.code, record.issued_at)

    def delete(self, expected: VerificationRecord | None = None) -> bool:
        if expected is None:
            return delete_verification_slot()
        return delete_verification_slot((expected.code, expected.issued_at))
