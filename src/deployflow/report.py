"""Structured pass/warn/fail validation reports.

Workflows record every check and planned action as a ValidationEntry
instead of printing free text, so pass/fail logic is data. A report is
finalized when its run completes and is immutable afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Severity of a validation entry."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class ValidationEntry:
    """A single check result."""

    severity: Severity
    subject: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"severity": self.severity.value, "subject": self.subject, "message": self.message}


@dataclass
class ValidationReport:
    """Ordered accumulator of validation entries.

    Overall status is FAIL if any entry failed, else WARN if any warned,
    else PASS. An empty report passes.
    """

    title: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _entries: list[ValidationEntry] = field(default_factory=list, repr=False)
    _finalized: bool = field(default=False, repr=False)

    def add(self, severity: Severity, subject: str, message: str) -> ValidationEntry:
        """Append an entry.

        Raises:
            RuntimeError: If the report has been finalized.
        """
        if self._finalized:
            raise RuntimeError("Cannot add entries to a finalized report")
        entry = ValidationEntry(severity=severity, subject=subject, message=message)
        self._entries.append(entry)
        return entry

    def passed(self, subject: str, message: str) -> ValidationEntry:
        return self.add(Severity.PASS, subject, message)

    def warn(self, subject: str, message: str) -> ValidationEntry:
        return self.add(Severity.WARN, subject, message)

    def fail(self, subject: str, message: str) -> ValidationEntry:
        return self.add(Severity.FAIL, subject, message)

    def finalize(self) -> ValidationReport:
        """Freeze the report. Idempotent."""
        self._finalized = True
        return self

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def entries(self) -> tuple[ValidationEntry, ...]:
        return tuple(self._entries)

    @property
    def status(self) -> Severity:
        severities = {entry.severity for entry in self._entries}
        if Severity.FAIL in severities:
            return Severity.FAIL
        if Severity.WARN in severities:
            return Severity.WARN
        return Severity.PASS

    @property
    def exit_code(self) -> int:
        """Process exit status: 1 if any entry failed, else 0."""
        return 1 if self.status == Severity.FAIL else 0

    def count(self, severity: Severity) -> int:
        return sum(1 for entry in self._entries if entry.severity == severity)

    def failures(self) -> list[ValidationEntry]:
        return [entry for entry in self._entries if entry.severity == Severity.FAIL]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "exit_code": self.exit_code,
            "summary": {severity.value: self.count(severity) for severity in Severity},
            "entries": [entry.to_dict() for entry in self._entries],
        }
