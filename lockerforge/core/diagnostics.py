"""
lockerforge/core/diagnostics.py

Recoverable problems found while reducing, synthesizing or assembling.

None of these abort a run. The offending item is skipped (or given a
wildcard / a fresh identifier) and a Diagnostic is recorded so the caller
can report fidelity gaps next to the rules that were produced.

    MissingMetadata        record has neither a usable signer nor a hash
    UnknownCollectionType  rule names a collection the template lacks
    MalformedVersion       version text could not be parsed
    DuplicateRuleId        identifier collision, a fresh one was assigned
"""

import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple


class DiagnosticCode(Enum):
    MISSING_METADATA        = "MissingMetadata"
    UNKNOWN_COLLECTION_TYPE = "UnknownCollectionType"
    MALFORMED_VERSION       = "MalformedVersion"
    DUPLICATE_RULE_ID       = "DuplicateRuleId"


class LockerForgeWarning(UserWarning):
    """Category used when diagnostics are also raised as Python warnings."""
    pass


@dataclass(frozen=True)
class Diagnostic:
    """A single recoverable problem, tied to the item it concerns."""
    code:    DiagnosticCode
    message: str
    subject: str = ""

    def __str__(self) -> str:
        if self.subject:
            return f"[{self.code.value}] {self.subject}: {self.message}"
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "code":    self.code.value,
            "message": self.message,
            "subject": self.subject,
        }


class DiagnosticSink:
    """
    Accumulates diagnostics for one top-level operation.

    With warn=True each diagnostic is also passed to warnings.warn, so
    interactive callers see it as it happens.
    """

    def __init__(self, warn: bool = False):
        self.warn = warn
        self._items: List[Diagnostic] = []

    def add(
        self,
        code: DiagnosticCode,
        message: str,
        subject: Optional[str] = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(code=code, message=message, subject=subject or "")
        self._items.append(diagnostic)
        if self.warn:
            warnings.warn(str(diagnostic), LockerForgeWarning, stacklevel=3)
        return diagnostic

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        self._items.extend(diagnostics)

    def freeze(self) -> Tuple[Diagnostic, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)
