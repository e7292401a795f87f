"""
lockerforge/core/models.py

LockerForge Data Model

═══════════════════════════════════════════════════════════════════
CONTRACTS
═══════════════════════════════════════════════════════════════════

CONTRACT 1: Rules are values
    PublisherRule, HashRule and PathRule are frozen dataclasses.
    Builders construct a finished rule in one step; identifiers are
    changed with dataclasses.replace(), never by mutation.

CONTRACT 2: Wildcard
    "*" is the only wildcard for product, binary and version fields.

CONTRACT 3: Hash text
    HashRule.hash_value is "0x" followed by upper-case hex (AppLocker form).

CONTRACT 4: Scope
    A rule's scope is a flag set over the five rule collections. The same
    rule value may be placed in several collections.
═══════════════════════════════════════════════════════════════════
"""

import ntpath
import re
from dataclasses import dataclass, replace
from enum import Enum, Flag, IntEnum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from lockerforge.core.canonical import policy_fingerprint
from lockerforge.core.exceptions import (
    MalformedVersionError,
    PolicyFormatError,
    UnknownCollectionTypeError,
    ValidationError,
)


# ─────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────

WILDCARD = "*"

EVERYONE_SID       = "S-1-1-0"
ADMINISTRATORS_SID = "S-1-5-32-544"

_HEX_RE = re.compile(r"^[0-9A-Fa-f]+$")


# ─────────────────────────────────────────────────────────────
# Enumerations
# ─────────────────────────────────────────────────────────────

class RuleCollectionType(Enum):
    EXE    = "Exe"
    DLL    = "Dll"
    SCRIPT = "Script"
    MSI    = "Msi"
    APPX   = "Appx"

    @classmethod
    def parse(cls, text: str) -> "RuleCollectionType":
        """Case-insensitive lookup; raises UnknownCollectionTypeError."""
        for member in cls:
            if member.value.lower() == str(text).strip().lower():
                return member
        raise UnknownCollectionTypeError(
            f"Unknown rule collection type: {text!r}",
            {"known": ", ".join(m.value for m in cls)},
        )


class Scope(Flag):
    EXE    = 1
    DLL    = 2
    SCRIPT = 4
    MSI    = 8
    APPX   = 16

    DEFAULT = EXE | DLL | SCRIPT
    ALL     = EXE | DLL | SCRIPT | MSI | APPX

    @classmethod
    def of(cls, *collection_types: RuleCollectionType) -> "Scope":
        scope = cls(0)
        for collection_type in collection_types:
            scope |= _SCOPE_BY_COLLECTION[collection_type]
        return scope

    @classmethod
    def parse(cls, names) -> "Scope":
        """Build a scope from collection names ("Exe", "dll", ...)."""
        if isinstance(names, str):
            names = [names]
        return cls.of(*(RuleCollectionType.parse(n) for n in names))

    def collections(self) -> List[RuleCollectionType]:
        """Collection types covered by this scope, in declaration order."""
        return [
            collection_type
            for collection_type, flag in _SCOPE_BY_COLLECTION.items()
            if self & flag
        ]


_SCOPE_BY_COLLECTION: Dict[RuleCollectionType, Scope] = {
    RuleCollectionType.EXE:    Scope.EXE,
    RuleCollectionType.DLL:    Scope.DLL,
    RuleCollectionType.SCRIPT: Scope.SCRIPT,
    RuleCollectionType.MSI:    Scope.MSI,
    RuleCollectionType.APPX:   Scope.APPX,
}


class Action(Enum):
    ALLOW = "Allow"
    DENY  = "Deny"


class EnforcementMode(Enum):
    NOT_CONFIGURED = "NotConfigured"
    AUDIT_ONLY     = "AuditOnly"
    ENABLED        = "Enabled"


class RuleType(Enum):
    PUBLISHER = "Publisher"
    HASH      = "Hash"
    PATH      = "Path"


class Granularity(IntEnum):
    """How narrowly a publisher rule is scoped. Higher is narrower."""
    PUBLISHER_ONLY                   = 1
    PUBLISHER_PRODUCT                = 2
    PUBLISHER_PRODUCT_BINARY         = 3
    PUBLISHER_PRODUCT_BINARY_VERSION = 4

    @classmethod
    def parse(cls, text: str) -> "Granularity":
        """Accepts names in any case, with or without separators."""
        wanted = re.sub(r"[^a-z]", "", str(text).lower())
        for member in cls:
            if member.name.replace("_", "").lower() == wanted:
                return member
        raise ValidationError(
            f"Unknown granularity: {text!r}",
            {"known": ", ".join(m.name for m in cls)},
        )

    @property
    def uses_product(self) -> bool:
        return self >= Granularity.PUBLISHER_PRODUCT

    @property
    def uses_binary(self) -> bool:
        return self >= Granularity.PUBLISHER_PRODUCT_BINARY

    @property
    def uses_version(self) -> bool:
        return self >= Granularity.PUBLISHER_PRODUCT_BINARY_VERSION


# ─────────────────────────────────────────────────────────────
# File versions
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True, order=True)
class FileVersion:
    """
    A dotted file version of up to four numeric parts.

    Missing parts are padded with zero, so "10.0" == "10.0.0.0", and
    str() always gives the four-part form AppLocker writes in
    BinaryVersionRange.
    """
    parts: Tuple[int, int, int, int]

    @classmethod
    def parse(cls, text: str) -> "FileVersion":
        raw = (text or "").strip()
        pieces = raw.split(".")
        if not raw or len(pieces) > 4 or not all(p.isascii() and p.isdigit() for p in pieces):
            raise MalformedVersionError(f"Unparsable file version: {text!r}")
        numbers = [int(p) for p in pieces] + [0] * (4 - len(pieces))
        return cls(parts=tuple(numbers))

    def __str__(self) -> str:
        return ".".join(str(p) for p in self.parts)


def lower_version(a: str, b: str) -> str:
    """
    Return the lower of two version texts, in four-part form.

    A wildcard on either side wins: a rule that already admits every
    version must not be narrowed by a later observation.
    """
    if a == WILDCARD or b == WILDCARD:
        return WILDCARD
    return str(min(FileVersion.parse(a), FileVersion.parse(b)))


# ─────────────────────────────────────────────────────────────
# Scan records
# ─────────────────────────────────────────────────────────────

_EXTENSION_COLLECTIONS: Dict[str, RuleCollectionType] = {
    ".exe":  RuleCollectionType.EXE,
    ".com":  RuleCollectionType.EXE,
    ".dll":  RuleCollectionType.DLL,
    ".ocx":  RuleCollectionType.DLL,
    ".ps1":  RuleCollectionType.SCRIPT,
    ".bat":  RuleCollectionType.SCRIPT,
    ".cmd":  RuleCollectionType.SCRIPT,
    ".vbs":  RuleCollectionType.SCRIPT,
    ".js":   RuleCollectionType.SCRIPT,
    ".msi":  RuleCollectionType.MSI,
    ".msp":  RuleCollectionType.MSI,
    ".mst":  RuleCollectionType.MSI,
    ".appx": RuleCollectionType.APPX,
    ".msix": RuleCollectionType.APPX,
}


def infer_collection_type(path: str) -> Optional[RuleCollectionType]:
    """Map a file path to its rule collection by extension."""
    _, ext = ntpath.splitext(path or "")
    return _EXTENSION_COLLECTIONS.get(ext.lower())


@dataclass(frozen=True)
class SignerInfo:
    """Already-verified signature data for one file."""
    publisher_name: str
    product_name:   str = ""
    binary_name:    str = ""
    version:        str = ""


@dataclass(frozen=True)
class ScanRecord:
    """One file or directory observed by the external scanner."""
    path:         str
    is_directory: bool = False
    signer:       Optional[SignerInfo] = None
    content_hash: Optional[str] = None
    length:       int = 0
    file_type:    Optional[RuleCollectionType] = None

    @property
    def file_name(self) -> str:
        return ntpath.basename(self.path)

    @property
    def collection_type(self) -> Optional[RuleCollectionType]:
        return self.file_type or infer_collection_type(self.path)


def normalize_hash(value: str) -> str:
    """
    Normalize a SHA256 digest to AppLocker text form ("0x" + upper hex).

    Raises ValidationError if the value is not hexadecimal.
    """
    text = (value or "").strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    if not text or not _HEX_RE.match(text):
        raise ValidationError(f"Not a hexadecimal hash: {value!r}")
    return "0x" + text.upper()


# ─────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RuleBase:
    """Fields every rule carries, whatever its condition type."""
    rule_id:     str = ""
    name:        str = ""
    description: str = ""
    principal:   str = EVERYONE_SID
    action:      Action = Action.ALLOW
    scope:       Scope = Scope.DEFAULT

    def with_id(self, rule_id: str):
        return replace(self, rule_id=rule_id)


@dataclass(frozen=True)
class PublisherRule(RuleBase):
    publisher:   str = ""
    product:     str = WILDCARD
    binary:      str = WILDCARD
    min_version: str = WILDCARD
    max_version: str = WILDCARD

    @property
    def rule_type(self) -> RuleType:
        return RuleType.PUBLISHER

    @property
    def is_publisher_only(self) -> bool:
        return self.product == WILDCARD and self.binary == WILDCARD


@dataclass(frozen=True)
class HashRule(RuleBase):
    hash_value:         str = ""
    source_file_name:   str = ""
    source_file_length: int = 0

    @property
    def rule_type(self) -> RuleType:
        return RuleType.HASH


@dataclass(frozen=True)
class PathRule(RuleBase):
    path:       str = ""
    exceptions: Tuple[str, ...] = ()

    @property
    def rule_type(self) -> RuleType:
        return RuleType.PATH


Rule = Union[PublisherRule, HashRule, PathRule]


def rule_to_dict(rule: Rule) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "rule_type":   rule.rule_type.value,
        "rule_id":     rule.rule_id,
        "name":        rule.name,
        "description": rule.description,
        "principal":   rule.principal,
        "action":      rule.action.value,
        "scope":       [c.value for c in rule.scope.collections()],
    }
    match rule:
        case PublisherRule():
            data.update(
                publisher=rule.publisher,
                product=rule.product,
                binary=rule.binary,
                min_version=rule.min_version,
                max_version=rule.max_version,
            )
        case HashRule():
            data.update(
                hash_value=rule.hash_value,
                source_file_name=rule.source_file_name,
                source_file_length=rule.source_file_length,
            )
        case PathRule():
            data.update(path=rule.path, exceptions=list(rule.exceptions))
        case _:
            raise TypeError(f"Not a rule: {rule!r}")
    return data


def rule_from_dict(data: Dict[str, Any]) -> Rule:
    try:
        common = dict(
            rule_id=data.get("rule_id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            principal=data.get("principal", EVERYONE_SID),
            action=Action(data.get("action", Action.ALLOW.value)),
            scope=Scope.parse(data.get("scope", [])),
        )
        rule_type = RuleType(data["rule_type"])
        if rule_type is RuleType.PUBLISHER:
            return PublisherRule(
                publisher=data["publisher"],
                product=data.get("product", WILDCARD),
                binary=data.get("binary", WILDCARD),
                min_version=data.get("min_version", WILDCARD),
                max_version=data.get("max_version", WILDCARD),
                **common,
            )
        if rule_type is RuleType.HASH:
            return HashRule(
                hash_value=normalize_hash(data["hash_value"]),
                source_file_name=data.get("source_file_name", ""),
                source_file_length=int(data.get("source_file_length", 0)),
                **common,
            )
        return PathRule(
            path=data["path"],
            exceptions=tuple(data.get("exceptions", [])),
            **common,
        )
    except (KeyError, ValueError, TypeError, ValidationError) as e:
        raise PolicyFormatError(f"Invalid rule entry: {e}", {"rule": data.get("rule_id", "?")})


# ─────────────────────────────────────────────────────────────
# Policy
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RuleCollection:
    collection_type:  RuleCollectionType
    enforcement_mode: EnforcementMode = EnforcementMode.NOT_CONFIGURED
    rules:            Tuple[Rule, ...] = ()


@dataclass(frozen=True)
class PolicyInfo:
    """Descriptive fields. They never change what a policy allows."""
    name:        str = ""
    description: str = ""
    last_update: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "name":        self.name,
            "description": self.description,
            "last_update": self.last_update,
        }

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "PolicyInfo":
        if not data:
            return PolicyInfo()
        if not isinstance(data, dict):
            raise PolicyFormatError("Policy info must be a mapping")
        return PolicyInfo(
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            last_update=str(data.get("last_update", "")),
        )


@dataclass(frozen=True)
class Policy:
    """
    A complete policy: one RuleCollection per declared collection type.

    Collections keep the order in which they were declared.
    """
    collections: Tuple[RuleCollection, ...] = ()
    info:        PolicyInfo = PolicyInfo()

    def get(self, collection_type: RuleCollectionType) -> Optional[RuleCollection]:
        for collection in self.collections:
            if collection.collection_type is collection_type:
                return collection
        return None

    @property
    def collection_types(self) -> List[RuleCollectionType]:
        return [c.collection_type for c in self.collections]

    def iter_rules(self) -> Iterator[Tuple[RuleCollectionType, Rule]]:
        for collection in self.collections:
            for rule in collection.rules:
                yield collection.collection_type, rule

    @property
    def rule_count(self) -> int:
        return sum(len(c.rules) for c in self.collections)

    def with_enforcement_mode(self, mode: EnforcementMode) -> "Policy":
        """Return a copy with every collection set to the same mode."""
        return replace(
            self,
            collections=tuple(
                replace(c, enforcement_mode=mode) for c in self.collections
            ),
        )

    def with_info(self, **changes: str) -> "Policy":
        return replace(self, info=replace(self.info, **changes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "info": self.info.to_dict(),
            "collections": [
                {
                    "type":             c.collection_type.value,
                    "enforcement_mode": c.enforcement_mode.value,
                    "rules":            [rule_to_dict(r) for r in c.rules],
                }
                for c in self.collections
            ],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Policy":
        collections = []
        for entry in data.get("collections", []):
            try:
                collection_type = RuleCollectionType.parse(entry["type"])
                mode = EnforcementMode(entry.get("enforcement_mode", "NotConfigured"))
            except (KeyError, ValueError, UnknownCollectionTypeError) as e:
                raise PolicyFormatError(f"Invalid rule collection entry: {e}")
            collections.append(RuleCollection(
                collection_type=collection_type,
                enforcement_mode=mode,
                rules=tuple(rule_from_dict(r) for r in entry.get("rules", [])),
            ))
        return Policy(
            collections=tuple(collections),
            info=PolicyInfo.from_dict(data.get("info")),
        )

    @property
    def policy_hash(self) -> str:
        """Fingerprint of the rule content; the info block does not count."""
        return policy_fingerprint(self.to_dict())
