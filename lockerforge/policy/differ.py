"""
lockerforge/policy/differ.py

Canonicalize two policies and classify every collection and rule.

Canonical rule key:
    (file_type, rule_type, action, principal, rule_info)

    rule_info   Publisher -> "publisher|product|binary"
                Path      -> path
                Hash      -> source file name

Rule detail:
    Publisher -> "<min_version> to <max_version>"
    Path      -> exceptions, one per line
    Hash      -> hash value

Laws:
    1. A key seen twice in one policy concatenates both details with a
       line break. No variant is dropped.
    2. Details are compared after splitting into lines, sorting, and
       rejoining, so list order never decides equality.
    3. Output is sorted by key: collections first, then rules.
    4. compare(a, b) and compare(b, a) mirror each other.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from lockerforge.core.models import (
    HashRule,
    PathRule,
    Policy,
    PublisherRule,
    Rule,
    RuleCollectionType,
)


LINE_BREAK = "\n"


class Classification(Enum):
    SAME               = "=="
    DIFFERENT          = "<->"
    ONLY_IN_REFERENCE  = "<--"
    ONLY_IN_COMPARISON = "-->"

    @property
    def label(self) -> str:
        return _LABELS[self]

    def mirrored(self) -> "Classification":
        if self is Classification.ONLY_IN_REFERENCE:
            return Classification.ONLY_IN_COMPARISON
        if self is Classification.ONLY_IN_COMPARISON:
            return Classification.ONLY_IN_REFERENCE
        return self


_LABELS = {
    Classification.SAME:               "Same",
    Classification.DIFFERENT:          "Different",
    Classification.ONLY_IN_REFERENCE:  "OnlyInReference",
    Classification.ONLY_IN_COMPARISON: "OnlyInComparison",
}


class ComparisonLevel(Enum):
    COLLECTION = "RuleCollection"
    RULE       = "Rule"


class RuleKey(NamedTuple):
    file_type:  str
    rule_type:  str
    action:     str
    principal:  str
    rule_info:  str


@dataclass(frozen=True)
class ComparisonRecord:
    level:              ComparisonLevel
    classification:     Classification
    canonical_key:      Tuple[str, ...]
    reference_detail:   Optional[str]
    comparison_detail:  Optional[str]

    def to_dict(self) -> dict:
        return {
            "level":             self.level.value,
            "classification":    self.classification.label,
            "symbol":            self.classification.value,
            "key":               list(self.canonical_key),
            "reference_detail":  self.reference_detail,
            "comparison_detail": self.comparison_detail,
        }


@dataclass(frozen=True)
class CanonicalPolicy:
    """A policy reduced to the key space the differ compares in."""
    collections: Dict[str, str]
    rules:       Dict[RuleKey, str]


# ─────────────────────────────────────────────────────────────
# Canonicalization
# ─────────────────────────────────────────────────────────────

def rule_info(rule: Rule) -> str:
    match rule:
        case PublisherRule():
            return f"{rule.publisher}|{rule.product}|{rule.binary}"
        case PathRule():
            return rule.path
        case HashRule():
            return rule.source_file_name
        case _:
            raise TypeError(f"Not a rule: {rule!r}")


def rule_detail(rule: Rule) -> str:
    match rule:
        case PublisherRule():
            return f"{rule.min_version} to {rule.max_version}"
        case PathRule():
            return LINE_BREAK.join(rule.exceptions)
        case HashRule():
            return rule.hash_value
        case _:
            raise TypeError(f"Not a rule: {rule!r}")


def rule_key(collection_type: RuleCollectionType, rule: Rule) -> RuleKey:
    return RuleKey(
        file_type=collection_type.value,
        rule_type=rule.rule_type.value,
        action=rule.action.value,
        principal=rule.principal,
        rule_info=rule_info(rule),
    )


def normalize_detail(detail: str) -> str:
    """Sort the lines of a detail string so ordering never matters."""
    return LINE_BREAK.join(sorted(detail.split(LINE_BREAK)))


def canonicalize_policy(policy: Policy) -> CanonicalPolicy:
    collections: Dict[str, str] = {}
    rules: Dict[RuleKey, str] = {}

    for collection in policy.collections:
        collections[collection.collection_type.value] = collection.enforcement_mode.value

    for collection_type, rule in policy.iter_rules():
        key = rule_key(collection_type, rule)
        detail = rule_detail(rule)
        if key in rules:
            rules[key] = rules[key] + LINE_BREAK + detail
        else:
            rules[key] = detail

    return CanonicalPolicy(
        collections=collections,
        rules={key: normalize_detail(detail) for key, detail in rules.items()},
    )


# ─────────────────────────────────────────────────────────────
# Comparison
# ─────────────────────────────────────────────────────────────

def _classify(reference: Optional[str], comparison: Optional[str]) -> Classification:
    if comparison is None:
        return Classification.ONLY_IN_REFERENCE
    if reference is None:
        return Classification.ONLY_IN_COMPARISON
    if reference == comparison:
        return Classification.SAME
    return Classification.DIFFERENT


def _compare_maps(level: ComparisonLevel, reference: dict, comparison: dict) -> List[ComparisonRecord]:
    records = []
    for key in sorted(set(reference) | set(comparison)):
        ref_detail = reference.get(key)
        cmp_detail = comparison.get(key)
        records.append(ComparisonRecord(
            level=level,
            classification=_classify(ref_detail, cmp_detail),
            canonical_key=tuple(key) if isinstance(key, tuple) else (key,),
            reference_detail=ref_detail,
            comparison_detail=cmp_detail,
        ))
    return records


def compare_policies(
    reference: Policy,
    comparison: Policy,
    include_same: bool = True,
) -> List[ComparisonRecord]:
    """
    Compare two policies.

    Returns collection-level records followed by rule-level records,
    each group in lexicographic key order. With include_same=False the
    Same rows are dropped.
    """
    ref = canonicalize_policy(reference)
    comp = canonicalize_policy(comparison)

    records = _compare_maps(ComparisonLevel.COLLECTION, ref.collections, comp.collections)
    records += _compare_maps(ComparisonLevel.RULE, ref.rules, comp.rules)

    if not include_same:
        records = [r for r in records if r.classification is not Classification.SAME]
    return records


def has_differences(records: Iterable[ComparisonRecord]) -> bool:
    return any(r.classification is not Classification.SAME for r in records)
