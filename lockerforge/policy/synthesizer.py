"""
Rule synthesis: scan records -> publisher rules and hash rules.

Two passes over already-collected state:

    1. Publisher pass. Every signed record with the metadata its
       effective granularity needs contributes to a PublisherKey.
       Repeated keys keep the LOWER minimum version, so a rule never
       becomes more restrictive as more files are seen. Files under a
       source path with enforce_minimum_version are keyed at the
       version granularity regardless of the configured one.

    2. Hash pass. Unsigned records, and signed records missing required
       metadata, become hash rules keyed by (file name, hash). A signed
       record is skipped when a publisher-only rule for its publisher
       exists, whether synthesized here or passed in as a known rule
       (static or base rules). The publisher rule wins regardless of
       record order.

Collection is split from building so partial states from separate
workers can be merged (SynthesisState.merge) before rules are built.
"""

import re
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Set, Tuple

from lockerforge.config import SynthesisConfig
from lockerforge.core.diagnostics import Diagnostic, DiagnosticCode, DiagnosticSink
from lockerforge.core.exceptions import MalformedVersionError, ValidationError
from lockerforge.core.models import (
    EVERYONE_SID,
    WILDCARD,
    Action,
    FileVersion,
    Granularity,
    HashRule,
    PathRule,
    PublisherRule,
    Rule,
    RuleCollectionType,
    ScanRecord,
    Scope,
    lower_version,
    normalize_hash,
)


IdFactory = Callable[[], str]


def new_rule_id() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────────
# Keys
# ─────────────────────────────────────────────────────────────

class PublisherKey(NamedTuple):
    collection: RuleCollectionType
    publisher:  str
    product:    str
    binary:     str

    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.collection.value, self.publisher, self.product, self.binary)


class HashKey(NamedTuple):
    collection:       RuleCollectionType
    source_file_name: str
    hash_value:       str

    def sort_key(self) -> Tuple[str, str, str]:
        return (self.collection.value, self.source_file_name, self.hash_value)


# ─────────────────────────────────────────────────────────────
# Microsoft minimums
# ─────────────────────────────────────────────────────────────

_MICROSOFT_PUBLISHER = "O=MICROSOFT CORPORATION"
_WINDOWS_PRODUCT_RE = re.compile(r"windows.*operating\s+system", re.IGNORECASE)
_ORGANIZATION_RE = re.compile(r"(?:^|,)\s*O=(\"[^\"]*\"|[^,]*)")


def is_microsoft_publisher(publisher_name: str) -> bool:
    return _MICROSOFT_PUBLISHER in publisher_name.upper()


def effective_granularity(configured: Granularity, record: ScanRecord) -> Granularity:
    """
    Raise the configured granularity for Microsoft-signed files.

    Any Microsoft file is scoped at least to its product. Windows and
    Visual Studio binaries are scoped at least to the binary, since a
    product-wide rule for either would admit far too much.
    """
    signer = record.signer
    if signer is None or not is_microsoft_publisher(signer.publisher_name):
        return configured

    granularity = max(configured, Granularity.PUBLISHER_PRODUCT)
    product = signer.product_name.replace("®", "")
    if _WINDOWS_PRODUCT_RE.search(product) or "visual studio" in product.lower():
        granularity = max(granularity, Granularity.PUBLISHER_PRODUCT_BINARY)
    return granularity


def organization_name(publisher_name: str) -> str:
    """The O= component of a certificate subject, or the whole subject."""
    match = _ORGANIZATION_RE.search(publisher_name)
    if match:
        return match.group(1).strip().strip('"')
    return publisher_name


# ─────────────────────────────────────────────────────────────
# Accumulated state
# ─────────────────────────────────────────────────────────────

@dataclass
class _PublisherDraft:
    min_version:   str
    product_names: Set[str] = field(default_factory=set)
    sources:       Set[str] = field(default_factory=set)


@dataclass
class _HashDraft:
    length: int
    sources: Set[str] = field(default_factory=set)


@dataclass
class SynthesisState:
    """
    Partial synthesis output before rules are built.

    Not safe for concurrent writers: give each worker its own state and
    merge() them on one thread afterwards.
    """
    publishers:  Dict[PublisherKey, _PublisherDraft] = field(default_factory=dict)
    hash_inputs: List[Tuple[ScanRecord, RuleCollectionType, str]] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def add_publisher(
        self,
        key: PublisherKey,
        min_version: str,
        product_names: Iterable[str],
        sources: Iterable[str],
    ) -> None:
        draft = self.publishers.get(key)
        if draft is None:
            draft = self.publishers[key] = _PublisherDraft(min_version=min_version)
        else:
            draft.min_version = lower_version(draft.min_version, min_version)
        draft.product_names.update(name for name in product_names if name)
        draft.sources.update(sources)

    def merge(self, other: "SynthesisState") -> "SynthesisState":
        """Fold another state into this one, with the same rules as a single pass."""
        for key, draft in other.publishers.items():
            self.add_publisher(key, draft.min_version, draft.product_names, draft.sources)
        self.hash_inputs.extend(other.hash_inputs)
        self.diagnostics.extend(other.diagnostics)
        return self


@dataclass(frozen=True)
class SynthesisResult:
    publisher_rules: Tuple[PublisherRule, ...] = ()
    hash_rules:      Tuple[HashRule, ...] = ()
    diagnostics:     Tuple[Diagnostic, ...] = ()

    @property
    def rules(self) -> Tuple:
        return self.publisher_rules + self.hash_rules


# ─────────────────────────────────────────────────────────────
# Synthesizer
# ─────────────────────────────────────────────────────────────

class RuleSynthesizer:
    """
    Turns scan records into publisher and hash rules.

        synthesizer = RuleSynthesizer(SynthesisConfig(granularity=...))
        result = synthesizer.synthesize(records)
        result.publisher_rules, result.hash_rules, result.diagnostics
    """

    def __init__(
        self,
        config: Optional[SynthesisConfig] = None,
        id_factory: IdFactory = new_rule_id,
    ):
        self.config = config or SynthesisConfig()
        self.id_factory = id_factory

    def synthesize(
        self,
        records: Iterable[ScanRecord],
        known_rules: Iterable[Rule] = (),
    ) -> SynthesisResult:
        return self.build(self.collect(records), known_rules)

    # ── Collection ────────────────────────────────────────────

    def collect(self, records: Iterable[ScanRecord]) -> SynthesisState:
        state = SynthesisState()
        sink = DiagnosticSink(warn=self.config.warn_on_diagnostic)

        for record in records:
            if record.is_directory:
                continue

            collection = record.collection_type
            if collection is None:
                sink.add(
                    DiagnosticCode.MISSING_METADATA,
                    "Cannot determine rule collection from file type",
                    record.path,
                )
                continue

            if not self._collect_publisher(state, record, collection, sink):
                state.hash_inputs.append((record, collection, record.file_name))

        state.diagnostics.extend(sink)
        return state

    def _collect_publisher(
        self,
        state: SynthesisState,
        record: ScanRecord,
        collection: RuleCollectionType,
        sink: DiagnosticSink,
    ) -> bool:
        """Add the record's publisher key; False if it needs a hash rule instead."""
        signer = record.signer
        if signer is None or not signer.publisher_name:
            return False

        granularity = effective_granularity(self.config.granularity, record)
        if self.config.pins_version(record.path):
            granularity = Granularity.PUBLISHER_PRODUCT_BINARY_VERSION
        if granularity.uses_product and not signer.product_name:
            return False
        if granularity.uses_binary and not signer.binary_name:
            return False
        if granularity.uses_version and not signer.version:
            return False

        min_version = WILDCARD
        if granularity.uses_version:
            try:
                min_version = str(FileVersion.parse(signer.version))
            except MalformedVersionError as e:
                sink.add(DiagnosticCode.MALFORMED_VERSION, e.message, record.path)

        key = PublisherKey(
            collection=collection,
            publisher=signer.publisher_name,
            product=signer.product_name if granularity.uses_product else WILDCARD,
            binary=signer.binary_name if granularity.uses_binary else WILDCARD,
        )
        state.add_publisher(key, min_version, [signer.product_name], [record.path])
        return True

    # ── Building ──────────────────────────────────────────────

    def build(
        self,
        state: SynthesisState,
        known_rules: Iterable[Rule] = (),
    ) -> SynthesisResult:
        sink = DiagnosticSink(warn=self.config.warn_on_diagnostic)
        sink.extend(state.diagnostics)

        publisher_only = {
            (key.collection, key.publisher)
            for key in state.publishers
            if key.product == WILDCARD and not is_microsoft_publisher(key.publisher)
        }
        publisher_only.update(_publisher_only_keys(known_rules))

        hashes: Dict[HashKey, _HashDraft] = {}
        for record, collection, file_name in state.hash_inputs:
            signer = record.signer
            if signer is not None and signer.publisher_name and (
                (collection, signer.publisher_name) in publisher_only
                or (collection, WILDCARD) in publisher_only
            ):
                continue

            if not record.content_hash:
                sink.add(
                    DiagnosticCode.MISSING_METADATA,
                    "No usable signer and no content hash",
                    record.path,
                )
                continue
            try:
                hash_value = normalize_hash(record.content_hash)
            except ValidationError as e:
                sink.add(DiagnosticCode.MISSING_METADATA, e.message, record.path)
                continue

            key = HashKey(collection, file_name, hash_value)
            draft = hashes.get(key)
            if draft is None:
                draft = hashes[key] = _HashDraft(length=record.length)
            draft.sources.add(record.path)

        publisher_rules = tuple(
            self._publisher_rule(key, state.publishers[key])
            for key in sorted(state.publishers, key=PublisherKey.sort_key)
        )
        hash_rules = tuple(
            self._hash_rule(key, hashes[key])
            for key in sorted(hashes, key=HashKey.sort_key)
        )
        return SynthesisResult(
            publisher_rules=publisher_rules,
            hash_rules=hash_rules,
            diagnostics=sink.freeze(),
        )

    def _publisher_rule(self, key: PublisherKey, draft: _PublisherDraft) -> PublisherRule:
        organization = organization_name(key.publisher)
        label = " / ".join(
            part for part in (organization, key.product, key.binary) if part != WILDCARD
        )
        if draft.min_version != WILDCARD:
            label += f", version {draft.min_version} and above"

        description = (
            f"Publisher: {key.publisher}; "
            f"Product: {', '.join(sorted(draft.product_names)) or WILDCARD}; "
            f"Source: {'; '.join(sorted(draft.sources))}"
        )
        return PublisherRule(
            rule_id=self.id_factory(),
            name=f"{key.collection.value}: {label}",
            description=description,
            principal=self.config.principal,
            action=self.config.action,
            scope=Scope.of(key.collection),
            publisher=key.publisher,
            product=key.product,
            binary=key.binary,
            min_version=draft.min_version,
            max_version=WILDCARD,
        )

    def _hash_rule(self, key: HashKey, draft: _HashDraft) -> HashRule:
        return HashRule(
            rule_id=self.id_factory(),
            name=f"{key.collection.value}: {key.source_file_name} (hash)",
            description=f"Source: {'; '.join(sorted(draft.sources))}",
            principal=self.config.principal,
            action=self.config.action,
            scope=Scope.of(key.collection),
            hash_value=key.hash_value,
            source_file_name=key.source_file_name,
            source_file_length=draft.length,
        )


def _publisher_only_keys(rules: Iterable[Rule]) -> Set[Tuple[RuleCollectionType, str]]:
    keys = set()
    for rule in rules:
        if (
            isinstance(rule, PublisherRule)
            and rule.action is Action.ALLOW
            and rule.is_publisher_only
        ):
            keys.update((collection, rule.publisher) for collection in rule.scope.collections())
    return keys


def merge_synthesis_states(states: Iterable[SynthesisState]) -> SynthesisState:
    """Reduce per-worker states into one, on the calling thread."""
    merged = SynthesisState()
    for state in states:
        merged.merge(state)
    return merged


# ─────────────────────────────────────────────────────────────
# Path rules
# ─────────────────────────────────────────────────────────────

def ordered_exceptions(exceptions: Iterable[str]) -> Tuple[str, ...]:
    """De-duplicate case-insensitively, keeping the first spelling and order."""
    seen: Set[str] = set()
    result = []
    for exception in exceptions:
        exception = exception.strip()
        if not exception or exception.lower() in seen:
            continue
        seen.add(exception.lower())
        result.append(exception)
    return tuple(result)


def build_path_rule(
    path: str,
    exceptions: Iterable[str] = (),
    principal: str = EVERYONE_SID,
    action: Action = Action.ALLOW,
    scope: Scope = Scope.DEFAULT,
    name: Optional[str] = None,
    description: Optional[str] = None,
    id_factory: IdFactory = new_rule_id,
) -> PathRule:
    """Build a path rule whose exceptions come from reduced exclusion lists."""
    exceptions = ordered_exceptions(exceptions)
    if description is None:
        description = f"Path: {path}"
        if exceptions:
            description += f"; {len(exceptions)} exception(s)"
    return PathRule(
        rule_id=id_factory(),
        name=name or f"{action.value} {path}",
        description=description,
        principal=principal,
        action=action,
        scope=scope,
        path=path,
        exceptions=exceptions,
    )
