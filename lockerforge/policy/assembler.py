"""
Policy assembly: rule fragments -> Audit and Enforce policies.

Fragments come from synthesis passes and static rule sets. Each rule is
appended to every collection its scope names. Fragments are trusted to
be internally unique; nothing is de-duplicated across them.

Identifiers are unique across the assembled policy:
    - a rule without an id gets one
    - a rule placed in several collections keeps its id in the first and
      gets a fresh one for each further placement
    - a different rule reusing a seen id gets a fresh one, and a
      DuplicateRuleId diagnostic is recorded

A rule that names a collection the template does not declare is
skipped entirely (UnknownCollectionType) and assembly continues.
"""

from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from lockerforge.core.diagnostics import Diagnostic, DiagnosticCode, DiagnosticSink
from lockerforge.core.models import (
    EnforcementMode,
    Policy,
    PolicyInfo,
    Rule,
    RuleCollection,
    RuleCollectionType,
)
from lockerforge.core.time import policy_timestamp
from lockerforge.policy.synthesizer import IdFactory, SynthesisResult, new_rule_id


@dataclass(frozen=True)
class RuleFragment:
    """A batch of rules from one source (a synthesis pass, a static file...)."""
    source: str
    rules:  Tuple[Rule, ...] = ()

    @classmethod
    def from_synthesis(cls, source: str, result: SynthesisResult) -> "RuleFragment":
        return cls(source=source, rules=result.rules)


@dataclass(frozen=True)
class PolicyTemplate:
    """The collections a policy declares, in output order."""
    collection_types: Tuple[RuleCollectionType, ...] = tuple(RuleCollectionType)

    def declares(self, collection_type: RuleCollectionType) -> bool:
        return collection_type in self.collection_types


@dataclass(frozen=True)
class AssemblyResult:
    audit:       Policy
    enforce:     Policy
    diagnostics: Tuple[Diagnostic, ...] = ()


class PolicyAssembler:
    """
    Merges fragments into one in-memory policy.

        assembler = PolicyAssembler()
        assembler.add_fragment(RuleFragment.from_synthesis("scan", result))
        assembler.add_fragment(base_rules_fragment(...))
        output = assembler.build()
        output.audit, output.enforce, output.diagnostics
    """

    def __init__(
        self,
        template: Optional[PolicyTemplate] = None,
        id_factory: IdFactory = new_rule_id,
        warn_on_diagnostic: bool = False,
        info: Optional[PolicyInfo] = None,
        clock: Callable[[], str] = policy_timestamp,
    ):
        self.template = template or PolicyTemplate()
        self.id_factory = id_factory
        self.info = info or PolicyInfo()
        self.clock = clock
        self._collections: Dict[RuleCollectionType, List[Rule]] = {
            t: [] for t in self.template.collection_types
        }
        self._used_ids: Set[str] = set()
        self._sink = DiagnosticSink(warn=warn_on_diagnostic)

    def add_fragment(self, fragment: RuleFragment) -> None:
        for rule in fragment.rules:
            self.add_rule(rule, source=fragment.source)

    def add_fragments(self, fragments: Iterable[RuleFragment]) -> None:
        for fragment in fragments:
            self.add_fragment(fragment)

    def add_rule(self, rule: Rule, source: str = "") -> None:
        targets = rule.scope.collections()
        if not targets:
            self._sink.add(
                DiagnosticCode.UNKNOWN_COLLECTION_TYPE,
                "Rule names no rule collection; skipped",
                _subject(rule, source),
            )
            return

        undeclared = [t for t in targets if not self.template.declares(t)]
        if undeclared:
            self._sink.add(
                DiagnosticCode.UNKNOWN_COLLECTION_TYPE,
                f"Rule targets undeclared collection(s) "
                f"{', '.join(t.value for t in undeclared)}; skipped",
                _subject(rule, source),
            )
            return

        placed = self._unique(rule, source)
        self._collections[targets[0]].append(placed)
        for collection_type in targets[1:]:
            self._collections[collection_type].append(placed.with_id(self._fresh_id()))

    def _fresh_id(self) -> str:
        rule_id = self.id_factory()
        while not rule_id or rule_id in self._used_ids:
            rule_id = self.id_factory()
        self._used_ids.add(rule_id)
        return rule_id

    def _unique(self, rule: Rule, source: str) -> Rule:
        if not rule.rule_id:
            return rule.with_id(self._fresh_id())
        if rule.rule_id in self._used_ids:
            self._sink.add(
                DiagnosticCode.DUPLICATE_RULE_ID,
                f"Identifier {rule.rule_id} already used; assigned a new one",
                _subject(rule, source),
            )
            return rule.with_id(self._fresh_id())
        self._used_ids.add(rule.rule_id)
        return rule

    def _assembled(self, mode: EnforcementMode, info: PolicyInfo) -> Policy:
        return Policy(
            info=info,
            collections=tuple(
                RuleCollection(
                    collection_type=t,
                    enforcement_mode=mode,
                    rules=tuple(self._collections[t]),
                )
                for t in self.template.collection_types
            )
        )

    def build(self) -> AssemblyResult:
        """
        Set one enforcement mode across all collections and emit both variants.

        Both carry the same info; last_update is stamped now unless given.
        """
        info = self.info
        if not info.last_update:
            info = replace(info, last_update=self.clock())
        policy = self._assembled(EnforcementMode.NOT_CONFIGURED, info)
        return AssemblyResult(
            audit=policy.with_enforcement_mode(EnforcementMode.AUDIT_ONLY),
            enforce=policy.with_enforcement_mode(EnforcementMode.ENABLED),
            diagnostics=self._sink.freeze(),
        )


def assemble_policy(
    fragments: Sequence[RuleFragment],
    template: Optional[PolicyTemplate] = None,
    id_factory: IdFactory = new_rule_id,
) -> AssemblyResult:
    """One-shot helper around PolicyAssembler."""
    assembler = PolicyAssembler(template=template, id_factory=id_factory)
    assembler.add_fragments(fragments)
    return assembler.build()


def _subject(rule: Rule, source: str) -> str:
    label = rule.name or rule.rule_id or rule.rule_type.value
    return f"{source}: {label}" if source else label
