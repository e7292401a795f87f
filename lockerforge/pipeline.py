"""
End-to-end policy build: scan records + exclusions -> Audit/Enforce policies.

    result = build_policies(records, config, windir_exclusions=[...])
    result.audit, result.enforce, result.diagnostics

Diagnostics from synthesis, static rule loading and assembly are
returned together, in that order. Static rules may name an example file
from the scan instead of a publisher; records are read once for both.
Both policies carry the configured name and description and the build
time as last update.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from lockerforge.config import SynthesisConfig
from lockerforge.core.diagnostics import Diagnostic
from lockerforge.core.models import Policy, PolicyInfo, ScanRecord
from lockerforge.core.time import policy_timestamp
from lockerforge.policy.assembler import PolicyAssembler, PolicyTemplate, RuleFragment
from lockerforge.policy.base_rules import base_rules_fragment, exemplar_signers, load_static_rules
from lockerforge.policy.synthesizer import IdFactory, RuleSynthesizer, SynthesisResult, new_rule_id


@dataclass(frozen=True)
class BuildResult:
    audit:       Policy
    enforce:     Policy
    synthesis:   SynthesisResult
    diagnostics: Tuple[Diagnostic, ...] = ()


def build_policies(
    records: Iterable[ScanRecord],
    config: Optional[SynthesisConfig] = None,
    windir_exclusions: Sequence[str] = (),
    program_files_exclusions: Sequence[str] = (),
    extra_fragments: Sequence[RuleFragment] = (),
    template: Optional[PolicyTemplate] = None,
    include_base_rules: bool = True,
    id_factory: IdFactory = new_rule_id,
    clock: Callable[[], str] = policy_timestamp,
) -> BuildResult:
    config = config or SynthesisConfig()
    records = list(records)
    diagnostics: List[Diagnostic] = []

    fragments: List[RuleFragment] = []
    if include_base_rules:
        fragments.append(base_rules_fragment(
            windir_exclusions,
            program_files_exclusions,
            id_factory=id_factory,
        ))
    static_diagnostics: Tuple[Diagnostic, ...] = ()
    if config.static_rules is not None:
        static = load_static_rules(
            config.static_rules,
            id_factory=id_factory,
            exemplars=exemplar_signers(records),
        )
        static_diagnostics = static.diagnostics
        fragments.append(static.fragment)
    fragments.extend(extra_fragments)

    # Publisher-only rules already present suppress hash rules for their signers.
    known_rules = [rule for fragment in fragments for rule in fragment.rules]
    synthesis = RuleSynthesizer(config, id_factory=id_factory).synthesize(records, known_rules)
    diagnostics.extend(synthesis.diagnostics)
    diagnostics.extend(static_diagnostics)
    fragments.append(RuleFragment.from_synthesis("scan", synthesis))

    assembler = PolicyAssembler(
        template=template,
        id_factory=id_factory,
        warn_on_diagnostic=config.warn_on_diagnostic,
        info=PolicyInfo(name=config.policy_name, description=config.policy_description),
        clock=clock,
    )
    assembler.add_fragments(fragments)
    assembled = assembler.build()
    diagnostics.extend(assembled.diagnostics)

    return BuildResult(
        audit=assembled.audit,
        enforce=assembled.enforce,
        synthesis=synthesis,
        diagnostics=tuple(diagnostics),
    )
