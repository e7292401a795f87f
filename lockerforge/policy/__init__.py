"""
LockerForge policy engine.

Components:
- RuleSynthesizer: scan records -> publisher and hash rules
- PolicyAssembler: rule fragments -> Audit and Enforce policies
- compare_policies: canonical, order-independent policy diff
"""

from lockerforge.policy.assembler import (
    AssemblyResult,
    PolicyAssembler,
    PolicyTemplate,
    RuleFragment,
)
from lockerforge.policy.differ import (
    Classification,
    ComparisonRecord,
    compare_policies,
)
from lockerforge.policy.synthesizer import (
    RuleSynthesizer,
    SynthesisResult,
)

__all__ = [
    "AssemblyResult",
    "Classification",
    "ComparisonRecord",
    "PolicyAssembler",
    "PolicyTemplate",
    "RuleFragment",
    "RuleSynthesizer",
    "SynthesisResult",
    "compare_policies",
]
