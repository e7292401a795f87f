"""
lockerforge/__init__.py

LockerForge: execution-control rule synthesis, canonicalization and diff.

Turns scanner output about executable files and user-writable
directories into a minimal, consistent AppLocker rule set, emits Audit
and Enforce variants, and compares two rule sets key by key.
"""

__version__ = "0.3.0"

from lockerforge.config import SynthesisConfig, load_config
from lockerforge.core.diagnostics import Diagnostic, DiagnosticCode
from lockerforge.core.models import (
    Action,
    EnforcementMode,
    Granularity,
    HashRule,
    PathRule,
    Policy,
    PublisherRule,
    RuleCollection,
    RuleCollectionType,
    ScanRecord,
    Scope,
    SignerInfo,
)
from lockerforge.pipeline import BuildResult, build_policies
from lockerforge.policy.assembler import PolicyAssembler, RuleFragment
from lockerforge.policy.differ import Classification, ComparisonRecord, compare_policies
from lockerforge.policy.synthesizer import RuleSynthesizer
from lockerforge.scan.writable_dirs import (
    WritableDirectoryEntry,
    reduce_writable_directories,
)

__all__ = [
    # Models
    "Action",
    "EnforcementMode",
    "Granularity",
    "HashRule",
    "PathRule",
    "Policy",
    "PublisherRule",
    "RuleCollection",
    "RuleCollectionType",
    "ScanRecord",
    "Scope",
    "SignerInfo",
    "WritableDirectoryEntry",
    # Engine
    "RuleSynthesizer",
    "PolicyAssembler",
    "RuleFragment",
    "reduce_writable_directories",
    "compare_policies",
    "build_policies",
    "BuildResult",
    # Results
    "Classification",
    "ComparisonRecord",
    "Diagnostic",
    "DiagnosticCode",
    # Config
    "SynthesisConfig",
    "load_config",
]
