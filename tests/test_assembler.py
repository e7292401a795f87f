"""
tests/test_assembler.py

Policy assembly from rule fragments.

Laws:
    A rule lands in every collection its scope names, and nowhere else.
    Identifiers are unique across the assembled policy.
    A rule naming an undeclared collection is skipped, not fatal.
    Audit and Enforce variants hold the same rules and differ only in
    enforcement mode.
"""

import itertools
from dataclasses import FrozenInstanceError

import pytest

from lockerforge.core.diagnostics import DiagnosticCode
from lockerforge.core.models import (
    EnforcementMode,
    HashRule,
    PathRule,
    PolicyInfo,
    PublisherRule,
    RuleCollectionType,
    Scope,
)
from lockerforge.policy.assembler import (
    PolicyAssembler,
    PolicyTemplate,
    RuleFragment,
    assemble_policy,
)


EXE    = RuleCollectionType.EXE
DLL    = RuleCollectionType.DLL
SCRIPT = RuleCollectionType.SCRIPT
MSI    = RuleCollectionType.MSI
APPX   = RuleCollectionType.APPX

STAMP = "2026-03-01T09:30:00Z"


def counter_ids(prefix: str = "gen"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def make_assembler(*collection_types) -> PolicyAssembler:
    template = PolicyTemplate(collection_types) if collection_types else None
    return PolicyAssembler(template=template, id_factory=counter_ids(), clock=lambda: STAMP)


def all_ids(policy):
    return [rule.rule_id for _, rule in policy.iter_rules()]


# ─────────────────────────────────────────────────────────────
# Placement
# ─────────────────────────────────────────────────────────────

class TestPlacement:

    def test_rule_placed_in_every_scoped_collection(self):
        rule = PathRule(rule_id="p1", path="%WINDIR%\\*", scope=Scope.DEFAULT)
        output = assemble_policy([RuleFragment("base", (rule,))], id_factory=counter_ids())

        for collection_type in (EXE, DLL, SCRIPT):
            rules = output.enforce.get(collection_type).rules
            assert len(rules) == 1
            assert rules[0].path == "%WINDIR%\\*"
        assert output.enforce.get(MSI).rules == ()
        assert output.enforce.get(APPX).rules == ()

    def test_first_placement_keeps_id_others_get_fresh_ones(self):
        rule = PathRule(rule_id="p1", path="%WINDIR%\\*", scope=Scope.DEFAULT)
        output = assemble_policy([RuleFragment("base", (rule,))], id_factory=counter_ids())

        ids = all_ids(output.enforce)
        assert ids[0] == "p1"
        assert len(ids) == len(set(ids)) == 3
        assert output.diagnostics == (), "Multi-collection placement is not a collision"

    def test_rule_without_id_gets_one(self):
        assembler = make_assembler()
        assembler.add_rule(HashRule(hash_value="0x" + "AB" * 32, source_file_name="t.ps1", scope=Scope.SCRIPT))
        rule = assembler.build().enforce.get(SCRIPT).rules[0]
        assert rule.rule_id == "gen-1"

    def test_fragments_keep_their_order(self):
        first = PathRule(rule_id="a", path="A", scope=Scope.EXE)
        second = PathRule(rule_id="b", path="B", scope=Scope.EXE)
        output = assemble_policy([RuleFragment("one", (first,)), RuleFragment("two", (second,))])
        assert [r.rule_id for r in output.enforce.get(EXE).rules] == ["a", "b"]

    def test_template_order_is_output_order(self):
        output = make_assembler(MSI, EXE).build()
        assert output.enforce.collection_types == [MSI, EXE]

    def test_rules_are_not_copied(self):
        rule = PathRule(rule_id="p1", path="%WINDIR%\\*", scope=Scope.EXE)
        output = assemble_policy([RuleFragment("base", (rule,))])
        assert output.audit.get(EXE).rules[0] is rule
        assert output.enforce.get(EXE).rules[0] is rule


# ─────────────────────────────────────────────────────────────
# Identifiers
# ─────────────────────────────────────────────────────────────

class TestIdentifiers:

    def test_duplicate_id_gets_fresh_id_and_diagnostic(self):
        a = PathRule(rule_id="dup", path="A", scope=Scope.EXE)
        b = PathRule(rule_id="dup", path="B", scope=Scope.EXE)
        assembler = make_assembler()
        assembler.add_fragment(RuleFragment("static", (a, b)))
        output = assembler.build()

        rules = output.enforce.get(EXE).rules
        assert [r.rule_id for r in rules] == ["dup", "gen-1"]
        assert [d.code for d in output.diagnostics] == [DiagnosticCode.DUPLICATE_RULE_ID]
        assert output.diagnostics[0].subject.startswith("static: ")

    def test_collision_across_fragments(self):
        a = PublisherRule(rule_id="x", publisher="O=A", scope=Scope.EXE)
        b = PublisherRule(rule_id="x", publisher="O=B", scope=Scope.DLL)
        output = assemble_policy(
            [RuleFragment("one", (a,)), RuleFragment("two", (b,))],
            id_factory=counter_ids(),
        )
        assert all_ids(output.enforce) == ["x", "gen-1"]

    def test_generated_id_skips_ids_already_taken(self):
        taken = PathRule(rule_id="gen-1", path="A", scope=Scope.EXE)
        fresh = PathRule(path="B", scope=Scope.EXE)
        assembler = make_assembler()
        assembler.add_rule(taken)
        assembler.add_rule(fresh)
        assert all_ids(assembler.build().enforce) == ["gen-1", "gen-2"]

    def test_ids_unique_across_whole_policy(self):
        rules = [
            PathRule(rule_id="r", path="A", scope=Scope.ALL),
            PathRule(rule_id="r", path="B", scope=Scope.DEFAULT),
            PathRule(path="C", scope=Scope.MSI | Scope.APPX),
        ]
        output = assemble_policy([RuleFragment("f", tuple(rules))], id_factory=counter_ids())
        ids = all_ids(output.enforce)
        assert len(ids) == 5 + 3 + 2
        assert len(set(ids)) == len(ids)


# ─────────────────────────────────────────────────────────────
# Undeclared collections
# ─────────────────────────────────────────────────────────────

class TestUndeclaredCollections:

    def test_rule_for_undeclared_collection_is_skipped(self):
        assembler = make_assembler(EXE, DLL, SCRIPT)
        assembler.add_rule(PathRule(rule_id="m", path="%WINDIR%\\Installer\\*", scope=Scope.MSI))
        assembler.add_rule(PathRule(rule_id="e", path="C:\\Tools\\*", scope=Scope.EXE))
        output = assembler.build()

        assert all_ids(output.enforce) == ["e"], "Assembly must continue after a skipped rule"
        assert [d.code for d in output.diagnostics] == [DiagnosticCode.UNKNOWN_COLLECTION_TYPE]
        assert "Msi" in output.diagnostics[0].message

    def test_partially_declared_scope_skips_whole_rule(self):
        assembler = make_assembler(EXE, DLL, SCRIPT)
        assembler.add_rule(PathRule(rule_id="a", path="*", scope=Scope.EXE | Scope.MSI))
        output = assembler.build()
        assert output.enforce.rule_count == 0
        assert output.diagnostics[0].code is DiagnosticCode.UNKNOWN_COLLECTION_TYPE

    def test_empty_scope_is_reported(self):
        assembler = make_assembler()
        assembler.add_rule(PathRule(rule_id="a", path="*", scope=Scope(0)))
        output = assembler.build()
        assert output.enforce.rule_count == 0
        assert output.diagnostics[0].code is DiagnosticCode.UNKNOWN_COLLECTION_TYPE


# ─────────────────────────────────────────────────────────────
# Audit / Enforce
# ─────────────────────────────────────────────────────────────

class TestVariants:

    @pytest.fixture
    def output(self):
        rules = (
            PathRule(rule_id="p", path="%PROGRAMFILES%\\*", scope=Scope.DEFAULT),
            PublisherRule(rule_id="a", publisher="*", scope=Scope.APPX),
        )
        return assemble_policy([RuleFragment("base", rules)], id_factory=counter_ids())

    def test_audit_is_audit_only(self, output):
        assert {c.enforcement_mode for c in output.audit.collections} == {EnforcementMode.AUDIT_ONLY}

    def test_enforce_is_enabled(self, output):
        assert {c.enforcement_mode for c in output.enforce.collections} == {EnforcementMode.ENABLED}

    def test_variants_hold_the_same_rules(self, output):
        assert list(output.audit.iter_rules()) == list(output.enforce.iter_rules())
        assert output.audit.collection_types == output.enforce.collection_types

    def test_policies_are_immutable(self, output):
        with pytest.raises(FrozenInstanceError):
            output.enforce.collections = ()
        with pytest.raises(FrozenInstanceError):
            output.enforce.collections[0].enforcement_mode = EnforcementMode.NOT_CONFIGURED

    def test_build_is_repeatable(self):
        assembler = make_assembler()
        assembler.add_rule(PathRule(rule_id="p", path="*", scope=Scope.EXE))
        assert assembler.build() == assembler.build()


# ─────────────────────────────────────────────────────────────
# Policy info
# ─────────────────────────────────────────────────────────────

class TestPolicyInfo:

    def test_last_update_stamped_from_clock(self):
        assembler = PolicyAssembler(
            info=PolicyInfo(name="Workstations", description="Generated from scan"),
            id_factory=counter_ids(),
            clock=lambda: STAMP,
        )
        assembler.add_rule(PathRule(rule_id="p", path="*", scope=Scope.EXE))
        output = assembler.build()
        assert output.enforce.info == PolicyInfo("Workstations", "Generated from scan", STAMP)

    def test_given_last_update_is_kept(self):
        def clock():
            raise AssertionError("clock must not be read when last_update is given")

        assembler = PolicyAssembler(
            info=PolicyInfo(name="Servers", last_update="2025-12-24T00:00:00Z"),
            id_factory=counter_ids(),
            clock=clock,
        )
        assert assembler.build().audit.info.last_update == "2025-12-24T00:00:00Z"

    def test_variants_share_info(self):
        output = make_assembler().build()
        assert output.audit.info == output.enforce.info
        assert output.audit.info.last_update == STAMP

    def test_info_does_not_change_policy_hash(self):
        output = make_assembler().build()
        renamed = output.enforce.with_info(name="Renamed", last_update="2020-01-01T00:00:00Z")
        assert renamed.policy_hash == output.enforce.policy_hash
        assert renamed.to_dict() != output.enforce.to_dict()
