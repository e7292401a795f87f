"""
tests/test_synthesizer.py

Rule synthesis from scan records.

Laws:

  PUBLISHER RULES
    One rule per (collection, publisher, product, binary) key.
    The minimum version only ever moves down, whatever the record order.
    Microsoft files are never scoped wider than their product, and
    Windows / Visual Studio files never wider than their binary.

  HASH RULES
    One rule per (collection, file name, hash).
    A publisher-only rule for the signer suppresses the hash rule.

  DIAGNOSTICS
    Unusable records are skipped with MissingMetadata; unparsable
    versions become a wildcard with MalformedVersion.

  DETERMINISM
    Same records and configuration give the same rules, ids aside.
"""

import itertools
import warnings
from dataclasses import replace

import pytest

from lockerforge.config import SourcePath, SynthesisConfig
from lockerforge.core.diagnostics import DiagnosticCode, LockerForgeWarning
from lockerforge.core.exceptions import MalformedVersionError
from lockerforge.core.models import (
    WILDCARD,
    Action,
    FileVersion,
    Granularity,
    PublisherRule,
    RuleCollectionType,
    ScanRecord,
    Scope,
    SignerInfo,
    lower_version,
)
from lockerforge.policy.synthesizer import (
    RuleSynthesizer,
    build_path_rule,
    effective_granularity,
    merge_synthesis_states,
    organization_name,
)


CONTOSO   = "O=CONTOSO, L=REDMOND, S=WASHINGTON, C=US"
MICROSOFT = "O=MICROSOFT CORPORATION, L=REDMOND, S=WASHINGTON, C=US"

HASH_A = "0x" + "AB" * 32
HASH_B = "0x" + "CD" * 32


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def counter_ids(prefix: str = "id"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def synthesizer(granularity: Granularity = Granularity.PUBLISHER_PRODUCT_BINARY, **kwargs):
    return RuleSynthesizer(
        SynthesisConfig(granularity=granularity, **kwargs),
        id_factory=counter_ids(),
    )


def signed(
    path: str,
    publisher: str = CONTOSO,
    product: str = "Contoso App",
    binary: str = "APP.EXE",
    version: str = "1.0.0.0",
    content_hash: str = None,
) -> ScanRecord:
    return ScanRecord(
        path=path,
        signer=SignerInfo(publisher, product, binary, version),
        content_hash=content_hash,
        length=1024,
    )


def unsigned(path: str, content_hash: str = HASH_A, length: int = 2048) -> ScanRecord:
    return ScanRecord(path=path, content_hash=content_hash, length=length)


def without_ids(rules):
    return [replace(rule, rule_id="") for rule in rules]


# ─────────────────────────────────────────────────────────────
# Publisher rules
# ─────────────────────────────────────────────────────────────

class TestPublisherRules:

    def test_one_rule_per_key(self):
        result = synthesizer().synthesize([
            signed("C:\\Apps\\Contoso\\app.exe"),
            signed("D:\\Mirror\\app.exe"),
        ])
        assert len(result.publisher_rules) == 1
        rule = result.publisher_rules[0]
        assert (rule.publisher, rule.product, rule.binary) == (CONTOSO, "Contoso App", "APP.EXE")
        assert rule.scope == Scope.EXE
        assert rule.min_version == WILDCARD, "Binary granularity must not pin a version"
        assert "C:\\Apps\\Contoso\\app.exe" in rule.description
        assert "D:\\Mirror\\app.exe" in rule.description

    def test_collection_is_part_of_the_key(self):
        result = synthesizer().synthesize([
            signed("C:\\Apps\\app.exe"),
            signed("C:\\Apps\\app.dll"),
        ])
        assert sorted(r.scope.collections()[0].value for r in result.publisher_rules) == ["Dll", "Exe"]

    @pytest.mark.parametrize("granularity, product, binary", [
        (Granularity.PUBLISHER_ONLY, WILDCARD, WILDCARD),
        (Granularity.PUBLISHER_PRODUCT, "Contoso App", WILDCARD),
        (Granularity.PUBLISHER_PRODUCT_BINARY, "Contoso App", "APP.EXE"),
        (Granularity.PUBLISHER_PRODUCT_BINARY_VERSION, "Contoso App", "APP.EXE"),
    ])
    def test_granularity_shapes_the_key(self, granularity, product, binary):
        result = synthesizer(granularity).synthesize([signed("C:\\Apps\\app.exe")])
        rule = result.publisher_rules[0]
        assert (rule.product, rule.binary) == (product, binary)
        expected_version = "1.0.0.0" if granularity.uses_version else WILDCARD
        assert rule.min_version == expected_version
        assert rule.max_version == WILDCARD

    def test_rule_carries_configured_principal_and_action(self):
        result = synthesizer(principal="S-1-5-32-545", action=Action.DENY).synthesize(
            [signed("C:\\Apps\\app.exe")]
        )
        rule = result.publisher_rules[0]
        assert rule.principal == "S-1-5-32-545"
        assert rule.action is Action.DENY

    def test_rule_name_uses_organization(self):
        result = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION).synthesize(
            [signed("C:\\Apps\\app.exe", version="2.5")]
        )
        assert result.publisher_rules[0].name == "Exe: CONTOSO / Contoso App / APP.EXE, version 2.5.0.0 and above"

    @pytest.mark.parametrize("products", [("Alpha", "Beta"), ("Beta", "Alpha")])
    def test_publisher_only_lists_every_product(self, products):
        records = [signed(f"C:\\Apps\\{p}\\app.exe", product=p) for p in products]
        result = synthesizer(Granularity.PUBLISHER_ONLY).synthesize(records)
        assert len(result.publisher_rules) == 1
        assert "Product: Alpha, Beta" in result.publisher_rules[0].description, (
            "Products must be listed sorted, whatever the record order"
        )

    def test_source_path_pins_version(self):
        config_paths = (SourcePath("C:\\Apps\\Pinned", enforce_minimum_version=True),)
        result = synthesizer(Granularity.PUBLISHER_ONLY, source_paths=config_paths).synthesize([
            signed("C:\\Apps\\Pinned\\app.exe", version="4.2"),
            signed("C:\\Apps\\Other\\other.exe", publisher="O=FABRIKAM, C=US",
                   product="Other", binary="OTHER.EXE"),
        ])
        by_publisher = {r.publisher: r for r in result.publisher_rules}
        pinned = by_publisher[CONTOSO]
        assert (pinned.product, pinned.binary, pinned.min_version) == ("Contoso App", "APP.EXE", "4.2.0.0")
        other = by_publisher["O=FABRIKAM, C=US"]
        assert (other.product, other.binary, other.min_version) == (WILDCARD, WILDCARD, WILDCARD)

    def test_unpinned_source_path_keeps_granularity(self):
        config_paths = (SourcePath("C:\\Apps"),)
        result = synthesizer(Granularity.PUBLISHER_ONLY, source_paths=config_paths).synthesize(
            [signed("C:\\Apps\\Contoso\\app.exe")]
        )
        assert result.publisher_rules[0].product == WILDCARD


class TestVersionMerge:

    @pytest.mark.parametrize("versions", [
        ("2.0", "1.0"),
        ("1.0", "2.0"),
        ("3.1", "1.0", "2.0"),
    ])
    def test_minimum_version_only_moves_down(self, versions):
        records = [signed(f"C:\\Apps\\v{i}\\app.exe", version=v) for i, v in enumerate(versions)]
        result = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION).synthesize(records)
        assert len(result.publisher_rules) == 1
        assert result.publisher_rules[0].min_version == "1.0.0.0"

    @pytest.mark.parametrize("versions", [("1.0", "1.0.0.0"), ("1.0.0.0", "1.0")])
    def test_equal_versions_written_differently(self, versions):
        records = [signed(f"C:\\Apps\\v{i}\\app.exe", version=v) for i, v in enumerate(versions)]
        rule = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION).synthesize(records).publisher_rules[0]
        assert rule.min_version == "1.0.0.0", "Versions are written in four-part form whatever the input order"
        assert rule.name.endswith("version 1.0.0.0 and above")

    def test_equal_versions_across_partial_states(self):
        synth = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION)
        short = synth.collect([signed("C:\\a\\app.exe", version="3.1")])
        long = synth.collect([signed("C:\\b\\app.exe", version="3.1.0.0")])

        forward = synth.build(merge_synthesis_states([short, long]))
        backward = synth.build(merge_synthesis_states([long, short]))
        assert without_ids(forward.rules) == without_ids(backward.rules)

    def test_versions_compare_numerically(self):
        records = [
            signed("C:\\a\\app.exe", version="10.0.0.0"),
            signed("C:\\b\\app.exe", version="9.0.0.0"),
        ]
        result = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION).synthesize(records)
        assert result.publisher_rules[0].min_version == "9.0.0.0"

    def test_malformed_version_becomes_wildcard(self):
        records = [
            signed("C:\\a\\app.exe", version="1.0-beta"),
            signed("C:\\b\\app.exe", version="1.0"),
        ]
        result = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION).synthesize(records)
        assert result.publisher_rules[0].min_version == WILDCARD, (
            "A wildcard minimum must absorb later versions"
        )
        codes = [d.code for d in result.diagnostics]
        assert codes == [DiagnosticCode.MALFORMED_VERSION]
        assert result.diagnostics[0].subject == "C:\\a\\app.exe"

    def test_wildcard_wins_in_either_order(self):
        records = [
            signed("C:\\b\\app.exe", version="1.0"),
            signed("C:\\a\\app.exe", version="garbage"),
        ]
        result = synthesizer(Granularity.PUBLISHER_PRODUCT_BINARY_VERSION).synthesize(records)
        assert result.publisher_rules[0].min_version == WILDCARD


@pytest.mark.parametrize("a, b, expected", [
    ("1.0", "1.0.0.0", "1.0.0.0"),
    ("1.0.0.0", "1.0", "1.0.0.0"),
    ("10.0", "9.99.1", "9.99.1.0"),
    ("2.0", WILDCARD, WILDCARD),
])
def test_lower_version(a, b, expected):
    assert lower_version(a, b) == expected


def test_file_version_equality_ignores_padding():
    assert FileVersion.parse("10.0") == FileVersion.parse("10.0.0.0")
    assert str(FileVersion.parse("10.0")) == "10.0.0.0"
    with pytest.raises(MalformedVersionError):
        FileVersion.parse("1.0-beta")


class TestMicrosoftMinimums:

    def test_microsoft_is_at_least_product(self):
        record = signed("C:\\Office\\winword.exe", MICROSOFT, "Microsoft Office", "WINWORD.EXE")
        assert effective_granularity(Granularity.PUBLISHER_ONLY, record) is Granularity.PUBLISHER_PRODUCT

        rule = synthesizer(Granularity.PUBLISHER_ONLY).synthesize([record]).publisher_rules[0]
        assert (rule.product, rule.binary) == ("Microsoft Office", WILDCARD)

    @pytest.mark.parametrize("product", [
        "Microsoft® Windows® Operating System",
        "Microsoft Windows Operating System",
        "Microsoft Visual Studio 2022",
    ])
    def test_windows_and_visual_studio_are_at_least_binary(self, product):
        record = signed("C:\\x\\tool.exe", MICROSOFT, product, "TOOL.EXE")
        assert effective_granularity(Granularity.PUBLISHER_ONLY, record) is Granularity.PUBLISHER_PRODUCT_BINARY

        rule = synthesizer(Granularity.PUBLISHER_PRODUCT).synthesize([record]).publisher_rules[0]
        assert rule.binary == "TOOL.EXE"

    def test_configured_granularity_is_never_lowered(self):
        record = signed("C:\\Office\\winword.exe", MICROSOFT, "Microsoft Office", "WINWORD.EXE")
        level = Granularity.PUBLISHER_PRODUCT_BINARY_VERSION
        assert effective_granularity(level, record) is level

    def test_other_publishers_are_untouched(self):
        record = signed("C:\\x\\app.exe")
        assert effective_granularity(Granularity.PUBLISHER_ONLY, record) is Granularity.PUBLISHER_ONLY


# ─────────────────────────────────────────────────────────────
# Hash rules
# ─────────────────────────────────────────────────────────────

class TestHashRules:

    def test_unsigned_record_gets_hash_rule(self):
        result = synthesizer().synthesize([unsigned("C:\\Tools\\tool.ps1", "ab" * 32)])
        assert len(result.hash_rules) == 1
        rule = result.hash_rules[0]
        assert rule.hash_value == HASH_A, "Hash must be normalized to 0x + upper hex"
        assert rule.source_file_name == "tool.ps1"
        assert rule.source_file_length == 2048
        assert rule.scope == Scope.SCRIPT

    def test_same_file_and_hash_deduplicated(self):
        result = synthesizer().synthesize([
            unsigned("C:\\a\\tool.ps1"),
            unsigned("C:\\b\\tool.ps1"),
            unsigned("C:\\c\\tool.ps1", HASH_B),
        ])
        assert [(r.source_file_name, r.hash_value) for r in result.hash_rules] == [
            ("tool.ps1", HASH_A),
            ("tool.ps1", HASH_B),
        ]
        assert "C:\\a\\tool.ps1" in result.hash_rules[0].description
        assert "C:\\b\\tool.ps1" in result.hash_rules[0].description

    def test_signed_record_missing_metadata_falls_back_to_hash(self):
        record = signed("C:\\x\\app.exe", binary="", content_hash=HASH_A)
        result = synthesizer().synthesize([record])
        assert result.publisher_rules == ()
        assert len(result.hash_rules) == 1

    def test_known_publisher_only_rule_suppresses_hash(self):
        record = signed("C:\\x\\app.exe", binary="", content_hash=HASH_A)
        known = PublisherRule(rule_id="static-1", publisher=CONTOSO, scope=Scope.EXE)

        result = synthesizer().synthesize([record], known_rules=[known])
        assert result.hash_rules == ()
        assert result.diagnostics == ()

    def test_known_rule_for_other_collection_does_not_suppress(self):
        record = signed("C:\\x\\app.exe", binary="", content_hash=HASH_A)
        known = PublisherRule(rule_id="static-1", publisher=CONTOSO, scope=Scope.DLL)
        result = synthesizer().synthesize([record], known_rules=[known])
        assert len(result.hash_rules) == 1

    def test_narrow_known_rule_does_not_suppress(self):
        record = signed("C:\\x\\app.exe", binary="", content_hash=HASH_A)
        known = PublisherRule(publisher=CONTOSO, product="Other", scope=Scope.EXE)
        result = synthesizer().synthesize([record], known_rules=[known])
        assert len(result.hash_rules) == 1

    def test_suppression_is_order_independent(self):
        records = [
            signed("C:\\x\\app.exe", binary="", content_hash=HASH_A),
            unsigned("C:\\y\\other.exe", HASH_B),
        ]
        known = [PublisherRule(publisher=CONTOSO, scope=Scope.EXE)]
        forward = synthesizer().synthesize(records, known)
        backward = synthesizer().synthesize(list(reversed(records)), known)
        assert without_ids(forward.rules) == without_ids(backward.rules)
        assert [r.source_file_name for r in forward.hash_rules] == ["other.exe"]

    def test_unsigned_without_hash_is_reported(self):
        result = synthesizer().synthesize([ScanRecord(path="C:\\x\\tool.exe")])
        assert result.rules == ()
        assert [d.code for d in result.diagnostics] == [DiagnosticCode.MISSING_METADATA]

    def test_invalid_hash_is_reported(self):
        result = synthesizer().synthesize([unsigned("C:\\x\\tool.exe", "not-hex")])
        assert result.rules == ()
        assert [d.code for d in result.diagnostics] == [DiagnosticCode.MISSING_METADATA]

    def test_unknown_file_type_is_reported(self):
        result = synthesizer().synthesize([unsigned("C:\\x\\readme.txt")])
        assert result.rules == ()
        assert result.diagnostics[0].code is DiagnosticCode.MISSING_METADATA

    def test_explicit_file_type_overrides_extension(self):
        record = ScanRecord(
            path="C:\\x\\runner.bin",
            content_hash=HASH_A,
            file_type=RuleCollectionType.EXE,
        )
        result = synthesizer().synthesize([record])
        assert result.hash_rules[0].scope == Scope.EXE

    def test_directories_are_ignored(self):
        result = synthesizer().synthesize([ScanRecord(path="C:\\x", is_directory=True)])
        assert result.rules == ()
        assert result.diagnostics == ()


# ─────────────────────────────────────────────────────────────
# Determinism and merging
# ─────────────────────────────────────────────────────────────

RECORDS = [
    signed("C:\\Apps\\app.exe", version="2.0"),
    signed("C:\\Apps\\old\\app.exe", version="1.5"),
    signed("C:\\Apps\\helper.dll", binary="HELPER.DLL", version="2.0"),
    unsigned("C:\\Tools\\tool.ps1"),
    unsigned("C:\\Tools\\copy\\tool.ps1"),
    unsigned("C:\\Tools\\run.cmd", HASH_B),
]


class TestDeterminism:

    def test_same_input_same_rules(self):
        first = RuleSynthesizer(id_factory=counter_ids("a")).synthesize(RECORDS)
        second = RuleSynthesizer(id_factory=counter_ids("b")).synthesize(RECORDS)
        assert without_ids(first.rules) == without_ids(second.rules)

    def test_record_order_does_not_matter(self):
        config = SynthesisConfig(granularity=Granularity.PUBLISHER_PRODUCT_BINARY_VERSION)
        forward = RuleSynthesizer(config).synthesize(RECORDS)
        backward = RuleSynthesizer(config).synthesize(list(reversed(RECORDS)))
        assert without_ids(forward.rules) == without_ids(backward.rules)

    def test_ids_come_from_factory(self):
        result = RuleSynthesizer(id_factory=counter_ids()).synthesize(RECORDS)
        assert [r.rule_id for r in result.rules] == [f"id-{i}" for i in range(1, len(result.rules) + 1)]

    def test_merged_partial_states_match_single_pass(self):
        config = SynthesisConfig(granularity=Granularity.PUBLISHER_PRODUCT_BINARY_VERSION)
        synth = RuleSynthesizer(config)

        single = synth.synthesize(RECORDS)
        states = [synth.collect(RECORDS[:2]), synth.collect(RECORDS[2:4]), synth.collect(RECORDS[4:])]
        merged = synth.build(merge_synthesis_states(states))

        assert without_ids(merged.rules) == without_ids(single.rules)
        assert [r.min_version for r in merged.publisher_rules] == ["2.0.0.0", "1.5.0.0"], (
            "helper.dll (Dll) sorts before app.exe (Exe)"
        )


class TestWarnings:

    def test_diagnostics_raised_as_warnings_when_enabled(self):
        synth = synthesizer(warn_on_diagnostic=True)
        with pytest.warns(LockerForgeWarning, match="MissingMetadata"):
            synth.synthesize([ScanRecord(path="C:\\x\\tool.exe")])

    def test_no_warnings_by_default(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            synthesizer().synthesize([ScanRecord(path="C:\\x\\tool.exe")])


# ─────────────────────────────────────────────────────────────
# Path rules and helpers
# ─────────────────────────────────────────────────────────────

class TestPathRules:

    def test_exceptions_deduplicated_case_insensitively(self):
        rule = build_path_rule(
            "%WINDIR%\\*",
            ["%WINDIR%\\Tasks\\*", "%windir%\\tasks\\*", "", "%WINDIR%\\Temp\\*"],
            id_factory=counter_ids(),
        )
        assert rule.exceptions == ("%WINDIR%\\Tasks\\*", "%WINDIR%\\Temp\\*")
        assert rule.rule_id == "id-1"
        assert rule.scope == Scope.DEFAULT

    def test_default_name_and_description(self):
        rule = build_path_rule("%OSDRIVE%\\Tools\\*", ["%OSDRIVE%\\Tools\\tmp\\*"])
        assert rule.name == "Allow %OSDRIVE%\\Tools\\*"
        assert rule.description == "Path: %OSDRIVE%\\Tools\\*; 1 exception(s)"
        assert rule.rule_id


@pytest.mark.parametrize("subject, expected", [
    (CONTOSO, "CONTOSO"),
    ('O="Contoso, Ltd.", C=US', "Contoso, Ltd."),
    ("CN=Someone", "CN=Someone"),
])
def test_organization_name(subject, expected):
    assert organization_name(subject) == expected
