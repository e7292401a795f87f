"""
Static rule fragments merged alongside synthesized rules.

The base fragment is the usual allow-list skeleton: Windows and Program
Files are allowed for everyone except where users can write (the
reducer's exclusions become path-rule exceptions), administrators may
run anything, Windows Installer's cache is allowed, and signed packaged
apps are allowed.

Site-specific additions come from YAML:

    rules:
      - type: Path
        path: "%OSDRIVE%\\\\Tools\\\\*"
        collections: [Exe, Dll]
        exceptions: ["%OSDRIVE%\\\\Tools\\\\Scratch\\\\*"]
      - type: Publisher
        publisher: "O=CONTOSO, L=REDMOND, S=WASHINGTON, C=US"
        product: "*"
        collections: Exe
      - type: Publisher
        exemplar: "C:\\\\Apps\\\\Fabrikam\\\\viewer.exe"
        use_product: true
        collections: Exe
      - type: Hash
        hash: "0x3F..."
        file: tool.ps1
        collections: Script
        action: Deny
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

from lockerforge.core.diagnostics import Diagnostic, DiagnosticCode, DiagnosticSink
from lockerforge.core.exceptions import (
    ExemplarError,
    MalformedVersionError,
    PolicyFormatError,
    UnknownCollectionTypeError,
    ValidationError,
)
from lockerforge.core.models import (
    ADMINISTRATORS_SID,
    EVERYONE_SID,
    WILDCARD,
    Action,
    FileVersion,
    HashRule,
    PublisherRule,
    Rule,
    ScanRecord,
    Scope,
    SignerInfo,
    normalize_hash,
)
from lockerforge.policy.assembler import RuleFragment
from lockerforge.policy.synthesizer import IdFactory, build_path_rule, new_rule_id
from lockerforge.scan.writable_dirs import normalize_directory


WINDIR_ROOT        = "%WINDIR%"
PROGRAM_FILES_ROOT = "%PROGRAMFILES%"


def base_rules_fragment(
    windir_exclusions: Sequence[str] = (),
    program_files_exclusions: Sequence[str] = (),
    id_factory: IdFactory = new_rule_id,
) -> RuleFragment:
    """The allow-list skeleton every generated policy starts from."""
    rules: List[Rule] = [
        build_path_rule(
            WINDIR_ROOT + "\\*",
            windir_exclusions,
            name="Windows folder, except user-writable subdirectories",
            id_factory=id_factory,
        ),
        build_path_rule(
            PROGRAM_FILES_ROOT + "\\*",
            program_files_exclusions,
            name="Program Files, except user-writable subdirectories",
            id_factory=id_factory,
        ),
        build_path_rule(
            "*",
            principal=ADMINISTRATORS_SID,
            scope=Scope.DEFAULT | Scope.MSI,
            name="Administrators may run anything",
            id_factory=id_factory,
        ),
        build_path_rule(
            WINDIR_ROOT + "\\Installer\\*",
            scope=Scope.MSI,
            name="Windows Installer cache",
            id_factory=id_factory,
        ),
        PublisherRule(
            rule_id=id_factory(),
            name="All signed packaged apps",
            description="Allows any packaged app with a valid signature",
            principal=EVERYONE_SID,
            scope=Scope.APPX,
            publisher=WILDCARD,
        ),
    ]
    return RuleFragment(source="base", rules=tuple(rules))


# ─────────────────────────────────────────────────────────────
# YAML static rules
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StaticRulesResult:
    fragment:    RuleFragment
    diagnostics: Tuple[Diagnostic, ...] = ()


def static_rule_from_dict(
    data: Dict[str, Any],
    id_factory: IdFactory = new_rule_id,
    exemplars: Optional[Mapping[str, SignerInfo]] = None,
) -> Rule:
    """Build one rule from a YAML entry. Raises UnknownCollectionTypeError / ExemplarError / PolicyFormatError."""
    scope = Scope.parse(data.get("collections", ["Exe", "Dll", "Script"]))
    common = dict(
        principal=str(data.get("principal", EVERYONE_SID)),
        action=Action(data.get("action", Action.ALLOW.value)),
        scope=scope,
    )
    rule_type = str(data.get("type", "")).lower()

    if rule_type == "path":
        return build_path_rule(
            data["path"],
            data.get("exceptions", []),
            name=data.get("name"),
            description=data.get("description"),
            id_factory=id_factory,
            **common,
        )
    if rule_type == "publisher":
        condition = _publisher_condition(data, exemplars or {})
        return PublisherRule(
            rule_id=id_factory(),
            name=data.get("name", f"Publisher: {condition['publisher']}"),
            description=data.get("description", ""),
            **condition,
            **common,
        )
    if rule_type == "hash":
        return HashRule(
            rule_id=id_factory(),
            name=data.get("name", f"{data['file']} (hash)"),
            description=data.get("description", ""),
            hash_value=normalize_hash(data["hash"]),
            source_file_name=data["file"],
            source_file_length=int(data.get("length", 0)),
            **common,
        )
    raise PolicyFormatError(f"Unknown rule type: {data.get('type')!r}")


def exemplar_signers(records: Iterable[ScanRecord]) -> Dict[str, SignerInfo]:
    """Signers of scanned files, by lower-cased normalized path."""
    return {
        normalize_directory(record.path).lower(): record.signer
        for record in records
        if record.signer is not None and record.signer.publisher_name
    }


def _publisher_condition(data: Dict[str, Any], exemplars: Mapping[str, SignerInfo]) -> Dict[str, str]:
    """
    Condition fields of a YAML publisher rule.

    Given directly, or read from the signer of an example file in the
    scan ("exemplar"). From an example only the publisher is taken,
    unless use_product is set, which adds product, binary and version.
    Fields written in the entry override the example.
    """
    found: Dict[str, str] = {}
    if "exemplar" in data:
        exemplar = str(data["exemplar"])
        signer = exemplars.get(normalize_directory(exemplar).lower())
        if signer is None:
            raise ExemplarError(f"Example file is not a signed file in the scan: {exemplar}")
        found["publisher"] = signer.publisher_name
        if data.get("use_product", False):
            found["product"] = signer.product_name or WILDCARD
            found["binary"] = signer.binary_name or WILDCARD
            if signer.version:
                found["min_version"] = str(FileVersion.parse(signer.version))

    publisher = data.get("publisher", found.get("publisher"))
    if not publisher:
        raise KeyError("publisher")
    return {
        "publisher":   str(publisher),
        "product":     str(data.get("product", found.get("product", WILDCARD))),
        "binary":      str(data.get("binary", found.get("binary", WILDCARD))),
        "min_version": str(data.get("min_version", found.get("min_version", WILDCARD))),
        "max_version": str(data.get("max_version", WILDCARD)),
    }


def load_static_rules(
    path: Path,
    id_factory: IdFactory = new_rule_id,
    exemplars: Optional[Mapping[str, SignerInfo]] = None,
) -> StaticRulesResult:
    """
    Load a YAML static-rule file into a fragment.

    Entries naming an unknown collection are skipped with an
    UnknownCollectionType diagnostic, entries whose example file cannot
    be resolved against `exemplars` with MissingMetadata, and entries
    whose example has an unparsable version with MalformedVersion. Any
    other malformed entry raises PolicyFormatError.
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise PolicyFormatError(f"Static rule file not found: {path}")
    except yaml.YAMLError as e:
        raise PolicyFormatError(f"Invalid YAML in {path}: {e}")

    entries = data.get("rules", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise PolicyFormatError(f"Expected a list of rules in {path}")

    sink = DiagnosticSink()
    rules: List[Rule] = []
    for index, entry in enumerate(entries):
        try:
            rules.append(static_rule_from_dict(entry, id_factory, exemplars))
        except UnknownCollectionTypeError as e:
            sink.add(DiagnosticCode.UNKNOWN_COLLECTION_TYPE, e.message, f"{path.name}#{index}")
        except ExemplarError as e:
            sink.add(DiagnosticCode.MISSING_METADATA, e.message, f"{path.name}#{index}")
        except MalformedVersionError as e:
            sink.add(DiagnosticCode.MALFORMED_VERSION, e.message, f"{path.name}#{index}")
        except (KeyError, TypeError, ValueError, AttributeError, ValidationError) as e:
            raise PolicyFormatError(f"Invalid static rule: {e}", {"file": path.name, "index": index})

    return StaticRulesResult(
        fragment=RuleFragment(source=path.name, rules=tuple(rules)),
        diagnostics=sink.freeze(),
    )


def exclusions_under(
    exclusions: Sequence[str],
    root_path: str,
    root_variable: str,
) -> Tuple[str, ...]:
    """
    Keep the exclusions below `root_path`, rewritten onto `root_variable`.

        exclusions_under(["C:\\Windows\\Tasks\\*"], "C:\\Windows", "%WINDIR%")
        -> ("%WINDIR%\\Tasks\\*",)
    """
    prefix = root_path.rstrip("\\")
    result = []
    for exclusion in exclusions:
        if exclusion.lower().startswith(prefix.lower()) and exclusion[len(prefix):][:1] in ("\\", ":"):
            result.append(root_variable + exclusion[len(prefix):])
    return tuple(result)
