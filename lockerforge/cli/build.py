"""
lockerforge build: scan records -> Audit.xml, Enforce.xml, snapshot.json.

Usage:
    lockerforge build <scan> --out-dir out/
    lockerforge build <scan> --out-dir out/ --granularity PublisherProduct
    lockerforge build <scan> --out-dir out/ --exclusions exclusions.txt
    lockerforge build <scan> --out-dir out/ --config lockerforge.yaml
    lockerforge build <scan> --out-dir out/ --name "Contoso workstations"

Exclusion lists come from `lockerforge reduce-dirs`. Entries under
--windir / --program-files become exceptions of the matching base rule.

Exit codes:
    0  Policies written, no diagnostics
    1  Policies written, with diagnostics (see stderr)
    2  Error  (bad input, bad config)
"""

import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

import click

from lockerforge.cli._output import (
    _Color,
    BAR_LIGHT,
    banner,
    echo_diagnostics,
    emit_error,
    row_info,
    row_ok,
    row_warn,
)
from lockerforge.config import SynthesisConfig, load_config
from lockerforge.core.exceptions import LockerForgeError
from lockerforge.core.models import Granularity
from lockerforge.pipeline import build_policies
from lockerforge.policy.applocker_xml import render_policy
from lockerforge.policy.base_rules import PROGRAM_FILES_ROOT, WINDIR_ROOT, exclusions_under
from lockerforge.policy.snapshot import save_snapshot
from lockerforge.scan.records import load_scan_records
from lockerforge.scan.writable_dirs import load_exclusions


@click.command(name="build")
@click.argument("scan", type=click.Path(exists=False))
@click.option(
    "--out-dir",
    type=click.Path(file_okay=False),
    required=True,
    help="Directory for Audit.xml, Enforce.xml and snapshot.json.",
)
@click.option(
    "--config", "config_path",
    type=click.Path(),
    default=None,
    help="YAML configuration file.",
)
@click.option(
    "--granularity",
    type=str,
    default=None,
    metavar="LEVEL",
    help="Override the granularity: PublisherOnly, PublisherProduct, "
         "PublisherProductBinary or PublisherProductBinaryVersion.",
)
@click.option(
    "--exclusions", "exclusion_files",
    type=click.Path(),
    multiple=True,
    metavar="PATH",
    help="Exclusion list from reduce-dirs. Repeatable.",
)
@click.option(
    "--windir",
    default="C:\\Windows",
    show_default=True,
    help="Physical path of %WINDIR% in the exclusion lists.",
)
@click.option(
    "--program-files", "program_files",
    multiple=True,
    default=("C:\\Program Files", "C:\\Program Files (x86)"),
    show_default=True,
    help="Physical paths of %PROGRAMFILES% in the exclusion lists. Repeatable.",
)
@click.option("--name", "policy_name", default=None, help="Policy name (overrides the config).")
@click.option("--description", "policy_description", default=None, help="Policy description (overrides the config).")
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Summary format.",
)
@click.option("--quiet", is_flag=True, default=False, help="Suppress output.")
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
def build_command(
    scan:               str,
    out_dir:            str,
    config_path:        Optional[str],
    granularity:        Optional[str],
    exclusion_files:    Tuple[str, ...],
    windir:             str,
    program_files:      Tuple[str, ...],
    policy_name:        Optional[str],
    policy_description: Optional[str],
    fmt:                str,
    quiet:              bool,
    no_color:           bool,
) -> None:
    """
    Build Audit and Enforce AppLocker policies from a file scan.

    SCAN is the scanner's output (.json, .jsonl or .yaml).
    """
    _Color.configure(not no_color)
    fmt = fmt.lower()

    # ── Inputs ────────────────────────────────────────────────
    try:
        config = load_config(Path(config_path)) if config_path else SynthesisConfig()
        if granularity:
            config = replace(config, granularity=Granularity.parse(granularity))
        if policy_name is not None:
            config = replace(config, policy_name=policy_name)
        if policy_description is not None:
            config = replace(config, policy_description=policy_description)

        exclusions: List[str] = []
        for path in exclusion_files:
            exclusions.extend(load_exclusions(Path(path)))

        windir_exclusions = exclusions_under(exclusions, windir, WINDIR_ROOT)
        pf_exclusions: Tuple[str, ...] = ()
        for root in program_files:
            pf_exclusions += exclusions_under(exclusions, root, PROGRAM_FILES_ROOT)

        records = load_scan_records(Path(scan))
    except FileNotFoundError as e:
        emit_error(f"File not found: {e.filename}", fmt, quiet, "lockerforge_build")
        sys.exit(2)
    except LockerForgeError as e:
        emit_error(str(e), fmt, quiet, "lockerforge_build")
        sys.exit(2)

    # ── Build ─────────────────────────────────────────────────
    try:
        result = build_policies(
            records,
            config,
            windir_exclusions=windir_exclusions,
            program_files_exclusions=pf_exclusions,
        )
    except LockerForgeError as e:
        emit_error(str(e), fmt, quiet, "lockerforge_build")
        sys.exit(2)

    # ── Write ─────────────────────────────────────────────────
    out = Path(out_dir)
    audit_path = out / "Audit.xml"
    enforce_path = out / "Enforce.xml"
    snapshot_path = out / "snapshot.json"
    try:
        out.mkdir(parents=True, exist_ok=True)
        audit_path.write_text(render_policy(result.audit), encoding="utf-8")
        enforce_path.write_text(render_policy(result.enforce), encoding="utf-8")
        policy_hash = save_snapshot(result.enforce, snapshot_path)
    except (OSError, LockerForgeError) as e:
        emit_error(f"Failed to write output: {e}", fmt, quiet, "lockerforge_build")
        sys.exit(2)

    exit_code = 1 if result.diagnostics else 0
    if quiet:
        sys.exit(exit_code)

    if fmt == "json":
        click.echo(json.dumps({
            "lockerforge_build": {
                "scan":            scan,
                "granularity":     config.granularity.name,
                "records":         len(records),
                "publisher_rules": len(result.synthesis.publisher_rules),
                "hash_rules":      len(result.synthesis.hash_rules),
                "total_rules":     result.enforce.rule_count,
                "policy_name":     result.enforce.info.name,
                "last_update":     result.enforce.info.last_update,
                "policy_hash":     policy_hash,
                "outputs":         [str(audit_path), str(enforce_path), str(snapshot_path)],
                "diagnostics":     [d.to_dict() for d in result.diagnostics],
            }
        }, indent=2))
        sys.exit(exit_code)

    banner("Policy Build")
    if result.enforce.info.name:
        click.echo(row_info("Policy", result.enforce.info.name))
    click.echo(row_info("Scan", f"{scan}  ({len(records):,} records)"))
    click.echo(row_info("Granularity", config.granularity.name))
    click.echo(row_info("Exclusions", f"{len(windir_exclusions)} under %WINDIR%, "
                                      f"{len(pf_exclusions)} under %PROGRAMFILES%"))
    click.echo()
    click.echo(row_ok("Publisher", f"{len(result.synthesis.publisher_rules):,} rule(s)"))
    click.echo(row_ok("Hash", f"{len(result.synthesis.hash_rules):,} rule(s)"))
    click.echo(row_ok("Policy", f"{result.enforce.rule_count:,} rule placement(s)"))
    if result.diagnostics:
        click.echo(row_warn("Diagnostics", f"{len(result.diagnostics)} (see stderr)"))
    click.echo()
    click.echo(row_info("Audit", str(audit_path)))
    click.echo(row_info("Enforce", str(enforce_path)))
    click.echo(row_info("Snapshot", f"{snapshot_path}  " + _Color.cyan(policy_hash[:16] + "...")))
    click.echo(f"  {BAR_LIGHT}")
    click.echo()

    echo_diagnostics(result.diagnostics)
    sys.exit(exit_code)
