"""
lockerforge compare: diff two policies.

Usage:
    lockerforge compare <reference> <comparison>                 Human table
    lockerforge compare <reference> <comparison> --hide-same     Differences only
    lockerforge compare <reference> <comparison> --format csv    Spreadsheet rows
    lockerforge compare <reference> <comparison> --format json   Machine-readable

Each side is AppLocker XML (.xml) or a LockerForge snapshot (.json).

Exit codes:
    0  Policies are equivalent
    1  Policies differ
    2  Error  (file missing, unparsable policy)
"""

import csv
import io
import json
import sys
from pathlib import Path
from typing import List

import click

from lockerforge.cli._output import _Color, BAR_LIGHT, banner, emit_error, row_info
from lockerforge.core.exceptions import LockerForgeError
from lockerforge.policy.differ import (
    Classification,
    ComparisonLevel,
    ComparisonRecord,
    compare_policies,
    has_differences,
)
from lockerforge.policy.snapshot import read_policy_file


@click.command(name="compare")
@click.argument("reference", type=click.Path(exists=False))
@click.argument("comparison", type=click.Path(exists=False))
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json", "csv"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format: human (default), json (automation), csv (spreadsheets).",
)
@click.option(
    "--hide-same",
    is_flag=True,
    default=False,
    help="Suppress rows classified as Same.",
)
@click.option(
    "--quiet",
    is_flag=True,
    default=False,
    help="Suppress all output. Use exit code only (0=same, 1=different, 2=error).",
)
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable ANSI color output.",
)
def compare_command(
    reference:  str,
    comparison: str,
    fmt:        str,
    hide_same:  bool,
    quiet:      bool,
    no_color:   bool,
) -> None:
    """
    Compare two policies collection by collection and rule by rule.

    \b
    Examples:
      lockerforge compare previous.json current.json
      lockerforge compare Enforce.xml Enforce-new.xml --hide-same
      lockerforge compare a.xml b.xml --format csv > diff.csv
    """
    _Color.configure(not no_color)
    fmt = fmt.lower()

    try:
        ref_policy = read_policy_file(Path(reference))
        cmp_policy = read_policy_file(Path(comparison))
    except LockerForgeError as e:
        emit_error(str(e), fmt, quiet, "lockerforge_compare")
        sys.exit(2)

    records = compare_policies(ref_policy, cmp_policy, include_same=not hide_same)
    differs = has_differences(records)

    if quiet:
        sys.exit(1 if differs else 0)

    if fmt == "json":
        click.echo(json.dumps({
            "lockerforge_compare": {
                "reference":  reference,
                "comparison": comparison,
                "different":  differs,
                "records":    [r.to_dict() for r in records],
            }
        }, indent=2))
    elif fmt == "csv":
        _output_csv(records)
    else:
        _output_human(records, reference, comparison, differs)

    sys.exit(1 if differs else 0)


def _output_csv(records: List[ComparisonRecord]) -> None:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([
        "Level", "Compare", "FileType", "RuleType", "Action", "Principal",
        "RuleInfo", "Reference", "Comparison",
    ])
    for r in records:
        key = list(r.canonical_key) + [""] * (5 - len(r.canonical_key))
        writer.writerow(
            [r.level.value, r.classification.value]
            + key
            + [r.reference_detail or "", r.comparison_detail or ""]
        )
    click.echo(buffer.getvalue(), nl=False)


def _output_human(
    records:    List[ComparisonRecord],
    reference:  str,
    comparison: str,
    differs:    bool,
) -> None:
    banner("Policy Comparison")
    click.echo(row_info("Reference", reference))
    click.echo(row_info("Comparison", comparison))
    click.echo()

    for level in (ComparisonLevel.COLLECTION, ComparisonLevel.RULE):
        rows = [r for r in records if r.level is level]
        if not rows:
            continue
        click.echo(f"  {BAR_LIGHT}")
        click.echo(_Color.bold(f"  {level.value}"))
        click.echo(f"  {BAR_LIGHT}")
        for r in rows:
            symbol = _Color.classification(r.classification, f"{r.classification.value:<4}")
            click.echo(f"  {symbol}  {' | '.join(r.canonical_key)}")
            if r.classification is not Classification.SAME:
                for side, detail in (("ref", r.reference_detail), ("cmp", r.comparison_detail)):
                    if detail:
                        for line in detail.split("\n"):
                            click.echo(_Color.dim(f"        {side}: {line}"))
        click.echo()

    click.echo(f"  {BAR_LIGHT}")
    if differs:
        changed = sum(1 for r in records if r.classification is not Classification.SAME)
        click.echo(_Color.yellow(_Color.bold(f"  ⚠️   DIFFERENT  ·  {changed} row(s) differ")))
    else:
        click.echo(_Color.green(_Color.bold("  ✅  SAME  ·  policies are equivalent")))
    click.echo(f"  {BAR_LIGHT}")
    click.echo()
