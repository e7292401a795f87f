"""
lockerforge reduce-dirs: writable-directory scan -> exclusion list.

Usage:
    lockerforge reduce-dirs <scan> --out exclusions.txt
    lockerforge reduce-dirs <scan> --out exclusions.txt --force
    lockerforge reduce-dirs <scan> --out exclusions.txt --admin-sid S-1-5-21-...-1105

The exclusion list is cached: an existing --out file is reused unless
--force is given.
"""

import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from lockerforge.cli._output import _Color, banner, emit_error, row_ok, row_info
from lockerforge.config import load_config
from lockerforge.core.exceptions import LockerForgeError
from lockerforge.scan.records import load_writable_directories
from lockerforge.scan.writable_dirs import StaticAdminResolver, reduce_or_load


@click.command(name="reduce-dirs")
@click.argument("scan", type=click.Path(exists=False))
@click.option(
    "--out", "out_path",
    type=click.Path(),
    required=True,
    metavar="PATH",
    help="Exclusion list to write (and reuse on later runs).",
)
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Reduce again even if the exclusion list already exists.",
)
@click.option(
    "--admin-sid",
    "admin_sids",
    multiple=True,
    metavar="SID",
    help="Extra SID to treat as administrative. Repeatable.",
)
@click.option(
    "--config", "config_path",
    type=click.Path(),
    default=None,
    help="YAML configuration (admin_sids are read from it).",
)
@click.option("--quiet", is_flag=True, default=False, help="Suppress output.")
@click.option("--no-color", is_flag=True, default=False, help="Disable ANSI color output.")
def reduce_command(
    scan:        str,
    out_path:    str,
    force:       bool,
    admin_sids:  Tuple[str, ...],
    config_path: Optional[str],
    quiet:       bool,
    no_color:    bool,
) -> None:
    """
    Reduce a writable-directory scan to path-rule exclusions.

    SCAN is the scanner's output (.json, .jsonl or .yaml).
    """
    _Color.configure(not no_color)

    try:
        extra = list(admin_sids)
        if config_path:
            extra += list(load_config(Path(config_path)).admin_sids)
        resolver = StaticAdminResolver(extra)
        cached = Path(out_path).exists() and not force
        result = reduce_or_load(
            Path(out_path),
            lambda: load_writable_directories(Path(scan)),
            resolver,
            force=force,
        )
    except LockerForgeError as e:
        emit_error(str(e), "human", quiet, "lockerforge_reduce")
        sys.exit(2)
    except OSError as e:
        emit_error(f"Failed to write exclusions: {e}", "human", quiet, "lockerforge_reduce")
        sys.exit(2)

    if quiet:
        sys.exit(0)

    banner("Writable Directory Reduction")
    if cached:
        click.echo(row_info("Source", f"cached list {out_path} (use --force to rescan)"))
    else:
        click.echo(row_info("Source", scan))
    click.echo(row_ok("Exclusions", f"{len(result.exclusions):,} written to {out_path}"))
    click.echo()
    for line in result.exclusions:
        click.echo(f"    {line}")
    click.echo()
