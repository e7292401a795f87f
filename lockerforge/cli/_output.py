"""
Shared terminal helpers for LockerForge commands.
"""

import json
import sys
from typing import Iterable

import click

from lockerforge.core.diagnostics import Diagnostic
from lockerforge.policy.differ import Classification


class _Color:
    """
    ANSI styling for LockerForge reports.

    Off when stdout is not a TTY or --no-color is passed. Comparison
    symbols get one color per classification so a long diff can be
    scanned by eye.
    """
    _on: bool = True

    _CODES = {
        "green":  "32",
        "red":    "31",
        "yellow": "33",
        "cyan":   "36",
        "bold":   "1",
        "dim":    "2",
    }
    _CLASSIFICATION_STYLES = {
        Classification.SAME:               "dim",
        Classification.DIFFERENT:          "yellow",
        Classification.ONLY_IN_REFERENCE:  "red",
        Classification.ONLY_IN_COMPARISON: "green",
    }

    @classmethod
    def configure(cls, enabled: bool) -> None:
        cls._on = enabled and sys.stdout.isatty()

    @classmethod
    def paint(cls, style: str, s: str) -> str:
        return f"\033[{cls._CODES[style]}m{s}\033[0m" if cls._on else s

    @classmethod
    def green(cls, s: str) -> str:
        return cls.paint("green", s)

    @classmethod
    def red(cls, s: str) -> str:
        return cls.paint("red", s)

    @classmethod
    def yellow(cls, s: str) -> str:
        return cls.paint("yellow", s)

    @classmethod
    def cyan(cls, s: str) -> str:
        return cls.paint("cyan", s)

    @classmethod
    def bold(cls, s: str) -> str:
        return cls.paint("bold", s)

    @classmethod
    def dim(cls, s: str) -> str:
        return cls.paint("dim", s)

    @classmethod
    def classification(cls, classification: Classification, s: str) -> str:
        return cls.paint(cls._CLASSIFICATION_STYLES[classification], s)


BAR_HEAVY = "═" * 68
BAR_LIGHT = "─" * 68


def row_ok(label: str, value: str) -> str:
    label_col = _Color.dim(f"{label:<16}")
    return f"  {label_col}  {_Color.green('✅')}  {value}"


def row_warn(label: str, value: str) -> str:
    label_col = _Color.dim(f"{label:<16}")
    return f"  {label_col}  {_Color.yellow('⚠️ ')}  {value}"


def row_info(label: str, value: str) -> str:
    label_col = _Color.dim(f"{label:<16}")
    return f"  {label_col}     {_Color.dim(value)}"


def banner(title: str) -> None:
    click.echo()
    click.echo(_Color.bold(f"  {BAR_HEAVY}"))
    click.echo(_Color.bold(f"  LockerForge  ·  {title}"))
    click.echo(_Color.bold(f"  {BAR_HEAVY}"))
    click.echo()


def echo_diagnostics(diagnostics: Iterable[Diagnostic], quiet: bool = False) -> None:
    """Diagnostics go to stderr so they never mix with report output."""
    if quiet:
        return
    for diagnostic in diagnostics:
        click.echo(_Color.yellow(f"  ⚠️   {diagnostic}"), err=True)


def emit_error(msg: str, fmt: str, quiet: bool, command: str) -> None:
    """Emit error in the correct format. Never raises."""
    if quiet:
        return
    if fmt == "json":
        click.echo(json.dumps({command: {"error": msg}}))
    else:
        click.echo(
            _Color.red(f"\n  ❌  ERROR: {msg}\n"),
            err=True,
        )
