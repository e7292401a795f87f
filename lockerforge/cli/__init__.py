"""
lockerforge/cli/__init__.py

LockerForge CLI: root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    lockerforge = "lockerforge.cli:cli"

Adding a new command:
    1. Create lockerforge/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

import click

from lockerforge.cli.build import build_command
from lockerforge.cli.compare import compare_command
from lockerforge.cli.reduce import reduce_command


@click.group()
@click.version_option(package_name="lockerforge")
def cli() -> None:
    """
    LockerForge: AppLocker rule synthesis and comparison.

    \b
    Commands:
      reduce-dirs  Writable-directory scan -> exclusion list.
      build        File scan -> Audit.xml, Enforce.xml, snapshot.json.
      compare      Diff two policies (XML or snapshot).

    \b
    Quick start:
      lockerforge reduce-dirs writable.json --out exclusions.txt
      lockerforge build files.json --exclusions exclusions.txt --out-dir out
      lockerforge compare previous/snapshot.json out/snapshot.json --hide-same
    """
    pass


cli.add_command(reduce_command)
cli.add_command(build_command)
cli.add_command(compare_command)
