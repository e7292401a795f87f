"""
lockerforge/scan/writable_dirs.py

Collapse a scan of user-writable directories into path-rule exclusions.

Input is what the external scanner found: directories under an allowed
root (e.g. %WINDIR%) where a non-administrative principal can write.
Every such directory must be excluded from the allow rule, but a
directory below one that is already excluded adds nothing, so only the
top-most entries are kept:

    C:\\Windows\\Tasks
    C:\\Windows\\Tasks\\Sub          -> covered, dropped
    C:\\Windows\\Temp

    => C:\\Windows\\Tasks\\*
       C:\\Windows\\Temp\\*

A kept directory where a non-admin can also create an executable
alternate data stream gets a second ":*" exclusion.

The result is cached as a plain-text file, one expression per line, so
the (slow) scan only runs again when asked to.
"""

from dataclasses import dataclass
from enum import IntFlag
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from lockerforge.core.diagnostics import Diagnostic


SEPARATOR = "\\"


class FileSystemRights(IntFlag):
    """NTFS access mask bits relevant to writable-directory checks."""
    READ_DATA                 = 0x000001  # ListDirectory on directories
    CREATE_FILES              = 0x000002  # WriteData
    CREATE_DIRECTORIES        = 0x000004  # AppendData
    READ_EXTENDED_ATTRIBUTES  = 0x000008
    WRITE_EXTENDED_ATTRIBUTES = 0x000010
    EXECUTE_FILE              = 0x000020  # Traverse on directories
    DELETE_SUBDIRECTORIES     = 0x000040
    READ_ATTRIBUTES           = 0x000080
    WRITE_ATTRIBUTES          = 0x000100
    DELETE                    = 0x010000
    READ_PERMISSIONS          = 0x020000
    CHANGE_PERMISSIONS        = 0x040000
    TAKE_OWNERSHIP            = 0x080000
    SYNCHRONIZE               = 0x100000

    FULL_CONTROL = 0x1F01FF


# All of these are needed to plant and run code in an ADS on the directory.
ADS_EXECUTION_RIGHTS = (
    FileSystemRights.CREATE_FILES
    | FileSystemRights.CREATE_DIRECTORIES
    | FileSystemRights.WRITE_EXTENDED_ATTRIBUTES
    | FileSystemRights.WRITE_ATTRIBUTES
    | FileSystemRights.READ_DATA
    | FileSystemRights.EXECUTE_FILE
)


# ─────────────────────────────────────────────────────────────
# Admin identities
# ─────────────────────────────────────────────────────────────

WELL_KNOWN_ADMIN_SIDS: FrozenSet[str] = frozenset({
    "S-1-5-18",        # LocalSystem
    "S-1-5-19",        # LocalService
    "S-1-5-20",        # NetworkService
    "S-1-5-32-544",    # BUILTIN\Administrators
    "S-1-3-0",         # CREATOR OWNER
    "S-1-5-80-956008885-3418522649-1831038044-1853292631-2271478464",  # TrustedInstaller
})

# Domain Admins (512) and Enterprise Admins (519) under any domain SID.
_ADMIN_DOMAIN_RIDS = ("-512", "-519")


class AdminIdentityResolver(Protocol):
    def is_admin(self, sid: str) -> bool:
        ...


class StaticAdminResolver:
    """
    Treats the well-known administrative SIDs, domain/enterprise admin
    groups, and any configured extras as administrative.
    """

    def __init__(self, extra_sids: Iterable[str] = ()):
        self.admin_sids = WELL_KNOWN_ADMIN_SIDS | {s.upper() for s in extra_sids}

    def is_admin(self, sid: str) -> bool:
        sid = sid.strip().upper()
        if sid in self.admin_sids:
            return True
        return sid.startswith("S-1-5-21-") and sid.endswith(_ADMIN_DOMAIN_RIDS)


# ─────────────────────────────────────────────────────────────
# Scan entries
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AccessControlEntry:
    """One ACE on a scanned directory."""
    sid:       str
    rights:    FileSystemRights
    inherited: bool = False
    allow:     bool = True

    def grants(self, wanted: FileSystemRights) -> bool:
        return self.allow and (self.rights & wanted) == wanted


@dataclass(frozen=True)
class WritableDirectoryEntry:
    """A directory the scanner found writable, with the ACEs granting it."""
    path:     str
    grantees: Tuple[AccessControlEntry, ...] = ()

    @property
    def normalized_path(self) -> str:
        return normalize_directory(self.path)

    @property
    def key(self) -> str:
        return self.normalized_path.lower()


def normalize_directory(path: str) -> str:
    """Use backslashes and drop trailing separators ("C:\\" becomes "C:")."""
    return path.strip().replace("/", SEPARATOR).rstrip(SEPARATOR)


def allows_ads_execution(
    entry: WritableDirectoryEntry,
    admin_resolver: AdminIdentityResolver,
) -> bool:
    """True if an explicit, non-admin ACE grants every ADS execution right."""
    return any(
        not ace.inherited
        and not admin_resolver.is_admin(ace.sid)
        and ace.grants(ADS_EXECUTION_RIGHTS)
        for ace in entry.grantees
    )


# ─────────────────────────────────────────────────────────────
# Reduction
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReductionResult:
    exclusions:  Tuple[str, ...]
    diagnostics: Tuple[Diagnostic, ...] = ()


def reduce_writable_directories(
    entries: Iterable[WritableDirectoryEntry],
    admin_resolver: Optional[AdminIdentityResolver] = None,
) -> ReductionResult:
    """
    Reduce writable directories to the minimal covering set of exclusions.

    Paths are compared case-insensitively and sorted component by
    component. Output is in that order; each kept directory yields
    "dir\\*" and, if it also allows ADS execution by a non-admin,
    "dir:*" right after it.
    """
    if admin_resolver is None:
        admin_resolver = StaticAdminResolver()

    # Component-wise, so "C:\\Foo\\Bar" sorts before a sibling like "C:\\Foo Bar".
    ordered = sorted(entries, key=lambda e: e.key.split(SEPARATOR))

    exclusions: List[str] = []
    last_kept = ""
    last_kept_key = ""

    for entry in ordered:
        path = entry.normalized_path
        key = entry.key
        if not key:
            continue

        # Same directory again, or a descendant of the last kept one.
        if last_kept and (key == last_kept_key or key.startswith(last_kept)):
            continue

        exclusions.append(path + SEPARATOR + "*")
        if allows_ads_execution(entry, admin_resolver):
            exclusions.append(path + ":*")

        last_kept_key = key
        last_kept = key + SEPARATOR

    return ReductionResult(exclusions=tuple(exclusions))


# ─────────────────────────────────────────────────────────────
# Persisted exclusion lists
# ─────────────────────────────────────────────────────────────

def save_exclusions(path: Path, exclusions: Sequence[str]) -> None:
    """Write one exclusion expression per line."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8', newline='\n') as f:
        for line in exclusions:
            f.write(line)
            f.write('\n')


def load_exclusions(path: Path) -> Tuple[str, ...]:
    """Read an exclusion list written by save_exclusions(); blank lines are ignored."""
    with open(path, 'r', encoding='utf-8-sig') as f:
        return tuple(line.strip() for line in f if line.strip())


def reduce_or_load(
    cache_path: Path,
    scan: Callable[[], Iterable[WritableDirectoryEntry]],
    admin_resolver: Optional[AdminIdentityResolver] = None,
    force: bool = False,
) -> ReductionResult:
    """
    Return the cached exclusion list, or scan, reduce and cache it.

    `scan` is only called when the cache is missing or force=True.
    """
    cache_path = Path(cache_path)
    if cache_path.exists() and not force:
        return ReductionResult(exclusions=load_exclusions(cache_path))

    result = reduce_writable_directories(scan(), admin_resolver)
    save_exclusions(cache_path, result.exclusions)
    return result
