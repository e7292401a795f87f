"""
Loaders for external scanner output.

The scanner (signature checks, hashing, ACL enumeration) runs elsewhere;
these functions only turn its documents into ScanRecord and
WritableDirectoryEntry values. Accepted formats, by file suffix:

    .json        a list of items, or {"records": [...]} / {"directories": [...]}
    .jsonl       one item per line
    .yaml/.yml   same shapes as .json

File item:
    {"path": "C:\\\\Tools\\\\app.exe",
     "signer": {"publisher_name": "O=CONTOSO, C=US", "product_name": "App",
                "binary_name": "APP.EXE", "version": "1.2.0.0"},
     "content_hash": "0x3F...", "length": 1024, "file_type": "Exe"}

Directory item:
    {"path": "C:\\\\Windows\\\\Tasks",
     "grantees": [{"sid": "S-1-5-11", "rights": ["CREATE_FILES", "EXECUTE_FILE"],
                   "inherited": false}]}
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import yaml

from lockerforge.core.exceptions import LockerForgeError, ScanFormatError
from lockerforge.core.models import RuleCollectionType, ScanRecord, SignerInfo
from lockerforge.scan.writable_dirs import (
    AccessControlEntry,
    FileSystemRights,
    WritableDirectoryEntry,
)


def _read_items(path: Path, list_key: str) -> List[Any]:
    path = Path(path)
    suffix = path.suffix.lower()

    try:
        with open(path, 'r', encoding='utf-8-sig') as f:
            if suffix == ".jsonl":
                items = []
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        items.append(json.loads(line))
                    except json.JSONDecodeError as e:
                        raise ScanFormatError(f"Invalid JSON at line {line_num}: {e}")
                return items
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except FileNotFoundError:
        raise ScanFormatError(f"Scan file not found: {path}")
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ScanFormatError(f"Failed to parse {path}: {e}")

    if isinstance(data, dict):
        data = data.get(list_key, [])
    if not isinstance(data, list):
        raise ScanFormatError(f"Expected a list of items in {path}")
    return data


def _parse_rights(value: Any) -> FileSystemRights:
    if isinstance(value, int):
        return FileSystemRights(value)
    if isinstance(value, str):
        value = [v for v in value.replace("|", ",").split(",") if v.strip()]
    rights = FileSystemRights(0)
    for name in value:
        rights |= FileSystemRights[name.strip().upper()]
    return rights


def record_from_dict(data: Dict[str, Any]) -> ScanRecord:
    signer = None
    signer_data = data.get("signer")
    if signer_data and signer_data.get("publisher_name"):
        signer = SignerInfo(
            publisher_name=signer_data["publisher_name"],
            product_name=signer_data.get("product_name") or "",
            binary_name=signer_data.get("binary_name") or "",
            version=str(signer_data.get("version") or ""),
        )

    file_type = data.get("file_type")
    return ScanRecord(
        path=data["path"],
        is_directory=bool(data.get("is_directory", False)),
        signer=signer,
        content_hash=data.get("content_hash") or None,
        length=int(data.get("length") or 0),
        file_type=RuleCollectionType.parse(file_type) if file_type else None,
    )


def directory_from_dict(data: Dict[str, Any]) -> WritableDirectoryEntry:
    grantees = tuple(
        AccessControlEntry(
            sid=g["sid"],
            rights=_parse_rights(g.get("rights", 0)),
            inherited=bool(g.get("inherited", False)),
            allow=bool(g.get("allow", True)),
        )
        for g in data.get("grantees", [])
    )
    return WritableDirectoryEntry(path=data["path"], grantees=grantees)


def load_scan_records(path: Path) -> List[ScanRecord]:
    """Load file scan records; raises ScanFormatError naming the bad item."""
    records = []
    for index, item in enumerate(_read_items(path, "records")):
        try:
            records.append(record_from_dict(item))
        except (KeyError, TypeError, ValueError, AttributeError, LockerForgeError) as e:
            raise ScanFormatError(f"Invalid scan record: {e}", {"index": index})
    return records


def load_writable_directories(path: Path) -> List[WritableDirectoryEntry]:
    """Load writable-directory scan entries; raises ScanFormatError naming the bad item."""
    entries = []
    for index, item in enumerate(_read_items(path, "directories")):
        try:
            entries.append(directory_from_dict(item))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ScanFormatError(f"Invalid directory entry: {e}", {"index": index})
    return entries
