"""
LockerForge configuration.

A run is driven by explicit, pre-validated values. They can be built in
code or loaded from a YAML file:

    granularity: PublisherProductBinary
    principal: S-1-1-0
    action: Allow
    warn_on_diagnostic: false
    admin_sids:
      - S-1-5-21-1004336348-1177238915-682003330-512
    static_rules: static-rules.yaml
    policy_name: Contoso workstations
    policy_description: Built from the March software inventory
    source_paths:
      - path: "C:\\\\Program Files\\\\Contoso"
        enforce_minimum_version: true
      - path: "C:\\\\Tools"
        recurse: false

Source paths carry per-location options. A file under a source path
with enforce_minimum_version gets a publisher rule pinned to its version
whatever the global granularity; recurse: false limits the source path
to files directly inside it.
"""

import ntpath
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml

from lockerforge.core.exceptions import ConfigError, ValidationError
from lockerforge.core.models import EVERYONE_SID, Action, Granularity
from lockerforge.scan.writable_dirs import SEPARATOR, normalize_directory


@dataclass(frozen=True)
class SourcePath:
    path:                    str
    recurse:                 bool = True
    enforce_minimum_version: bool = False

    def covers(self, file_path: str) -> bool:
        """Case-insensitive containment; a trailing "\\*" on the source path is ignored."""
        root = normalize_directory(self.path).lower()
        if root.endswith(SEPARATOR + "*"):
            root = root[:-2]
        target = normalize_directory(file_path).lower()
        if target == root:
            return True
        if self.recurse:
            return target.startswith(root + SEPARATOR)
        return ntpath.dirname(target) == root

    @classmethod
    def from_dict(cls, data: Any) -> "SourcePath":
        if isinstance(data, str):
            data = {"path": data}
        if not isinstance(data, dict) or not data.get("path"):
            raise ConfigError("Each source path needs a 'path'", {"entry": repr(data)})
        unknown = sorted(set(data) - {f.name for f in fields(cls)})
        if unknown:
            raise ConfigError("Unknown source path keys", {"keys": ", ".join(unknown)})
        return cls(
            path=str(data["path"]),
            recurse=bool(data.get("recurse", True)),
            enforce_minimum_version=bool(data.get("enforce_minimum_version", False)),
        )


@dataclass(frozen=True)
class SynthesisConfig:
    granularity:        Granularity = Granularity.PUBLISHER_PRODUCT_BINARY
    principal:          str = EVERYONE_SID
    action:             Action = Action.ALLOW
    warn_on_diagnostic: bool = False
    admin_sids:         Tuple[str, ...] = ()
    static_rules:       Optional[Path] = None
    policy_name:        str = ""
    policy_description: str = ""
    source_paths:       Tuple[SourcePath, ...] = ()

    def pins_version(self, file_path: str) -> bool:
        return any(
            source.enforce_minimum_version and source.covers(file_path)
            for source in self.source_paths
        )

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> "SynthesisConfig":
        """Build a config from plain data, rejecting unknown keys."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                "Unknown configuration keys",
                {"keys": ", ".join(unknown)},
            )

        try:
            granularity = Granularity.parse(
                data.get("granularity", cls.granularity.name)
            )
            action = Action(data.get("action", Action.ALLOW.value))
        except ValidationError as e:
            raise ConfigError(e.message, e.details)
        except ValueError as e:
            raise ConfigError(f"Invalid action: {e}")

        admin_sids = data.get("admin_sids") or []
        if isinstance(admin_sids, str):
            admin_sids = [admin_sids]

        static_rules = data.get("static_rules")
        if static_rules is not None:
            static_rules = Path(static_rules)
            if base_dir is not None and not static_rules.is_absolute():
                static_rules = base_dir / static_rules

        source_paths = data.get("source_paths") or []
        if not isinstance(source_paths, list):
            raise ConfigError("source_paths must be a list")

        return cls(
            granularity=granularity,
            principal=str(data.get("principal", EVERYONE_SID)),
            action=action,
            warn_on_diagnostic=bool(data.get("warn_on_diagnostic", False)),
            admin_sids=tuple(str(s) for s in admin_sids),
            static_rules=static_rules,
            policy_name=str(data.get("policy_name") or ""),
            policy_description=str(data.get("policy_description") or ""),
            source_paths=tuple(SourcePath.from_dict(entry) for entry in source_paths),
        )


def load_config(path: Path) -> SynthesisConfig:
    """Load a SynthesisConfig from a YAML file."""
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    return SynthesisConfig.from_dict(data, base_dir=path.parent)
