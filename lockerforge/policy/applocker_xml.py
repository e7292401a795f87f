"""
AppLocker XML rendering and parsing.

    <AppLockerPolicy Version="1">
      <RuleCollection Type="Exe" EnforcementMode="AuditOnly">
        <FilePublisherRule Id=".." Name=".." Description=".." UserOrGroupSid=".." Action="Allow">
          <Conditions>
            <FilePublisherCondition PublisherName=".." ProductName=".." BinaryName="..">
              <BinaryVersionRange LowSection="*" HighSection="*" />
            </FilePublisherCondition>
          </Conditions>
        </FilePublisherRule>
        <FilePathRule ...>
          <Conditions><FilePathCondition Path=".." /></Conditions>
          <Exceptions><FilePathCondition Path=".." /></Exceptions>
        </FilePathRule>
        <FileHashRule ...>
          <Conditions>
            <FileHashCondition>
              <FileHash Type="SHA256" Data="0x.." SourceFileName=".." SourceFileLength=".." />
            </FileHashCondition>
          </Conditions>
        </FileHashRule>
      </RuleCollection>
    </AppLockerPolicy>

A FileHashCondition holding several FileHash elements parses to one
HashRule per hash, all sharing the rule's id.
"""

from typing import List, Union
from xml.etree import ElementTree as ET

from lockerforge.core.exceptions import LockerForgeError, PolicyFormatError
from lockerforge.core.models import (
    WILDCARD,
    Action,
    EnforcementMode,
    HashRule,
    PathRule,
    Policy,
    PublisherRule,
    Rule,
    RuleCollection,
    RuleCollectionType,
    Scope,
    normalize_hash,
)


# ─────────────────────────────────────────────────────────────
# Rendering
# ─────────────────────────────────────────────────────────────

def _rule_element(rule: Rule) -> ET.Element:
    tag = {
        PublisherRule: "FilePublisherRule",
        HashRule:      "FileHashRule",
        PathRule:      "FilePathRule",
    }[type(rule)]
    element = ET.Element(tag, {
        "Id":             rule.rule_id,
        "Name":           rule.name,
        "Description":    rule.description,
        "UserOrGroupSid": rule.principal,
        "Action":         rule.action.value,
    })
    conditions = ET.SubElement(element, "Conditions")

    match rule:
        case PublisherRule():
            condition = ET.SubElement(conditions, "FilePublisherCondition", {
                "PublisherName": rule.publisher,
                "ProductName":   rule.product,
                "BinaryName":    rule.binary,
            })
            ET.SubElement(condition, "BinaryVersionRange", {
                "LowSection":  rule.min_version,
                "HighSection": rule.max_version,
            })
        case HashRule():
            condition = ET.SubElement(conditions, "FileHashCondition")
            attributes = {
                "Type":           "SHA256",
                "Data":           rule.hash_value,
                "SourceFileName": rule.source_file_name,
            }
            if rule.source_file_length > 0:
                attributes["SourceFileLength"] = str(rule.source_file_length)
            ET.SubElement(condition, "FileHash", attributes)
        case PathRule():
            ET.SubElement(conditions, "FilePathCondition", {"Path": rule.path})
            if rule.exceptions:
                exceptions = ET.SubElement(element, "Exceptions")
                for path in rule.exceptions:
                    ET.SubElement(exceptions, "FilePathCondition", {"Path": path})

    return element


def render_policy(policy: Policy) -> str:
    """Serialize a policy to AppLocker XML text."""
    root = ET.Element("AppLockerPolicy", {"Version": "1"})
    for collection in policy.collections:
        node = ET.SubElement(root, "RuleCollection", {
            "Type":            collection.collection_type.value,
            "EnforcementMode": collection.enforcement_mode.value,
        })
        for rule in collection.rules:
            node.append(_rule_element(rule))
    ET.indent(root, space="  ")
    return ET.tostring(root, encoding="unicode") + "\n"


# ─────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────

def _common(element: ET.Element, collection_type: RuleCollectionType) -> dict:
    return dict(
        rule_id=element.get("Id", ""),
        name=element.get("Name", ""),
        description=element.get("Description", ""),
        principal=element.get("UserOrGroupSid", ""),
        action=Action(element.get("Action", Action.ALLOW.value)),
        scope=Scope.of(collection_type),
    )


def _parse_rules(element: ET.Element, collection_type: RuleCollectionType) -> List[Rule]:
    common = _common(element, collection_type)

    if element.tag == "FilePublisherRule":
        condition = element.find("Conditions/FilePublisherCondition")
        if condition is None:
            raise PolicyFormatError("FilePublisherRule without FilePublisherCondition")
        version_range = condition.find("BinaryVersionRange")
        low = high = WILDCARD
        if version_range is not None:
            low = version_range.get("LowSection", WILDCARD)
            high = version_range.get("HighSection", WILDCARD)
        return [PublisherRule(
            publisher=condition.get("PublisherName", ""),
            product=condition.get("ProductName", WILDCARD),
            binary=condition.get("BinaryName", WILDCARD),
            min_version=low,
            max_version=high,
            **common,
        )]

    if element.tag == "FileHashRule":
        return [
            HashRule(
                hash_value=normalize_hash(file_hash.get("Data", "")),
                source_file_name=file_hash.get("SourceFileName", ""),
                source_file_length=int(file_hash.get("SourceFileLength", 0)),
                **common,
            )
            for file_hash in element.findall("Conditions/FileHashCondition/FileHash")
        ]

    if element.tag == "FilePathRule":
        condition = element.find("Conditions/FilePathCondition")
        if condition is None:
            raise PolicyFormatError("FilePathRule without FilePathCondition")
        return [PathRule(
            path=condition.get("Path", ""),
            exceptions=tuple(
                e.get("Path", "") for e in element.findall("Exceptions/FilePathCondition")
            ),
            **common,
        )]

    raise PolicyFormatError(f"Unsupported rule element: {element.tag}")


def parse_policy(text: Union[str, bytes]) -> Policy:
    """Parse AppLocker XML (text, or raw file bytes) into a Policy."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise PolicyFormatError(f"Invalid XML: {e}")
    if root.tag != "AppLockerPolicy":
        raise PolicyFormatError(f"Not an AppLocker policy (root element {root.tag})")

    collections = []
    for node in root.findall("RuleCollection"):
        try:
            collection_type = RuleCollectionType.parse(node.get("Type", ""))
            mode = EnforcementMode(node.get("EnforcementMode", "NotConfigured"))
            rules: List[Rule] = []
            for element in node:
                rules.extend(_parse_rules(element, collection_type))
        except PolicyFormatError:
            raise
        except (LockerForgeError, ValueError) as e:
            raise PolicyFormatError(
                f"Invalid rule collection: {e}",
                {"type": node.get("Type", "?")},
            )
        collections.append(RuleCollection(
            collection_type=collection_type,
            enforcement_mode=mode,
            rules=tuple(rules),
        ))
    return Policy(collections=tuple(collections))
