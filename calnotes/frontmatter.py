from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import yaml

FRONTMATTER_DELIMITER = "---"
FRONTMATTER_PATTERN = re.compile(r"\A---\r?\n(.*?)\r?\n---(?:\r?\n|\Z)", re.DOTALL)
_YAML_LIKE_LINE = re.compile(r"^[A-Za-z0-9_\"'.-]+\s*:")
_BOM = "\ufeff"
_NULL_MARKERS = {"null", "undefined", "none", "n/a"}


class FrontmatterError(ValueError):
    pass


@dataclass
class SafetyCheck:
    safe: bool
    reason: str = ""


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split a document into its leading YAML fields and the remaining body.

    Documents without a leading block yield empty fields. A block that is not
    a YAML mapping raises FrontmatterError.
    """
    content = text[1:] if text.startswith(_BOM) else text
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return {}, content
    try:
        payload = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        raise FrontmatterError(f"invalid frontmatter: {exc}") from exc
    if not isinstance(payload, dict):
        raise FrontmatterError("frontmatter root must be a mapping")
    return payload, content[match.end() :]


def render_document(fields: dict[str, Any], body: str) -> str:
    if not fields:
        return body
    yaml_content = yaml.safe_dump(
        fields,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    ).strip()
    return f"{FRONTMATTER_DELIMITER}\n{yaml_content}\n{FRONTMATTER_DELIMITER}\n{body}"


def check_mutation_safety(text: str) -> SafetyCheck:
    """Refuse metadata merges into documents with broken leading blocks.

    Unsafe when the leading block never closes, or when it is immediately
    followed by a second block containing YAML-like entries (a duplicated
    header left behind by a sync conflict).
    """
    normalized = text.replace("\r\n", "\n")
    offset = 1 if normalized.startswith(_BOM) else 0
    if not normalized.startswith("---\n", offset):
        return SafetyCheck(safe=True)

    first_close = normalized.find("\n---\n", offset + 3)
    if first_close == -1:
        if normalized.endswith("\n---"):
            return SafetyCheck(safe=True)
        return SafetyCheck(safe=False, reason="missing frontmatter closing delimiter")

    after_first = normalized[first_close + len("\n---\n") :].lstrip()
    if not after_first.startswith("---\n"):
        return SafetyCheck(safe=True)

    second_close = after_first.find("\n---\n", 3)
    if second_close == -1:
        return SafetyCheck(safe=True)

    second_body = after_first[4:second_close]
    if not any(_YAML_LIKE_LINE.match(line.strip()) for line in second_body.split("\n")):
        return SafetyCheck(safe=True)
    return SafetyCheck(safe=False, reason="duplicate leading frontmatter blocks detected")


def _matching_key(fields: dict[str, Any], key: str) -> str | None:
    normalized = str(key or "").strip().lower()
    for candidate in fields:
        if str(candidate).strip().lower() == normalized:
            return candidate
    return None


def find_key_insensitive(fields: dict[str, Any], key: str) -> Any:
    found = _matching_key(fields, key)
    return fields[found] if found is not None else None


def set_key_insensitive(fields: dict[str, Any], key: str, value: Any) -> None:
    found = _matching_key(fields, key)
    fields[found if found is not None else key] = value


def delete_key_insensitive(fields: dict[str, Any], key: str) -> bool:
    found = _matching_key(fields, key)
    if found is None:
        return False
    del fields[found]
    return True


def stored_text(value: Any) -> str:
    """Return a metadata value as the text a reader sees in the file.

    Unquoted timestamps come back from YAML as datetime objects; they are
    rendered back to their written form so comparisons stay string-exact.
    """
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.strftime("%Y-%m-%d %H:%M:%S")
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def normalize_identity_value(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, date)):
        value = stored_text(value)
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if not normalized or normalized.lower() in _NULL_MARKERS:
        return None
    return normalized
