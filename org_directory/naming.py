"""Directory-safe names and distinguished name composition."""
from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import escape_rdn, parse_dn

from .errors import ValidationError

MAX_NAME_LENGTH = 64
MAX_LOGIN_LENGTH = 20

_NAME_DISALLOWED = re.compile(r"[^A-Za-z0-9 _-]")
_LOGIN_DISALLOWED = re.compile(r"[^a-z0-9-]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")
_ESCAPE_UNIT = re.compile(r"\\[0-9a-fA-F]{2}|\\.|.", re.DOTALL)

_FILTER_ESCAPES = {
    "\\": r"\5c",
    "*": r"\2a",
    "(": r"\28",
    ")": r"\29",
    "\0": r"\00",
}


def strip_diacritics(value: str) -> str:
    normalized = unicodedata.normalize("NFKD", value)
    return normalized.encode("ascii", "ignore").decode("ascii")


def escape_dn_value(value: str) -> str:
    """Escape the characters that are reserved inside an RDN value.

    Colons are hex-escaped as well; some directory tools treat them as
    separators.
    """

    if not value:
        return ""
    return escape_rdn(value).replace(":", r"\3a")


def escape_filter_value(value: str) -> str:
    return "".join(_FILTER_ESCAPES.get(char, char) for char in str(value))


def _truncate(value: str, limit: int) -> str:
    # Cut on whole escape units so no sequence is split.
    units: List[str] = []
    length = 0
    for unit in _ESCAPE_UNIT.findall(value):
        if length + len(unit) > limit:
            break
        units.append(unit)
        length += len(unit)
    while units and units[-1] == " ":
        units.pop()
    return "".join(units)


def sanitize_name(name: Optional[str], max_length: int = MAX_NAME_LENGTH) -> str:
    """Turn free text into a value usable as an OU or CN.

    Diacritics are stripped, anything outside ``[A-Za-z0-9 _-]`` is removed,
    whitespace runs collapse to one space, reserved characters are escaped
    and the result is capped at ``max_length`` characters.
    """

    if not name:
        return ""
    cleaned = _NAME_DISALLOWED.sub("", strip_diacritics(str(name)))
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    if not cleaned:
        return ""
    return _truncate(escape_dn_value(cleaned), max_length)


def sanitize_login(value: Optional[str], max_length: int = MAX_LOGIN_LENGTH) -> str:
    """Account login names: lowercase ``[a-z0-9-]``, single hyphens, 20 chars."""

    if not value:
        return ""
    cleaned = _LOGIN_DISALLOWED.sub("", strip_diacritics(str(value)).lower())
    cleaned = _HYPHENS.sub("-", cleaned)
    return cleaned[:max_length].strip("-")


def fallback_department_name(department_id: str, prefix: str = "Departamento") -> str:
    return f"{prefix}-{department_id}"


def numeric_tag(identifier: str) -> str:
    """Numeric part of an identifier, used as a stable secondary OU tag."""

    digits = "".join(char for char in str(identifier) if char.isdigit())
    return digits or str(identifier)


def build_dn(attribute: str, value: str, parent_dn: str) -> str:
    """Compose ``attribute=value,parent`` from an already sanitized value."""

    return f"{attribute}={value},{parent_dn}" if parent_dn else f"{attribute}={value}"


def ou_dn(name: str, parent_dn: str) -> str:
    return build_dn("OU", name, parent_dn)


def cn_dn(name: str, parent_dn: str) -> str:
    return build_dn("CN", name, parent_dn)


def _parse(dn: str):
    if not dn or not dn.strip():
        return []
    try:
        return parse_dn(dn, strip=True)
    except LDAPInvalidDnError as exc:
        raise ValidationError(f"Invalid distinguished name: {dn!r}") from exc


def split_dn(dn: str) -> List[str]:
    """RDNs of ``dn`` from leaf to root; multi-valued RDNs stay together."""

    rdns: List[str] = []
    current = ""
    for attribute, value, separator in _parse(dn):
        current += f"{attribute}={value}"
        if separator == "+":
            current += "+"
        else:
            rdns.append(current)
            current = ""
    return rdns


def rdn_count(dn: str) -> int:
    return len(split_dn(dn))


def parent_dn(dn: str) -> str:
    return ",".join(split_dn(dn)[1:])


def normalize_dn(dn: str) -> str:
    """Case-insensitive comparison key for a distinguished name."""

    return "".join(
        f"{attribute.lower()}={value.lower()}{separator}" for attribute, value, separator in _parse(dn)
    )


__all__ = [
    "MAX_LOGIN_LENGTH",
    "MAX_NAME_LENGTH",
    "build_dn",
    "cn_dn",
    "escape_dn_value",
    "escape_filter_value",
    "fallback_department_name",
    "normalize_dn",
    "numeric_tag",
    "ou_dn",
    "parent_dn",
    "rdn_count",
    "sanitize_login",
    "sanitize_name",
    "split_dn",
    "strip_diacritics",
]
