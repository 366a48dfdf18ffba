from __future__ import annotations

import json
import re
from typing import Any, Optional
import collections.abc

import yaml

from slashscript.slash_datatypes import Entry, FALSY


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        try:
            return data.decode(encoding or 'utf-8', errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def to_builtin(obj: Any) -> Any:
    """Reduce script values to plain JSON-compatible Python data."""
    if obj is FALSY:
        return False
    if isinstance(obj, Entry):
        return to_builtin(obj.value)
    if isinstance(obj, (list, tuple)):
        return [to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml' from a Content-Type, falling back to sniffing
    the data for a leading brace or bracket.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert wire data to native structures. Text that is not recognisably
    JSON or YAML, or fails to parse as the detected format, comes back as text.
    """
    text = _norm_text(data, encoding=_encoding_from_content_type(content_type))
    f = fmt or detect_format(content_type, text)
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Declared JSON but YAML-like content
            try:
                return yaml.safe_load(text)
            except yaml.YAMLError:
                return text
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError:
            return text
    return text


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """Convert a script value into 'json' or 'yaml' text."""
    f = (fmt or '').lower()
    built = to_builtin(value)
    if f == 'json':
        if pretty:
            return json.dumps(built, ensure_ascii=False, indent=2)
        return json.dumps(built, ensure_ascii=False, separators=(',', ':'))
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "to_builtin",
]
