"""
JSON and YAML conversion between wire text and Rexa values.

Decoding returns plain Python structures; callers pass them through
`normalize_value` to get stems. Encoding accepts stems anywhere in the value.
"""
from __future__ import annotations

import json
import os
import re
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

from rexa.rexa_datatypes import Stem

_CHARSET_RE = re.compile(r'charset\s*=\s*["\']?([^\s;"\']+)', re.IGNORECASE)

# fmt -> (loads, dumps(value, pretty))
FORMATS: Dict[str, Tuple[Callable[[str], Any], Callable[[Any, bool], str]]] = {
    "json": (
        json.loads,
        lambda v, pretty: json.dumps(v, ensure_ascii=False, indent=2 if pretty else None),
    ),
    "yaml": (
        yaml.safe_load,
        lambda v, pretty: yaml.safe_dump(v, sort_keys=False, allow_unicode=True, default_flow_style=not pretty),
    ),
}

_EXTENSIONS = {".json": "json", ".yaml": "yaml", ".yml": "yaml"}


def format_for_path(path: str) -> Optional[str]:
    """'json' or 'yaml' for a file name with a structured extension, else None."""
    return _EXTENSIONS.get(os.path.splitext(path)[1].lower())


def format_for_content_type(content_type: Optional[str]) -> Optional[str]:
    ct = (content_type or "").lower()
    if "json" in ct:
        return "json"
    if "yaml" in ct:
        return "yaml"
    return None


def decode_text(data: bytes | bytearray | str, content_type: Optional[str] = None) -> str:
    if isinstance(data, str):
        return data
    m = _CHARSET_RE.search(content_type or "")
    try:
        return bytes(data).decode(m.group(1) if m else "utf-8", errors="replace")
    except LookupError:
        return bytes(data).decode("utf-8", errors="replace")


def to_plain(value: Any) -> Any:
    """Stems (also nested in lists and dicts) become lists and dicts."""
    if isinstance(value, Stem):
        return value.to_python()
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_plain(v) for k, v in value.items()}
    return value


def parse_strict(text: str, fmt: str) -> Any:
    """Parse `text` as exactly `fmt`; raises ValueError (json) or yaml.YAMLError on bad input."""
    if fmt not in FORMATS:
        raise ValueError(f"Unsupported structured format: {fmt!r}")
    return FORMATS[fmt][0](text)


def deserialize(data: bytes | bytearray | str, *, content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """Best-effort decode of a body or file.

    The format comes from `fmt`, then the content type, then a leading `{`
    or `[`. Text that does not parse in that format is returned unchanged.
    """
    text = decode_text(data, content_type)
    fmt = fmt or format_for_content_type(content_type)
    if fmt is None and text.lstrip()[:1] in ("{", "["):
        fmt = "json"
    if fmt is None:
        return text
    # YAML is tried second because JSON-labelled bodies are sometimes YAML
    for candidate in (fmt, "yaml") if fmt == "json" else (fmt,):
        try:
            return parse_strict(text, candidate)
        except (ValueError, yaml.YAMLError):
            continue
    return text


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    f = (fmt or "").lower()
    if f not in FORMATS:
        raise ValueError(f"Unsupported serialization format: {fmt!r}")
    return FORMATS[f][1](to_plain(value), pretty)


__all__ = [
    "FORMATS",
    "format_for_path",
    "format_for_content_type",
    "decode_text",
    "to_plain",
    "parse_strict",
    "deserialize",
    "serialize",
]
