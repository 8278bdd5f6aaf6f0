"""
Local file access for the FILE_* builtins and the module loader.

Relative locators resolve against the running script's directory, falling
back to the process working directory.
"""
from __future__ import annotations

import os
from typing import Any, List, Optional, Union

from rexa.rexa_datatypes import to_string
from rexa.rexa_serialize import deserialize, format_for_path, serialize


def resolve_locator(locator: str, base_dir: Optional[str]) -> str:
    """Absolute path for `file://...`, `~/...`, an absolute path or a relative one."""
    path = locator[len("file://"):] if locator.startswith("file://") else locator
    if path.startswith("~"):
        return os.path.expanduser(path)
    if os.path.isabs(path):
        return os.path.normpath(path)
    return os.path.normpath(os.path.join(base_dir or os.getcwd(), path))


def read_text(locator: str, *, base_dir: Optional[str] = None) -> tuple[str, str]:
    """Return `(path, text)` for a locator; raises FileNotFoundError when missing."""
    path = resolve_locator(locator, base_dir)
    if not os.path.isfile(path):
        raise FileNotFoundError(path)
    with open(path, "r", encoding="utf-8") as f:
        return path, f.read()


async def file_get(locator: str, *, base_dir: Optional[str] = None) -> Union[str, Any, List[str]]:
    """Contents of a file, or the sorted file names of a directory.

    `.json`, `.yaml` and `.yml` files are decoded into structures.
    """
    path = resolve_locator(locator, base_dir)
    if os.path.isdir(path):
        return sorted(n for n in os.listdir(path) if os.path.isfile(os.path.join(path, n)))
    _, text = read_text(path)
    fmt = format_for_path(path)
    return deserialize(text, fmt=fmt) if fmt else text


async def file_put(locator: str, data: Any, *, base_dir: Optional[str] = None) -> str:
    """Write `data`, encoding stems for structured extensions; returns the path."""
    path = resolve_locator(locator, base_dir)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    fmt = format_for_path(path)
    text = serialize(data, fmt=fmt, pretty=True) if fmt else to_string(data)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path
