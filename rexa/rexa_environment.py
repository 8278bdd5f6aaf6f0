"""
Scoped variable storage with stem-array semantics.
"""
from typing import Any, Dict, Iterable, Optional, Tuple

from rexa.rexa_datatypes import Stem, UNDEFINED


class Environment:
    """A case-insensitive name -> value mapping.

    Compound reads and writes take the stem name plus a tail of already
    resolved keys, e.g. `write("arr", v, ("3",))` for `arr.3 = v`. Writing a
    tail auto-creates (or replaces a scalar with) nested stems.

    Subroutine calls do not see their caller's variables: `Environment.seeded`
    builds a fresh environment from explicit bindings only, copying stems so
    the callee works on its own values.
    """

    def __init__(self, bindings: Optional[Dict[str, Any]] = None):
        self._vars: Dict[str, Any] = {}
        for name, value in (bindings or {}).items():
            self.write(name, value)

    @staticmethod
    def _key(name: str) -> str:
        if not isinstance(name, str) or not name:
            raise TypeError(f"Variable name must be a non-empty str, not {name!r}")
        return name.rstrip(".").upper()

    def read(self, name: str, tail: Tuple[Any, ...] = ()) -> Any:
        value = self._vars.get(self._key(name), UNDEFINED)
        for key in tail:
            if not isinstance(value, Stem):
                return UNDEFINED
            value = value.get(key)
        return value

    def write(self, name: str, value: Any, tail: Tuple[Any, ...] = ()) -> None:
        key = self._key(name)
        if not tail:
            self._vars[key] = value
            return
        stem = self._vars.get(key)
        if not isinstance(stem, Stem):
            stem = Stem()
            self._vars[key] = stem
        for seg in tail[:-1]:
            child = stem.get(seg)
            if not isinstance(child, Stem):
                child = Stem()
                stem.set(seg, child)
            stem = child
        stem.set(tail[-1], value)

    def delete(self, name: str, tail: Tuple[Any, ...] = ()) -> None:
        key = self._key(name)
        if not tail:
            self._vars.pop(key, None)
            return
        stem = self._vars.get(key)
        for seg in tail[:-1]:
            if not isinstance(stem, Stem):
                return
            stem = stem.get(seg)
        if isinstance(stem, Stem):
            stem.delete(tail[-1])

    def has(self, name: str) -> bool:
        return self._key(name) in self._vars

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __getitem__(self, name: str) -> Any:
        return self.read(name)

    def __setitem__(self, name: str, value: Any):
        self.write(name, value)

    def names(self) -> Iterable[str]:
        return list(self._vars.keys())

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._vars)

    @classmethod
    def seeded(cls, bindings: Dict[str, Any]) -> 'Environment':
        """Fresh environment for a subroutine call (pass-by-value for stems)."""
        env = cls()
        for name, value in bindings.items():
            env.write(name, value.copy() if isinstance(value, Stem) else value)
        return env

    def __repr__(self) -> str:
        return f"<Environment vars=[{', '.join(self._vars.keys())}]>"
