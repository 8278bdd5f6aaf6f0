"""
Delimiter-based variable interpolation for string literals and block bodies.
"""
import re
import threading
from typing import Any, Callable, Dict, List, Optional

from rexa.rexa_errors import DuplicatePatternNameError, InvalidDelimiterError, EvaluationError
from rexa.rexa_datatypes import InterpolationPattern, UNDEFINED, to_string

BUILTIN_PATTERNS = (
    InterpolationPattern("handlebars", "{{", "}}"),
    InterpolationPattern("shell", "${", "}"),
    InterpolationPattern("batch", "%", "%"),
    InterpolationPattern("brackets", "[[", "]]"),
)

# A dotted path: stem name followed by optional tail segments
_REFERENCE_RE = re.compile(r'^[A-Za-z_$@#][\w$@#?]*(\.[\w$@#?]+)*$')

PLACEHOLDER = "v"


class InterpolationEngine:
    """A registry of named patterns plus the one currently active.

    Each interpreter owns its own engine, so `INTERPOLATION` statements in
    one program never affect another. Failed registrations leave the
    registry untouched.
    """

    def __init__(self, active: str = "handlebars"):
        self._lock = threading.RLock()
        self._patterns: Dict[str, InterpolationPattern] = {p.name.upper(): p for p in BUILTIN_PATTERNS}
        self._active = self._patterns["HANDLEBARS"]
        self.activate(active)

    @property
    def active(self) -> InterpolationPattern:
        return self._active

    def patterns(self) -> List[InterpolationPattern]:
        with self._lock:
            return list(self._patterns.values())

    def get(self, name: str) -> Optional[InterpolationPattern]:
        with self._lock:
            return self._patterns.get(str(name).upper())

    def register(self, name: str, start: str, end: str) -> InterpolationPattern:
        if not name or not str(name).strip():
            raise InvalidDelimiterError("Interpolation pattern name must not be empty")
        if not start or not end:
            raise InvalidDelimiterError(f"Interpolation pattern {name!r} needs non-empty start and end delimiters")
        key = str(name).upper()
        with self._lock:
            if key in self._patterns:
                raise DuplicatePatternNameError(f"Interpolation pattern {name!r} is already registered")
            pattern = InterpolationPattern(str(name), start, end)
            self._patterns[key] = pattern
        return pattern

    def activate(self, name: str) -> InterpolationPattern:
        pattern = self.get(name)
        if pattern is None:
            raise EvaluationError(f"Unknown interpolation pattern {name!r}")
        self._active = pattern
        return pattern

    def activate_example(self, example: str) -> InterpolationPattern:
        """Activate the pattern shown by `example`, e.g. `<<v>>`, registering it if new."""
        if example.count(PLACEHOLDER) != 1:
            raise InvalidDelimiterError(
                f"Interpolation example {example!r} must contain exactly one '{PLACEHOLDER}' placeholder")
        start, end = example.split(PLACEHOLDER)
        if not start or not end:
            raise InvalidDelimiterError(f"Interpolation example {example!r} needs text on both sides of '{PLACEHOLDER}'")
        with self._lock:
            for pattern in self._patterns.values():
                if pattern.start == start and pattern.end == end:
                    self._active = pattern
                    return pattern
            pattern = self.register(example, start, end)
            self._active = pattern
            return pattern

    def apply(self, text: str, lookup: Callable[[str], Any],
              pattern: Optional[InterpolationPattern] = None) -> str:
        """Substitute every `start ref end` occurrence whose reference resolves.

        `lookup` receives the dotted reference and returns UNDEFINED when it is
        not bound; such occurrences, and anything that is not a dotted path,
        are left exactly as written.
        """
        pattern = pattern or self._active
        start, end = pattern.start, pattern.end
        if start not in text:
            return text
        out = []
        pos = 0
        while True:
            i = text.find(start, pos)
            if i < 0:
                break
            j = text.find(end, i + len(start))
            if j < 0:
                break
            ref = text[i + len(start):j].strip()
            value = lookup(ref) if _REFERENCE_RE.match(ref) else UNDEFINED
            out.append(text[pos:i])
            if value is UNDEFINED:
                out.append(text[i:j + len(end)])
            else:
                out.append(to_string(value))
            pos = j + len(end)
        out.append(text[pos:])
        return "".join(out)
