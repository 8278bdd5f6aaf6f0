"""
A pretty-printer for Rexa values.
"""
import collections.abc

from rexa.rexa_datatypes import Stem, UNDEFINED, to_string


class Printer:
    """Formats Rexa values for the REPL and error traces."""

    def __init__(self, indent_width=2, width=72):
        self._indent_char = " " * indent_width
        self.width = width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        if obj is UNDEFINED:
            return self._pformat_undefined
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Stem):
            return self._pformat_stem
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_mapping
        if isinstance(obj, (list, tuple)):
            return self._pformat_sequence
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Stem: self._pformat_stem,
        }

    def _pformat_primitive(self, obj, level):
        return to_string(obj)

    def _pformat_str(self, obj, level):
        # Strings print bare unless they would be ambiguous
        if obj == "" or obj != obj.strip() or any(c in obj for c in ",:{}\n"):
            return repr(obj)
        return obj

    def _pformat_bool(self, obj, level):
        return "1" if obj else "0"

    def _pformat_none(self, obj, level):
        return "''"

    def _pformat_undefined(self, obj, level):
        return "<undefined>"

    def _pformat_stem(self, obj: Stem, level):
        items = [(str(i), v) for i, v in enumerate(obj.values(), start=1)]
        items += [(k, v) for k, v in obj.named.items()]
        return self._pformat_pairs(items, level)

    def _pformat_mapping(self, obj, level):
        return self._pformat_pairs([(str(k), v) for k, v in obj.items()], level)

    def _pformat_sequence(self, obj, level):
        return self._pformat_pairs([(str(i), v) for i, v in enumerate(obj, start=1)], level)

    def _pformat_pairs(self, items, level):
        if not items:
            return "{}"
        parts = [f"{k}: {self.pformat(v, level + 1)}" for k, v in items]
        flat = "{" + ", ".join(parts) + "}"
        if len(flat) + len(self._indent_char) * level <= self.width and "\n" not in flat:
            return flat
        inner = self._indent_char * (level + 1)
        outer = self._indent_char * level
        return "{\n" + ",\n".join(inner + p for p in parts) + "\n" + outer + "}"

    def pformat_frame(self, frame) -> str:
        """One stack frame as `(NAME arg ...)`."""
        args = " ".join(self._pformat_arg(a) for a in frame.get("args") or [])
        name = frame.get("name") or "<call>"
        return f"({name} {args})" if args else f"({name})"

    def _pformat_arg(self, arg):
        if isinstance(arg, Stem):
            return f"#[{arg.count}]" if not arg.named else "#{...}"
        text = self.pformat(arg)
        return text if len(text) <= 24 else text[:21] + "..."
