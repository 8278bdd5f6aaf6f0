"""
Transforms the koine parse tree of an expression into Rexa expression nodes.

Koine reports positions relative to the text it parsed. The statement parser
hands over only the slice of a line that holds the expression, so each
transformer is anchored at the line and column where that slice begins.
"""
from typing import Tuple

from rexa.rexa_datatypes import Argument, BinaryOp, CallExpr, CommandForm, Literal, PipeOp, UnaryOp, VarRef

# Operand, operator, operand, ... runs folded left to right
BINARY_LEVELS = {"or_expr", "and_expr", "comparison", "concatenation", "additive", "multiplicative", "power"}

# Choice rules and groups that wrap exactly one child
WRAPPERS = {"clause_tail", "expression_clause", "command_clause", "call_clause",
            "unary", "primary", "string", "group"}


def symbol_to_ref(symbol: str, line: int = 0, col: int = 0) -> VarRef:
    parts = symbol.split(".")
    return VarRef(parts[0], tuple(p for p in parts[1:] if p), line, col)


def number_value(text: str):
    return float(text) if any(ch in text for ch in ".eE") else int(text)


class ExpressionTransformer:
    def __init__(self, line: int = 1, col: int = 1):
        self.line = line
        self.col = col

    def _pos(self, node: dict) -> Tuple[int, int]:
        return self.line + node["line"] - 1, self.col + node["col"] - 1

    def transform(self, node: dict):
        tag = node["tag"]
        children = node.get("children", [])

        match tag:
            case _ if tag in WRAPPERS:
                return self.transform(children[0])
            case "expression":
                result = self.transform(children[0])
                for stage in children[1:]:
                    result = self._pipe(result, stage)
                return result
            case _ if tag in BINARY_LEVELS:
                left = self.transform(children[0])
                for op, right in zip(children[1::2], children[2::2]):
                    symbol = "&" if op["text"] == "&&" else op["text"]
                    left = BinaryOp(symbol, left, self.transform(right), *self._pos(op))
                return left
            case "prefixed":
                op, operand = children
                symbol = "!" if op["text"] == "\\" else op["text"]
                return UnaryOp(symbol, self.transform(operand), *self._pos(op))

            # Atomics
            case "number":
                return Literal(number_value(node["text"]), False, *self._pos(node))
            case "single_quoted" | "double_quoted":
                quote = node["text"][0]
                value = node["text"][1:-1].replace(quote * 2, quote)
                return Literal(value, quote == '"', *self._pos(node))
            case "identifier":
                return symbol_to_ref(node["text"], *self._pos(node))

            # Calls and arguments
            case "call_expr":
                name, suffix = children
                return CallExpr(name["text"], self.transform(suffix), *self._pos(name))
            case "call_suffix" | "enclosed_arguments" | "call_tail":
                return self.transform(children[0]) if children else ()
            case "argument_list":
                return tuple(self.transform(child) for child in children)
            case "argument" | "command_operand":
                return self._argument(children[0])
            case "named_argument" | "named_operand":
                name, value = children
                return Argument(name["text"], self.transform(value))
            case "command_form":
                name = children[0]
                args = tuple(self.transform(child) for child in children[1:])
                return CommandForm(name["text"], args, *self._pos(name))

        raise ValueError(f"Unknown expression node: {tag}")

    def _argument(self, node: dict) -> Argument:
        if node["tag"] in ("named_argument", "named_operand"):
            return self.transform(node)
        return Argument(None, self.transform(node))

    def _pipe(self, left, stage: dict) -> PipeOp:
        op, name, *suffix = stage["children"]
        args = self.transform(suffix[0]) if suffix else ()
        return PipeOp(left, CallExpr(name["text"], args, *self._pos(name)), *self._pos(op))
