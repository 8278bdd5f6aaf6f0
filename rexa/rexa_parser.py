"""
Rexa parser: turns source text into an ordered tuple of statement nodes.

Parsing is a single pass over logical lines. Statements are recognised by
their leading keyword; anything else is an assignment or a clause. Clauses
keep their raw text because their meaning is only known at run time, once
the address context is known. Expressions inside a line are parsed with the
koine grammar in `grammar/rexa_expression.yaml`.
"""
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from koine import Parser as GrammarParser

from rexa.rexa_errors import ParseError
from rexa.rexa_tokenizer import Token, tokenize, TK_EOF, TK_IDENT, TK_STRING
from rexa.rexa_transformer import ExpressionTransformer, symbol_to_ref
from rexa.rexa_datatypes import (
    Literal, VarRef, HeredocLiteral, Assignment, Say, If, Loop, LoopControl, Call, AddressSwitch,
    BlockLiteral, Signal, Return, Label, ArgBinding, Require, InterpolationStatement, Clause, Nop,
)

ADDRESS_MODES = ("COMMAND", "FUNCTION", "HEREDOC", "PATTERN")
SIGNAL_CONDITIONS = ("ERROR", "HALT")
STRUCTURED_MARKERS = (("JSON", "json"), ("YAML", "yaml"), ("YML", "yaml"))

_HEREDOC_RE = re.compile(r'<<\s*([A-Za-z_]\w*)\s*$')
_LABEL_RE = re.compile(r'^\s*([A-Za-z_]\w*)\s*:\s*$')
_ASSIGN_RE = re.compile(r'^\s*(?:LET\s+)?([A-Za-z_$@#][\w.$@#?]*)\s*=(?!=)', re.IGNORECASE)
_WORD_RE = re.compile(r'^\s*([A-Za-z_][\w]*)')


@dataclass
class SourceLine:
    code: str
    line: int
    offset: int = 0
    heredoc: Optional[HeredocLiteral] = None

    @property
    def word(self) -> str:
        m = _WORD_RE.match(self.code)
        return m.group(1).upper() if m else ""

    def rest_after_word(self) -> Tuple[str, int]:
        m = _WORD_RE.match(self.code)
        if not m:
            return self.code, self.offset
        return self.code[m.end():], self.offset + m.end()


# ---------------------------------------------------------------------------
# Line splitting and comment stripping
# ---------------------------------------------------------------------------

def _structured_kind(delimiter: str) -> Optional[str]:
    upper = delimiter.upper()
    for marker, kind in STRUCTURED_MARKERS:
        if marker in upper:
            return kind
    return None


def _strip_comments(text: str, in_block: bool) -> Tuple[str, bool]:
    """Remove `--`, `//` and `/* */` comments outside quotes. Columns are preserved."""
    out = []
    quote = None
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if in_block:
            if text.startswith("*/", i):
                out.append("  ")
                in_block = False
                i += 2
            else:
                out.append(" ")
                i += 1
            continue
        if quote:
            out.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if text.startswith("/*", i):
            in_block = True
            out.append("  ")
            i += 2
            continue
        if text.startswith("--", i) or text.startswith("//", i):
            break
        if ch in "'\"":
            quote = ch
        out.append(ch)
        i += 1
    return "".join(out).rstrip(), in_block


def _split_semicolons(code: str) -> List[Tuple[str, int]]:
    parts = []
    quote = None
    start = 0
    for i, ch in enumerate(code):
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == ";":
            parts.append((code[start:i], start))
            start = i + 1
    parts.append((code[start:], start))
    return parts


def split_lines(source: str) -> List[SourceLine]:
    """Produce logical lines; block literal bodies are attached to the line that opens them."""
    raw_lines = source.splitlines()
    result: List[SourceLine] = []
    in_block = False
    i = 0
    while i < len(raw_lines):
        lineno = i + 1
        code, in_block = _strip_comments(raw_lines[i], in_block)
        i += 1
        if not code.strip():
            continue
        segments = _split_semicolons(code)
        for idx, (seg, off) in enumerate(segments):
            if not seg.strip():
                continue
            heredoc = None
            if idx == len(segments) - 1:
                m = _HEREDOC_RE.search(seg)
                if m:
                    delimiter = m.group(1)
                    body = []
                    while i < len(raw_lines) and raw_lines[i].strip() != delimiter:
                        body.append(raw_lines[i])
                        i += 1
                    if i >= len(raw_lines):
                        raise ParseError(f"Unterminated block literal <<{delimiter}",
                                         line=lineno, col=off + m.start() + 1)
                    i += 1  # consume the closing delimiter line
                    heredoc = HeredocLiteral(delimiter, "\n".join(body), _structured_kind(delimiter),
                                             line=lineno, col=off + m.start() + 1)
                    seg = seg[:m.start()]
            result.append(SourceLine(seg, lineno, off, heredoc))
    return result


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

_POSITION_RE = re.compile(r'L(\d+):C(\d+)')


class ExpressionParser:
    """Parses the source span covered by a run of tokens with the koine expression grammar."""

    _grammar: Optional[GrammarParser] = None

    def __init__(self):
        if ExpressionParser._grammar is None:
            grammar_path = Path(__file__).parent / "grammar" / "rexa_expression.yaml"
            ExpressionParser._grammar = GrammarParser.from_file(str(grammar_path))
        self.grammar = ExpressionParser._grammar

    def parse(self, tokens: Sequence[Token], rule: str = "expression_clause"):
        """Parse `tokens` as `rule`: an expression, a command form or the arguments of CALL."""
        span = [t for t in tokens if t.type != TK_EOF]
        if not span:
            at = tokens[0] if tokens else None
            raise ParseError("Unexpected end of expression", line=at.line if at else 0, col=at.col if at else 0)
        first, last = span[0], span[-1]
        result = self.grammar.parse(first.source[first.start:last.end], start_rule=rule)
        if result["status"] != "success":
            raise self._error(result["message"], span)
        return ExpressionTransformer(first.line, first.col).transform(result["ast"])

    @staticmethod
    def _error(message: str, span: List[Token]) -> ParseError:
        # Report the first token at or after the point where the grammar gave up
        first, last = span[0], span[-1]
        m = _POSITION_RE.search(message)
        failed_at = first.col + int(m.group(2)) - 1 if m else first.col
        for t in span:
            if t.col >= failed_at:
                return ParseError(f"Unexpected token {t.value!r}", line=t.line, col=t.col)
        return ParseError("Unexpected end of expression", line=last.line, col=last.col + last.end - last.start)


def parse_expression(text: str, line: int = 1, offset: int = 0):
    return ExpressionParser().parse(tokenize(text, line, offset))


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

class Parser:
    """Parses a whole program. Labels are only allowed at the top level."""

    def __init__(self, source: str):
        self.lines = split_lines(source)
        self.pos = 0
        self.expressions = ExpressionParser()

    def parse(self) -> Tuple:
        body, _ = self._parse_block((), top=True, opener=None)
        return tuple(body)

    # -- helpers --------------------------------------------------------

    def _tokens(self, sl: SourceLine) -> List[Token]:
        # Trailing EOF padding lets keyword parsers index a few tokens ahead
        tokens = tokenize(sl.code, sl.line, sl.offset)
        return tokens + [tokens[-1]] * 6

    @staticmethod
    def _eof_index(tokens: List[Token]) -> int:
        return next(i for i, t in enumerate(tokens) if t.type == TK_EOF)

    def _expr_from(self, tokens: List[Token]):
        return self.expressions.parse(tokens)

    def _find_word(self, tokens: List[Token], words: Tuple[str, ...], start: int = 0) -> int:
        depth = 0
        for i in range(start, len(tokens)):
            t = tokens[i]
            if t.is_op("("):
                depth += 1
            elif t.is_op(")"):
                depth -= 1
            elif depth == 0 and t.is_word(*words):
                return i
        return -1

    def _inline(self, sl: SourceLine, text: str, offset: int, last: bool = True) -> SourceLine:
        return SourceLine(text, sl.line, offset, sl.heredoc if last else None)

    def _parse_block(self, terminators: Tuple[str, ...], *, top: bool,
                     opener: Optional[SourceLine]) -> Tuple[List, Optional[SourceLine]]:
        body = []
        while self.pos < len(self.lines):
            sl = self.lines[self.pos]
            word = sl.word
            if word in terminators and not sl.heredoc and not _ASSIGN_RE.match(sl.code):
                self.pos += 1
                return body, sl
            if word in ("ELSE", "ENDIF", "END") and not _ASSIGN_RE.match(sl.code):
                raise ParseError(f"Unexpected {word}", line=sl.line, col=sl.offset + 1)
            self.pos += 1
            body.append(self._parse_statement(sl, top=top))
        if terminators:
            expected = " or ".join(terminators)
            line = opener.line if opener else None
            raise ParseError(f"Missing {expected} for block opened on line {line}", line=line, col=1)
        return body, None

    # -- statements -----------------------------------------------------

    def _parse_statement(self, sl: SourceLine, *, top: bool):
        text = sl.code.strip()
        if sl.heredoc is not None and sl.word != "IF":
            return self._parse_heredoc_line(sl, text)
        m = _LABEL_RE.match(sl.code)
        if m:
            if not top:
                raise ParseError(f"Label {m.group(1)} must be at the top level", line=sl.line, col=sl.offset + 1)
            return Label(m.group(1).upper(), sl.line, text)
        if _ASSIGN_RE.match(sl.code):
            return self._parse_assignment(sl, text)
        word = sl.word
        handler = getattr(self, f"_parse_{word.lower()}", None) if word in _KEYWORDS else None
        if handler is not None:
            return handler(sl, text)
        return self._parse_clause(sl, text)

    def _parse_heredoc_line(self, sl: SourceLine, text: str):
        literal = sl.heredoc
        head = sl.code.strip()
        if not head:
            return BlockLiteral(literal, sl.line, text + f"<<{literal.delimiter}")
        m = _ASSIGN_RE.match(sl.code)
        if m and not sl.code[m.end():].strip():
            return Assignment(symbol_to_ref(m.group(1), sl.line, sl.offset + 1), literal, None,
                              f"<<{literal.delimiter}", sl.line, text)
        raise ParseError("A block literal must stand alone or be the right-hand side of an assignment",
                         line=sl.line, col=literal.col)

    def _parse_assignment(self, sl: SourceLine, text: str):
        m = _ASSIGN_RE.match(sl.code)
        target = symbol_to_ref(m.group(1), sl.line, sl.offset + m.start(1) + 1)
        rhs = sl.code[m.end():]
        offset = sl.offset + m.end()
        tokens = tokenize(rhs, sl.line, offset)
        if tokens[0].type == TK_EOF:
            raise ParseError("Missing value in assignment", line=sl.line, col=offset + 1)
        try:
            value = self._expr_from(tokens)
            return Assignment(target, value, None, rhs.strip(), sl.line, text)
        except ParseError as expr_error:
            try:
                command = self.expressions.parse(tokens, "command_clause")
            except ParseError:
                raise expr_error
            return Assignment(target, None, command, rhs.strip(), sl.line, text)

    def _parse_clause(self, sl: SourceLine, text: str):
        try:
            tokens = self._tokens(sl)
        except ParseError as e:
            return Clause(None, None, e, sl.line, text)
        expr = command = error = None
        try:
            expr = self._expr_from(tokens)
        except ParseError as e:
            error = e
        if tokens[0].type == TK_IDENT and (expr is None or (isinstance(expr, VarRef) and not expr.tail)):
            try:
                command = self.expressions.parse(tokens, "command_clause")
            except ParseError:
                command = None
        return Clause(expr, command, error if expr is None and command is None else None, sl.line, text)

    def _parse_let(self, sl: SourceLine, text: str):
        raise ParseError("LET must be followed by `name = value`", line=sl.line, col=sl.offset + 1)

    def _parse_nop(self, sl: SourceLine, text: str):
        return Nop(sl.line, text)

    def _parse_say(self, sl: SourceLine, text: str):
        rest, off = sl.rest_after_word()
        tokens = tokenize(rest, sl.line, off)
        expr = Literal("") if tokens[0].type == TK_EOF else self._expr_from(tokens)
        return Say(expr, sl.line, text)

    def _parse_leave(self, sl: SourceLine, text: str):
        return LoopControl("leave", sl.line, text)

    def _parse_iterate(self, sl: SourceLine, text: str):
        return LoopControl("iterate", sl.line, text)

    def _parse_return(self, sl: SourceLine, text: str, exit: bool = False):
        rest, off = sl.rest_after_word()
        tokens = tokenize(rest, sl.line, off)
        value = None if tokens[0].type == TK_EOF else self._expr_from(tokens)
        return Return(value, exit, sl.line, text)

    def _parse_exit(self, sl: SourceLine, text: str):
        return self._parse_return(sl, text, exit=True)

    def _parse_require(self, sl: SourceLine, text: str):
        rest, off = sl.rest_after_word()
        tokens = tokenize(rest, sl.line, off)
        if tokens[0].type == TK_EOF:
            raise ParseError("REQUIRE needs a module identifier", line=sl.line, col=off + 1)
        return Require(self._expr_from(tokens), sl.line, text)

    def _parse_arg(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)[1:]
        names = []
        for t in tokens:
            if t.type == TK_EOF or t.is_op(","):
                continue
            if t.type != TK_IDENT:
                raise ParseError(f"ARG expects names, found {t.value!r}", line=t.line, col=t.col)
            names.append(t.value)
        return ArgBinding(tuple(names), sl.line, text)

    def _parse_call(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)
        if tokens[1].type != TK_IDENT:
            raise ParseError("CALL expects a routine name", line=sl.line, col=tokens[1].col)
        name = tokens[1].value
        args = () if tokens[2].type == TK_EOF else self.expressions.parse(tokens[2:], "call_clause")
        return Call(name, args, sl.line, text)

    def _parse_address(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)
        t = tokens[1]
        if t.type == TK_EOF:
            return AddressSwitch(None, None, None, None, sl.line, text)
        if t.type not in (TK_IDENT, TK_STRING):
            raise ParseError("ADDRESS expects a domain name", line=t.line, col=t.col)
        domain = t.value
        nxt = tokens[2]
        if nxt.type == TK_EOF:
            return AddressSwitch(domain, None, None, None, sl.line, text)
        if nxt.type == TK_IDENT and nxt.value.upper() in ADDRESS_MODES:
            mode = nxt.value.lower()
            rule = None
            if tokens[3].type != TK_EOF:
                if mode != "pattern":
                    raise ParseError(f"ADDRESS {nxt.value.upper()} takes no rule", line=tokens[3].line, col=tokens[3].col)
                rule = self._expr_from(tokens[3:])
            return AddressSwitch(domain, mode, rule, None, sl.line, text)
        if nxt.type == TK_IDENT and tokens[3].type == TK_EOF and not nxt.is_word(*ADDRESS_MODES):
            raise ParseError(f"Unknown ADDRESS mode {nxt.value!r}", line=nxt.line, col=nxt.col)
        return AddressSwitch(domain, None, None, self._expr_from(tokens[2:]), sl.line, text)

    def _parse_signal(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)
        t = tokens[1]
        if t.type == TK_EOF:
            raise ParseError("SIGNAL expects ON, OFF or a label", line=t.line, col=t.col)
        if t.is_word("ON", "OFF"):
            cond = tokens[2]
            if not cond.is_word(*SIGNAL_CONDITIONS):
                raise ParseError(f"Unknown condition {cond.value!r}", line=cond.line, col=cond.col)
            condition = cond.value.upper()
            label = condition
            if t.is_word("ON") and tokens[3].is_word("NAME"):
                if tokens[4].type != TK_IDENT:
                    raise ParseError("SIGNAL ON ... NAME expects a label", line=tokens[4].line, col=tokens[4].col)
                label = tokens[4].value.upper()
                tail = tokens[5]
            else:
                tail = tokens[3]
            if tail.type != TK_EOF:
                raise ParseError(f"Unexpected token {tail.value!r}", line=tail.line, col=tail.col)
            action = "on" if t.is_word("ON") else "off"
            return Signal(action, condition, label if action == "on" else None, sl.line, text)
        if t.type == TK_IDENT and tokens[2].type == TK_EOF:
            return Signal("goto", None, t.value.upper(), sl.line, text)
        raise ParseError("SIGNAL expects ON, OFF or a label", line=t.line, col=t.col)

    def _parse_interpolation(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)
        t = tokens[1]
        if t.is_word("REGISTER"):
            name, start, end, tail = tokens[2], tokens[3], tokens[4], tokens[5]
            if name.type not in (TK_IDENT, TK_STRING) or start.type != TK_STRING or end.type != TK_STRING \
                    or tail.type != TK_EOF:
                raise ParseError('INTERPOLATION REGISTER expects: name "start" "end"', line=t.line, col=t.col)
            return InterpolationStatement("register", name.value, start.value, end.value, None, sl.line, text)
        if t.type == TK_STRING and tokens[2].type == TK_EOF:
            return InterpolationStatement("example", None, None, None, t.value, sl.line, text)
        if t.type == TK_IDENT and tokens[2].type == TK_EOF:
            return InterpolationStatement("activate", t.value, None, None, None, sl.line, text)
        raise ParseError("INTERPOLATION expects REGISTER, a pattern name or an example string",
                         line=t.line, col=t.col)

    def _parse_if(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)
        then_idx = self._find_word(tokens, ("THEN",), 1)
        if then_idx < 0:
            raise ParseError("IF without THEN", line=sl.line, col=sl.offset + 1)
        condition = self._expr_from(tokens[1:then_idx])
        then_tok = tokens[then_idx]
        after = sl.code[then_tok.end:]
        after_off = sl.offset + then_tok.end
        if not after.strip():
            then_body, term = self._parse_block(("ELSE", "ENDIF"), top=False, opener=sl)
            else_body = self._parse_else(term) if term.word == "ELSE" else []
            return If(condition, tuple(then_body), tuple(else_body), sl.line, text)

        # Single-line THEN, optionally with an inline ELSE
        else_idx = self._find_word(tokens, ("ELSE",), then_idx + 1)
        if else_idx >= 0:
            else_tok = tokens[else_idx]
            then_text = sl.code[then_tok.end:else_tok.col - 1 - sl.offset]
            then_stmt = self._parse_statement(self._inline(sl, then_text, after_off, last=False), top=False)
            else_text = sl.code[else_tok.end:]
            else_stmt = self._parse_statement(self._inline(sl, else_text, sl.offset + else_tok.end), top=False)
            return If(condition, (then_stmt,), (else_stmt,), sl.line, text)
        then_stmt = self._parse_statement(self._inline(sl, after, after_off), top=False)
        else_body = []
        if self.pos < len(self.lines) and self.lines[self.pos].word == "ELSE":
            term = self.lines[self.pos]
            self.pos += 1
            else_body = self._parse_else(term, need_endif=False)
        return If(condition, (then_stmt,), tuple(else_body), sl.line, text)

    def _parse_else(self, term: SourceLine, need_endif: bool = True) -> List:
        rest, off = term.rest_after_word()
        if not rest.strip():
            body, _ = self._parse_block(("ENDIF",), top=False, opener=term)
            return body
        inline = self._inline(term, rest, off)
        stmt = self._parse_statement(inline, top=False)
        if inline.word == "IF" or not need_endif:
            return [stmt]
        body, _ = self._parse_block(("ENDIF",), top=False, opener=term)
        return [stmt] + body

    def _parse_do(self, sl: SourceLine, text: str):
        tokens = self._tokens(sl)[1:]
        head = tokens[0]
        kwargs = {}
        if head.type == TK_EOF:
            kind = "block"
        elif head.is_word("FOREVER") and tokens[1].type == TK_EOF:
            kind = "forever"
        elif head.is_word("WHILE", "UNTIL"):
            kind = head.value.lower()
            kwargs["condition"] = self._expr_from(tokens[1:])
        elif head.type == TK_IDENT and tokens[1].is_op("="):
            kind = "range"
            kwargs["var"] = symbol_to_ref(head.value, head.line, head.col)
            to_idx = self._find_word(tokens, ("TO",), 2)
            by_idx = self._find_word(tokens, ("BY",), 2)
            stop = self._eof_index(tokens)
            start_end = min(i for i in (to_idx, by_idx, stop) if i >= 0)
            kwargs["start"] = self._expr_from(tokens[2:start_end])
            if to_idx >= 0:
                to_end = by_idx if by_idx > to_idx else stop
                kwargs["end"] = self._expr_from(tokens[to_idx + 1:to_end])
            if by_idx >= 0:
                by_end = to_idx if to_idx > by_idx else stop
                kwargs["step"] = self._expr_from(tokens[by_idx + 1:by_end])
        elif head.type == TK_IDENT and tokens[1].is_word("OVER"):
            kind = "over"
            kwargs["var"] = symbol_to_ref(head.value, head.line, head.col)
            kwargs["over"] = self._expr_from(tokens[2:])
        else:
            kind = "count"
            kwargs["count"] = self._expr_from(tokens)
        body, _ = self._parse_block(("END",), top=False, opener=sl)
        return Loop(kind, tuple(body), line=sl.line, text=text, **kwargs)


_KEYWORDS = {
    "LET", "NOP", "SAY", "LEAVE", "ITERATE", "RETURN", "EXIT", "REQUIRE", "ARG", "CALL",
    "ADDRESS", "SIGNAL", "INTERPOLATION", "IF", "DO",
}


def parse(source: str) -> Tuple:
    """Parse program text into a tuple of statement nodes or raise ParseError."""
    return Parser(source).parse()
