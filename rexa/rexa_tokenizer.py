"""Rexa tokenizer: lexes one logical line into tokens that remember the source span they cover."""

from rexa.rexa_errors import ParseError

# Token type constants
TK_NUMBER = "NUMBER"
TK_STRING = "STRING"
TK_IDENT = "IDENT"
TK_OP = "OP"
TK_EOF = "EOF"

# Multi-character operators, sorted by length descending for greedy matching
MULTI_OPS: list[str] = [
    "\\==",
    "**",
    "||",
    "|>",
    "==",
    "!=",
    "\\=",
    "<>",
    "<=",
    ">=",
    "&&",
]

SINGLE_OPS: set[str] = {
    "+",
    "-",
    "*",
    "/",
    "%",
    "=",
    "<",
    ">",
    "&",
    "|",
    "!",
    "\\",
    "(",
    ")",
    ",",
}


class Token:
    """A token with type, value, and position."""

    def __init__(self, type_: str, value, line: int, col: int, end: int, quote: str = "",
                 start: int = 0, source: str = ""):
        self.type: str = type_
        self.value = value
        self.line: int = line
        self.col: int = col
        # Offsets of the token within `source`, the text that was tokenized
        self.start: int = start
        self.end: int = end
        self.quote: str = quote
        self.source: str = source

    def is_op(self, *ops: str) -> bool:
        return self.type == TK_OP and self.value in ops

    def is_word(self, *words: str) -> bool:
        return self.type == TK_IDENT and self.value.upper() in words

    def __repr__(self) -> str:
        return f"Token({self.type}, {self.value!r}, {self.line}:{self.col})"


def _is_ident_start(c: str) -> bool:
    return c.isalpha() or c in "_$@#"


def _is_ident_char(c: str) -> bool:
    return c.isalnum() or c in "_$@#.?"


def tokenize(text: str, line: int = 1, col_offset: int = 0) -> list[Token]:
    """Tokenize `text`. Columns are 1-based and shifted by `col_offset`."""
    tokens: list[Token] = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c in " \t\r":
            i += 1
            continue
        col = col_offset + i + 1
        # Strings: '...' or "...", a doubled quote escapes itself
        if c in "'\"":
            quote = c
            j = i + 1
            buf = []
            while True:
                if j >= n:
                    raise ParseError("Unterminated string literal", line=line, col=col)
                ch = text[j]
                if ch == quote:
                    if j + 1 < n and text[j + 1] == quote:
                        buf.append(quote)
                        j += 2
                        continue
                    j += 1
                    break
                buf.append(ch)
                j += 1
            tokens.append(Token(TK_STRING, "".join(buf), line, col, j, quote, i, text))
            i = j
            continue
        # Numbers; digits running straight into identifier chars (`3rd`) are rejected
        if c.isdigit() or (c == "." and i + 1 < n and text[i + 1].isdigit()):
            j = i
            while j < n and text[j].isdigit():
                j += 1
            if j < n and text[j] == "." and j + 1 < n and text[j + 1].isdigit():
                j += 1
                while j < n and text[j].isdigit():
                    j += 1
            if j < n and text[j] in "eE":
                k = j + 1
                if k < n and text[k] in "+-":
                    k += 1
                if k < n and text[k].isdigit():
                    while k < n and text[k].isdigit():
                        k += 1
                    j = k
            if j < n and (_is_ident_start(text[j]) or text[j] == "."):
                raise ParseError(f"Invalid number literal near {text[i:j + 1]!r}", line=line, col=col)
            raw = text[i:j]
            value = float(raw) if any(ch in raw for ch in ".eE") else int(raw)
            tokens.append(Token(TK_NUMBER, value, line, col, j, start=i, source=text))
            i = j
            continue
        if _is_ident_start(c):
            j = i + 1
            while j < n and _is_ident_char(text[j]):
                j += 1
            tokens.append(Token(TK_IDENT, text[i:j], line, col, j, start=i, source=text))
            i = j
            continue
        matched = None
        for op in MULTI_OPS:
            if text.startswith(op, i):
                matched = op
                break
        if matched is None and c in SINGLE_OPS:
            matched = c
        if matched is None:
            raise ParseError(f"Unexpected character {c!r}", line=line, col=col)
        tokens.append(Token(TK_OP, matched, line, col, i + len(matched), start=i, source=text))
        i += len(matched)
    tokens.append(Token(TK_EOF, None, line, col_offset + n + 1, n, start=n, source=text))
    return tokens
