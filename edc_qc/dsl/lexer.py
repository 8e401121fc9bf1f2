"""
Tokenizer for the validation rule language.

A single compiled master pattern scans the rule text left to right. Anything
the pattern does not recognise is rejected immediately with its offset, so the
parser only ever sees well-formed tokens.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import NamedTuple

from edc_qc.core.errors import RuleSyntaxError


class TokenType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    IDENT = "ident"
    KEYWORD = "keyword"
    OP = "op"
    PERCENT = "percent"
    DOTDOT = "dotdot"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    EOF = "eof"


class Token(NamedTuple):
    type: TokenType
    value: object
    offset: int
    text: str


KEYWORDS = frozenset({
    "and", "or", "not",
    "if", "then", "else", "endif",
    "between", "in", "required", "matches", "within", "of",
    "for", "all",
    "true", "false", "null",
})
"""Reserved words. Matching is case-insensitive."""

COMPARISON_TOKENS = frozenset({"==", "!=", "<", "<=", ">", ">="})

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("NUMBER", r"\d+(?:\.\d+)?"),
    ("STRING", r"'(?:[^'\\\n]|\\.)*'|\"(?:[^\"\\\n]|\\.)*\""),
    ("QUOTE", r"['\"]"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("DOTDOT", r"\.\."),
    ("OP", r"==|!=|<=|>=|<|>|\+|-|\*|/"),
    ("PERCENT", r"%"),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("COMMA", r","),
    ("MISMATCH", r"."),
]
_MASTER = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC), re.DOTALL)

_ESCAPE = re.compile(r"\\(.)", re.DOTALL)


def _unquote(raw: str) -> str:
    return _ESCAPE.sub(lambda m: m.group(1), raw[1:-1])


def tokenize(text: str) -> list[Token]:
    """Split rule text into tokens.

    Args:
        text: Raw rule text

    Returns:
        Token list, always terminated by an EOF token

    Raises:
        RuleSyntaxError: On an unknown character or an unterminated string
    """
    tokens: list[Token] = []
    for match in _MASTER.finditer(text):
        kind = match.lastgroup
        raw = match.group()
        offset = match.start()

        if kind == "WS":
            continue
        if kind == "NUMBER":
            value = float(raw) if "." in raw else int(raw)
            tokens.append(Token(TokenType.NUMBER, value, offset, raw))
        elif kind == "STRING":
            tokens.append(Token(TokenType.STRING, _unquote(raw), offset, raw))
        elif kind == "QUOTE":
            raise RuleSyntaxError("Unterminated string literal", text, offset, text[offset:offset + 12])
        elif kind == "IDENT":
            lowered = raw.lower()
            if lowered in KEYWORDS:
                tokens.append(Token(TokenType.KEYWORD, lowered, offset, raw))
            else:
                tokens.append(Token(TokenType.IDENT, raw, offset, raw))
        elif kind == "MISMATCH":
            if raw == "=":
                raise RuleSyntaxError("Unknown token '=' (use '==' for equality)", text, offset, raw)
            raise RuleSyntaxError(f"Unknown token {raw!r}", text, offset, raw)
        else:
            tokens.append(Token(TokenType[kind], raw, offset, raw))

    tokens.append(Token(TokenType.EOF, None, len(text), ""))
    return tokens
