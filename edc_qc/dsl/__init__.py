"""Rule language: tokenizer, parser and AST."""

from edc_qc.dsl.ast import NodeVisitor
from edc_qc.dsl.lexer import tokenize
from edc_qc.dsl.parser import parse
from edc_qc.dsl.printer import default_message, to_text

__all__ = [
    "NodeVisitor",
    "default_message",
    "parse",
    "to_text",
    "tokenize",
]
