"""
Recursive-descent parser for the validation rule language.

Precedence, lowest to highest::

    or  <  and  <  not  <  comparisons / checks  <  + -  <  * /  <  unary -

``not`` binds looser than comparisons, so ``not age > 5`` means
``not (age > 5)``. ``and``/``or`` are left-associative and ``and`` binds
tighter than ``or``. Chained comparisons such as ``a < b < c`` are rejected.

A check written without a subject (``between 18 and 65``, ``required``,
``in('M', 'F')``) applies to the rule's target field.
"""

from __future__ import annotations

from edc_qc.core.errors import RuleSyntaxError
from edc_qc.dsl import ast
from edc_qc.dsl.lexer import COMPARISON_TOKENS, Token, TokenType, tokenize


_CHECK_KEYWORDS = frozenset({"between", "in", "required", "matches", "within"})


def parse(text: str) -> ast.Node:
    """Parse rule text into an AST.

    Parsing is pure: it never consults a schema, a clock or any record data,
    and the same text always yields a structurally equal tree.

    Args:
        text: Raw rule text

    Returns:
        Root node of the rule

    Raises:
        RuleSyntaxError: With offset and offending fragment
    """
    if text is None or not text.strip():
        raise RuleSyntaxError("Rule text is empty", text or "", 0, "")
    return Parser(text).parse_rule()


class Parser:
    """Single-use parser over one rule text."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    # =========================================================================
    # Token helpers
    # =========================================================================

    def peek(self, ahead: int = 0) -> Token:
        index = min(self.pos + ahead, len(self.tokens) - 1)
        return self.tokens[index]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.type != TokenType.EOF:
            self.pos += 1
        return token

    def at_keyword(self, *words: str, ahead: int = 0) -> bool:
        token = self.peek(ahead)
        return token.type == TokenType.KEYWORD and token.value in words

    def at_ident(self, *words: str, ahead: int = 0) -> bool:
        token = self.peek(ahead)
        return token.type == TokenType.IDENT and token.value.lower() in words

    def at_type(self, token_type: TokenType, ahead: int = 0) -> bool:
        return self.peek(ahead).type == token_type

    def at_comparison(self) -> bool:
        token = self.peek()
        return token.type == TokenType.OP and token.value in COMPARISON_TOKENS

    def at_check(self) -> bool:
        if self.at_comparison():
            return True
        if self.at_keyword(*_CHECK_KEYWORDS):
            return True
        return self.at_keyword("not") and self.at_keyword("in", ahead=1)

    def error(self, message: str, token: Token | None = None) -> RuleSyntaxError:
        token = token or self.peek()
        if token.type == TokenType.EOF:
            previous = self.tokens[self.pos - 1] if self.pos > 0 else None
            if previous is not None:
                return RuleSyntaxError(
                    f"{message}: unexpected end of rule after {previous.text!r}",
                    self.text,
                    previous.offset,
                    previous.text,
                )
            return RuleSyntaxError(f"{message}: unexpected end of rule", self.text, token.offset, "")
        return RuleSyntaxError(message, self.text, token.offset, token.text)

    def expect_keyword(self, word: str, message: str | None = None, anchor: Token | None = None) -> Token:
        if self.at_keyword(word):
            return self.advance()
        if anchor is not None and self.at_type(TokenType.EOF):
            raise RuleSyntaxError(message or f"Expected '{word}'", self.text, anchor.offset, anchor.text)
        raise self.error(message or f"Expected '{word}'")

    def expect_ident(self, word: str) -> Token:
        if self.at_ident(word):
            return self.advance()
        raise self.error(f"Expected '{word}'")

    def expect_type(self, token_type: TokenType, message: str) -> Token:
        if self.at_type(token_type):
            return self.advance()
        raise self.error(message)

    # =========================================================================
    # Grammar
    # =========================================================================

    def parse_rule(self) -> ast.Node:
        node = self.parse_expr()
        if not self.at_type(TokenType.EOF):
            token = self.peek()
            if token.type == TokenType.RPAREN:
                raise self.error("Unmatched ')'")
            raise self.error(f"Unexpected {token.text!r}")
        return node

    def parse_expr(self) -> ast.Node:
        return self.parse_or()

    def parse_or(self) -> ast.Node:
        left = self.parse_and()
        while self.at_keyword("or"):
            token = self.advance()
            right = self.parse_and()
            left = ast.BinaryOp(op="or", left=left, right=right, offset=token.offset)
        return left

    def parse_and(self) -> ast.Node:
        left = self.parse_not()
        while self.at_keyword("and"):
            token = self.advance()
            right = self.parse_not()
            left = ast.BinaryOp(op="and", left=left, right=right, offset=token.offset)
        return left

    def parse_not(self) -> ast.Node:
        if self.at_keyword("not") and not self.at_keyword("in", ahead=1):
            token = self.advance()
            operand = self.parse_not()
            return ast.UnaryOp(op="not", operand=operand, offset=token.offset)
        return self.parse_predicate()

    def parse_predicate(self) -> ast.Node:
        if self.at_keyword("if"):
            return self.parse_conditional()

        if self.at_check():
            subject = ast.FieldRef(offset=self.peek().offset)
            return self.finish_check(subject)

        start = self.peek()
        subject = self.parse_additive()

        if self.at_type(TokenType.DOTDOT):
            return self.parse_range_shorthand(subject, start)

        if self.at_check():
            return self.finish_check(subject)
        return subject

    def finish_check(self, subject: ast.Node) -> ast.Node:
        node = self.parse_check(subject)
        if self.at_comparison():
            raise self.error("Chained comparison is ambiguous; combine the parts with 'and'")
        return node

    def parse_conditional(self) -> ast.Node:
        if_token = self.advance()
        condition = self.parse_expr()
        self.expect_keyword("then", "Expected 'then' after if-condition")
        then_branch = self.parse_expr()

        else_branch = None
        if self.at_keyword("else"):
            self.advance()
            else_branch = self.parse_expr()

        if not self.at_keyword("endif"):
            if self.at_type(TokenType.EOF):
                raise RuleSyntaxError(
                    "Unterminated 'if': missing 'endif'", self.text, if_token.offset,
                    self.text[if_token.offset:if_token.offset + 12],
                )
            raise self.error("Expected 'endif'")
        self.advance()

        return ast.Conditional(
            condition=condition,
            then_branch=then_branch,
            else_branch=else_branch,
            offset=if_token.offset,
        )

    def parse_range_shorthand(self, low: ast.Node, start: Token) -> ast.Node:
        self.advance()
        high_token = self.peek()
        high = self.parse_unary()
        if not isinstance(low, ast.Literal):
            raise self.error("Range shorthand bounds must be literals", start)
        if not isinstance(high, ast.Literal):
            raise self.error("Range shorthand bounds must be literals", high_token)
        return ast.Range(operand=ast.FieldRef(offset=start.offset), low=low, high=high, offset=start.offset)

    def parse_check(self, subject: ast.Node) -> ast.Node:
        token = self.peek()

        if self.at_comparison():
            self.advance()
            right = self.parse_additive()
            return ast.BinaryOp(op=token.value, left=subject, right=right, offset=token.offset)

        if self.at_keyword("between"):
            self.advance()
            low = self.parse_additive()
            self.expect_keyword("and", "Expected 'and' in between-range")
            high = self.parse_additive()
            return ast.Range(operand=subject, low=low, high=high, offset=token.offset)

        if self.at_keyword("not", "in"):
            negated = self.at_keyword("not")
            if negated:
                self.advance()
            self.advance()
            values = self.parse_literal_list()
            return ast.ListMembership(operand=subject, values=values, negated=negated, offset=token.offset)

        if self.at_keyword("required"):
            self.advance()
            population = None
            if self.at_keyword("for"):
                self.advance()
                self.expect_keyword("all", "Expected 'all' after 'required for'")
                population = self.expect_type(TokenType.IDENT, "Expected a population name").value
            return ast.Required(operand=subject, population=population, offset=token.offset)

        if self.at_keyword("matches"):
            self.advance()
            pattern = self.expect_type(TokenType.STRING, "Expected a quoted pattern after 'matches'")
            return ast.PatternMatch(operand=subject, pattern=pattern.value, offset=token.offset)

        if self.at_keyword("within"):
            return self.parse_within(subject)

        raise self.error("Expected a check")

    def parse_within(self, subject: ast.Node) -> ast.Node:
        token = self.advance()
        amount = self.expect_type(TokenType.NUMBER, "Expected a number after 'within'").value

        if self.at_type(TokenType.PERCENT):
            self.advance()
            self.expect_keyword("of", "Expected 'of' after tolerance")
            reference = self.parse_additive()
            return ast.Tolerance(
                operand=subject, reference=reference, amount=amount, unit="percent", offset=token.offset
            )

        if self.at_ident("day", "days"):
            self.advance()
            self.expect_keyword("of", "Expected 'of' after tolerance")
            reference = self.parse_additive()
            return ast.Tolerance(
                operand=subject, reference=reference, amount=amount, unit="days", offset=token.offset
            )

        if self.at_ident("sd"):
            self.advance()
            self.expect_keyword("of", "Expected 'of' after 'sd'")
            self.expect_ident("mean")
            by_visit = False
            if self.at_ident("by"):
                self.advance()
                self.expect_ident("visit")
                by_visit = True
            return ast.Outlier(operand=subject, k=amount, by_visit=by_visit, offset=token.offset)

        raise self.error("Expected '%', 'days' or 'sd' after 'within N'")

    def parse_literal_list(self) -> tuple[ast.Literal, ...]:
        open_token = self.expect_type(TokenType.LPAREN, "Expected '(' after 'in'")
        if self.at_type(TokenType.RPAREN):
            raise self.error("Value list must not be empty")

        values = [self.parse_literal()]
        while self.at_type(TokenType.COMMA):
            self.advance()
            values.append(self.parse_literal())

        if not self.at_type(TokenType.RPAREN):
            if self.at_type(TokenType.EOF):
                raise RuleSyntaxError("Unmatched '('", self.text, open_token.offset, open_token.text)
            raise self.error("Expected ',' or ')' in value list")
        self.advance()
        return tuple(values)

    def parse_literal(self) -> ast.Literal:
        token = self.peek()
        node = self.parse_unary()
        if not isinstance(node, ast.Literal):
            raise self.error("Expected a literal value", token)
        return node

    def parse_additive(self) -> ast.Node:
        left = self.parse_term()
        while self.at_type(TokenType.OP) and self.peek().value in ("+", "-"):
            token = self.advance()
            right = self.parse_term()
            left = ast.BinaryOp(op=token.value, left=left, right=right, offset=token.offset)
        return left

    def parse_term(self) -> ast.Node:
        left = self.parse_unary()
        while self.at_type(TokenType.OP) and self.peek().value in ("*", "/"):
            token = self.advance()
            right = self.parse_unary()
            left = ast.BinaryOp(op=token.value, left=left, right=right, offset=token.offset)
        return left

    def parse_unary(self) -> ast.Node:
        if self.at_type(TokenType.OP) and self.peek().value == "-":
            token = self.advance()
            operand = self.parse_unary()
            # Fold negative numeric constants so "-5" is a literal.
            if (
                isinstance(operand, ast.Literal)
                and isinstance(operand.value, (int, float))
                and not isinstance(operand.value, bool)
            ):
                return ast.Literal(value=-operand.value, unit=operand.unit, offset=token.offset)
            return ast.UnaryOp(op="-", operand=operand, offset=token.offset)
        return self.parse_primary()

    def parse_primary(self) -> ast.Node:
        token = self.peek()

        if token.type == TokenType.NUMBER:
            self.advance()
            unit = None
            if self.at_ident("day", "days"):
                self.advance()
                unit = "days"
            return ast.Literal(value=token.value, unit=unit, offset=token.offset)

        if token.type == TokenType.STRING:
            self.advance()
            return ast.Literal(value=token.value, offset=token.offset)

        if self.at_keyword("true", "false"):
            self.advance()
            return ast.Literal(value=token.value == "true", offset=token.offset)

        if self.at_keyword("null"):
            self.advance()
            return ast.Literal(value=None, offset=token.offset)

        if token.type == TokenType.IDENT:
            return self.parse_identifier()

        if token.type == TokenType.LPAREN:
            self.advance()
            node = self.parse_expr()
            if not self.at_type(TokenType.RPAREN):
                if self.at_type(TokenType.EOF):
                    raise RuleSyntaxError("Unmatched '('", self.text, token.offset, self.text[token.offset:token.offset + 12])
                raise self.error("Expected ')'")
            self.advance()
            return node

        if token.type == TokenType.EOF:
            raise self.error("Expected an operand")
        raise self.error(f"Unexpected {token.text!r}")

    def parse_identifier(self) -> ast.Node:
        token = self.advance()
        name = token.value

        if self.at_type(TokenType.LPAREN):
            return self.parse_call(token)

        if name.lower() == "today":
            return ast.FunctionCall(name="today", offset=token.offset)

        if self.at_ident("at") and self.at_ident("visit", ahead=1):
            self.advance()
            self.advance()
            visit = self.expect_type(TokenType.STRING, "Expected a quoted visit id after 'at visit'")
            return ast.CrossVisitRef(name=name, visit=visit.value, offset=token.offset)

        return ast.CrossFieldRef(name=name, offset=token.offset)

    def parse_call(self, name_token: Token) -> ast.Node:
        open_token = self.advance()
        args: list[ast.Node] = []
        if not self.at_type(TokenType.RPAREN):
            args.append(self.parse_expr())
            while self.at_type(TokenType.COMMA):
                self.advance()
                args.append(self.parse_expr())
        if not self.at_type(TokenType.RPAREN):
            if self.at_type(TokenType.EOF):
                raise RuleSyntaxError("Unmatched '('", self.text, open_token.offset, open_token.text)
            raise self.error("Expected ',' or ')' in argument list")
        self.advance()
        return ast.FunctionCall(name=name_token.value.lower(), args=tuple(args), offset=name_token.offset)
