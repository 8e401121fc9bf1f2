"""
Error taxonomy for the rule compiler and QC engine.

Syntax and semantic errors are authoring-time problems reported back to the
rule author. Compilation errors indicate a grammar/codegen mismatch. Execution
errors come from the data store during a QC run. None of them are allowed to
escape into the host application's request handling unhandled.
"""

from __future__ import annotations

from dataclasses import dataclass


class RuleError(Exception):
    """Base class for every error raised by the rule subsystem."""


class RuleSyntaxError(RuleError):
    """Malformed rule text.

    Carries the character offset and the offending fragment so the authoring
    UI can underline the problem.
    """

    def __init__(self, message: str, text: str = "", offset: int = 0, fragment: str | None = None):
        self.message = message
        self.text = text
        self.offset = offset
        if fragment is None:
            fragment = text[offset:offset + 12] if text else ""
        self.fragment = fragment
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.fragment:
            return f"{self.message} at offset {self.offset}: {self.fragment!r}"
        return f"{self.message} at offset {self.offset}"

    def to_dict(self) -> dict:
        return {
            "type": "syntax",
            "message": self.message,
            "offset": self.offset,
            "fragment": self.fragment,
        }


@dataclass(frozen=True)
class SemanticIssue:
    """A single problem found by the semantic validator."""

    code: str
    message: str
    offset: int = 0

    def to_dict(self) -> dict:
        return {"type": "semantic", "code": self.code, "message": self.message, "offset": self.offset}


class SemanticError(RuleError):
    """A rule is well-formed but not meaningful against the schema.

    Holds every issue found, not just the first one.
    """

    def __init__(self, issues: list[SemanticIssue]):
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues) or "semantic check failed"
        super().__init__(summary)

    def to_dict(self) -> dict:
        return {"type": "semantic", "issues": [issue.to_dict() for issue in self.issues]}


class CompilationError(RuleError):
    """A backend could not lower an AST it should support (internal fault)."""


class ExecutionError(RuleError):
    """A query plan failed against the data store."""


class RunInProgressError(RuleError):
    """A QC run was requested while another run is still active."""

    def __init__(self, active_run_id: str | None = None):
        self.active_run_id = active_run_id
        message = "run in progress"
        if active_run_id:
            message = f"run in progress: {active_run_id}"
        super().__init__(message)


class InvalidTransitionError(RuleError):
    """A violation resolution transition is not allowed from its current state."""


class ViolationNotFoundError(RuleError):
    """No violation exists with the requested id."""
