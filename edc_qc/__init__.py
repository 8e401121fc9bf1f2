"""EDC QC - Validation rule compiler and batch QC engine for clinical data capture.

Rules written in a small expression language are compiled once and used two
ways: as in-process validators at data entry, and as SQL query plans that a
batch QC run executes against the study database.

Environment Variables:
    EDC_QC_DATABASE_URL: Rule, plan and violation store (default: SQLite under data/)
    EDC_QC_DATA_DATABASE_URL: Clinical data store (default: the same database)
    EDC_QC_RULES_FILE / EDC_QC_SCHEMA_FILE: Rule and schema configuration
"""

# Rule language
from .dsl import default_message, parse, to_text

# Rule definitions
from .rules import (
    Rule,
    RuleConfigError,
    RuleConfigLoader,
    RuleContext,
    Severity,
)

# Compilation
from .compiler import (
    CompiledRule,
    QueryPlan,
    RuleCompiler,
    compile_rule,
)

# Errors
from .core.errors import (
    RuleError,
    RuleSyntaxError,
    SemanticError,
)

# Schema
from .core.schema import TableSchema, load_schema

__version__ = "0.1.0"

__all__ = [
    # Rule language
    "default_message",
    "parse",
    "to_text",
    # Rules
    "Rule",
    "RuleConfigError",
    "RuleConfigLoader",
    "RuleContext",
    "Severity",
    # Compilation
    "CompiledRule",
    "QueryPlan",
    "RuleCompiler",
    "compile_rule",
    # Errors
    "RuleError",
    "RuleSyntaxError",
    "SemanticError",
    # Schema
    "TableSchema",
    "load_schema",
]
