"""Rule compilation: semantic check, real-time validators and batch query plans."""

from edc_qc.compiler.compiler import CompiledRule, RuleCompiler, compile_rule
from edc_qc.compiler.ir import PlanKind, QueryPlan
from edc_qc.compiler.query import compile_batch
from edc_qc.compiler.realtime import CompiledValidator, compile_realtime
from edc_qc.compiler.semantic import check, validate

__all__ = [
    "CompiledRule",
    "CompiledValidator",
    "PlanKind",
    "QueryPlan",
    "RuleCompiler",
    "check",
    "compile_batch",
    "compile_realtime",
    "compile_rule",
    "validate",
]
