"""Rule definitions and configuration loading."""

from edc_qc.rules.loader import RuleConfigError, RuleConfigLoader
from edc_qc.rules.models import Rule, RuleCategory, RuleContext, Severity

__all__ = [
    "Rule",
    "RuleCategory",
    "RuleConfigError",
    "RuleConfigLoader",
    "RuleContext",
    "Severity",
]
