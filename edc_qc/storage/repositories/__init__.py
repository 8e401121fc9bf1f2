"""Raw-SQL repositories."""

from edc_qc.storage.repositories.rule_repo import RuleRepository

__all__ = ["RuleRepository"]
