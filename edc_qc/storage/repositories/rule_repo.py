"""
Rule repository for database operations.

Provides CRUD operations for rules, their version history and their compiled
query plans.
"""

from __future__ import annotations

from sqlalchemy import text

from edc_qc.compiler.ir import QueryPlan
from edc_qc.rules.models import Rule
from edc_qc.storage.database import get_db
from edc_qc.storage.models import PlanRecord, RuleRecord, now_iso


class RuleRepository:
    """Repository for rule and plan persistence operations."""

    # =========================================================================
    # Rule CRUD
    # =========================================================================

    def save_rule(self, rule: Rule) -> RuleRecord:
        """Save or update a rule.

        A changed rule text (or target field) bumps the stored version, records
        the new version in ``rule_versions`` and drops the stale plan. Metadata
        changes (severity, message, active flag) keep the version.

        Args:
            rule: The rule definition

        Returns:
            The saved RuleRecord, carrying the authoritative version
        """
        record = RuleRecord.from_rule(rule)

        with get_db() as conn:
            result = conn.execute(
                text("SELECT version, source_hash, created_at FROM rules WHERE rule_id = :rule_id"),
                {"rule_id": rule.rule_id},
            )
            existing = result.fetchone()

            if existing:
                version, source_hash, created_at = existing
                changed = source_hash != record.source_hash
                record.version = version + 1 if changed else version
                record.created_at = str(created_at)
                record.updated_at = now_iso()

                conn.execute(
                    text("""
                    UPDATE rules SET
                        version = :version,
                        raw_text = :raw_text,
                        target_field = :target_field,
                        context = :context,
                        severity = :severity,
                        category = :category,
                        form = :form,
                        message = :message,
                        source_hash = :source_hash,
                        is_active = :is_active,
                        updated_at = :updated_at
                    WHERE rule_id = :rule_id
                    """),
                    {
                        key: value for key, value in record.to_dict().items()
                        if key not in ("created_at", "compile_status", "compile_error")
                    },
                )
                if changed:
                    conn.execute(
                        text("DELETE FROM query_plans WHERE rule_id = :rule_id"),
                        {"rule_id": rule.rule_id},
                    )
                    self._insert_version(conn, record)
            else:
                conn.execute(
                    text("""
                    INSERT INTO rules (
                        rule_id, version, raw_text, target_field, context, severity,
                        category, form, message, source_hash, is_active,
                        compile_status, compile_error, created_at, updated_at
                    ) VALUES (
                        :rule_id, :version, :raw_text, :target_field, :context, :severity,
                        :category, :form, :message, :source_hash, :is_active,
                        :compile_status, :compile_error, :created_at, :updated_at
                    )
                    """),
                    record.to_dict(),
                )
                self._insert_version(conn, record)

            conn.commit()
            return record

    def _insert_version(self, conn, record: RuleRecord) -> None:
        conn.execute(
            text("""
            INSERT INTO rule_versions (rule_id, version, raw_text, target_field, source_hash, created_at)
            VALUES (:rule_id, :version, :raw_text, :target_field, :source_hash, :created_at)
            """),
            {
                "rule_id": record.rule_id,
                "version": record.version,
                "raw_text": record.raw_text,
                "target_field": record.target_field,
                "source_hash": record.source_hash,
                "created_at": now_iso(),
            },
        )

    def get_rule(self, rule_id: str) -> RuleRecord | None:
        """Get a rule by ID (active or not).

        Args:
            rule_id: The rule identifier

        Returns:
            RuleRecord if found, None otherwise
        """
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM rules WHERE rule_id = :rule_id"),
                {"rule_id": rule_id},
            )
            row = result.fetchone()

            if row:
                return RuleRecord.from_row(row._mapping)
            return None

    def get_all_rules(self, active_only: bool = True, context: str | None = None) -> list[RuleRecord]:
        """Get all rules.

        Args:
            active_only: If True, only return active rules
            context: Restrict to ``real-time`` or ``batch`` rules

        Returns:
            List of RuleRecord objects ordered by rule_id
        """
        clauses = []
        params: dict[str, object] = {}
        if active_only:
            clauses.append("is_active = 1")
        if context:
            clauses.append("context = :context")
            params["context"] = context
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with get_db() as conn:
            result = conn.execute(text(f"SELECT * FROM rules {where} ORDER BY rule_id"), params)
            return [RuleRecord.from_row(row._mapping) for row in result.fetchall()]

    def deactivate_rule(self, rule_id: str) -> bool:
        """Mark a rule inactive. Rules are never deleted; violations reference them.

        Returns:
            True if a rule was deactivated
        """
        with get_db() as conn:
            result = conn.execute(
                text("UPDATE rules SET is_active = 0, updated_at = :updated_at WHERE rule_id = :rule_id AND is_active = 1"),
                {"updated_at": now_iso(), "rule_id": rule_id},
            )
            conn.commit()
            return result.rowcount > 0

    def set_compile_status(self, rule_id: str, status: str, error: str | None = None) -> None:
        """Record the outcome of the last compile of a rule."""
        with get_db() as conn:
            conn.execute(
                text("""
                UPDATE rules SET compile_status = :status, compile_error = :error
                WHERE rule_id = :rule_id
                """),
                {"status": status, "error": error, "rule_id": rule_id},
            )
            conn.commit()

    def get_versions(self, rule_id: str) -> list[dict]:
        """Version history of a rule, oldest first."""
        with get_db() as conn:
            result = conn.execute(
                text("""
                SELECT version, raw_text, target_field, source_hash, created_at
                FROM rule_versions WHERE rule_id = :rule_id ORDER BY version
                """),
                {"rule_id": rule_id},
            )
            return [dict(row._mapping) for row in result.fetchall()]

    # =========================================================================
    # Query plan operations
    # =========================================================================

    def save_plan(self, plan: QueryPlan, rule_version: int) -> PlanRecord:
        """Store the compiled plan for a rule, replacing any previous one."""
        record = PlanRecord.from_plan(plan, rule_version)
        with get_db() as conn:
            conn.execute(
                text("DELETE FROM query_plans WHERE rule_id = :rule_id"),
                {"rule_id": record.rule_id},
            )
            conn.execute(
                text("""
                INSERT INTO query_plans (
                    rule_id, rule_version, source_hash, schema_fingerprint,
                    plan_kind, plan_json, compiled_at
                ) VALUES (
                    :rule_id, :rule_version, :source_hash, :schema_fingerprint,
                    :plan_kind, :plan_json, :compiled_at
                )
                """),
                record.to_dict(),
            )
            conn.commit()
        return record

    def get_plan(self, rule_id: str) -> PlanRecord | None:
        """Get the stored plan for a rule.

        Returns:
            PlanRecord if one is stored, None otherwise
        """
        with get_db() as conn:
            result = conn.execute(
                text("SELECT * FROM query_plans WHERE rule_id = :rule_id"),
                {"rule_id": rule_id},
            )
            row = result.fetchone()

            if row:
                return PlanRecord.from_row(row._mapping)
            return None

    def delete_plan(self, rule_id: str) -> bool:
        with get_db() as conn:
            result = conn.execute(
                text("DELETE FROM query_plans WHERE rule_id = :rule_id"),
                {"rule_id": rule_id},
            )
            conn.commit()
            return result.rowcount > 0
