"""SQLite-backed audit sink for pipeline decisions."""

import json
import logging
import os
import sqlite3
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

from ..config import Config
from ..models import DecisionStatus, FieldModification, PipelineDecision, ReviewAction
from .base import AuditSink

logger = logging.getLogger(__name__)


class SQLiteDecisionStore(AuditSink):
    """SQLite-backed store for therapy decision records."""

    def __init__(self, db_path: str | None = None):
        """Initialize decision store.

        Args:
            db_path: Path to SQLite database. Defaults to THERAPY_AUDIT_DB_PATH
                     env var or ~/.therapy_pipeline/decisions.db
        """
        self.db_path = os.path.expanduser(db_path or Config.AUDIT_DB_PATH)

        # Ensure directory exists
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path) as f:
            schema = f.read()

        with self._connect() as conn:
            conn.executescript(schema)

    def _connect(self) -> sqlite3.Connection:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _generate_id(self) -> str:
        """Generate a unique audit ID."""
        return f"TD-{uuid.uuid4().hex[:8].upper()}"

    def _row_to_dict(self, row: sqlite3.Row) -> dict:
        record = dict(row)
        record["decision"] = json.loads(record.pop("decision_json"))
        record["modifications"] = json.loads(record.pop("modifications_json") or "[]")
        return record

    def _audit(
        self,
        conn: sqlite3.Connection,
        audit_id: str,
        action: str,
        performed_by: str,
        details: str | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO therapy_decision_audit (audit_id, action, performed_by, details)
            VALUES (?, ?, ?, ?)
            """,
            (audit_id, action, performed_by, details),
        )

    def persist(self, decision: PipelineDecision, actor_id: str) -> str:
        """Store a full decision record.

        The decision row and its audit entry are written in one transaction.

        Args:
            decision: Pipeline decision
            actor_id: Identifier of the user or service that requested the run

        Returns:
            Audit ID (TD-XXXXXXXX)
        """
        if not actor_id:
            raise ValueError("actor_id is required to persist a decision")

        audit_id = self._generate_id()
        now = datetime.now(timezone.utc).isoformat()
        chosen = decision.chosen.generic_name if decision.chosen else None

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO therapy_decisions (
                    id, decision_id, patient_id, actor_id, status, indication,
                    chosen_drug, intent_text, pipeline_version, decided_at,
                    decision_json, persisted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    audit_id,
                    decision.decision_id,
                    decision.patient_id,
                    actor_id,
                    decision.status.value,
                    decision.indication,
                    chosen,
                    decision.intent_text,
                    decision.pipeline_version,
                    decision.decided_at.isoformat(),
                    json.dumps(decision.to_dict()),
                    now,
                ),
            )
            self._audit(
                conn, audit_id, "persisted", actor_id,
                f"{decision.status.value}: {chosen or 'none'}",
            )

        logger.info(f"Persisted decision {decision.decision_id} as {audit_id}")
        return audit_id

    def record_review(
        self,
        audit_id: str,
        actor_id: str,
        action: ReviewAction | str,
        modifications: list[FieldModification] | None = None,
        override_reason: str | None = None,
    ) -> None:
        """Record the prescriber's review of a stored decision.

        A later review replaces the current review status; every review is
        kept in the audit log.

        Args:
            audit_id: Audit ID returned by persist()
            actor_id: Reviewing prescriber
            action: accepted, modified, rejected or wrote_from_scratch
            modifications: Fields changed on the recommended therapy
            override_reason: Why the recommendation was overridden

        Raises:
            ValueError: if the actor is missing, the action is unknown, the
                decision does not exist, a modified review has no
                modifications, or a blocked decision is accepted or modified
        """
        if not actor_id:
            raise ValueError("actor_id is required to review a decision")
        action = ReviewAction(action)
        modifications = list(modifications or [])
        if action == ReviewAction.MODIFIED and not modifications:
            raise ValueError("A modified review must list its modifications")

        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status FROM therapy_decisions WHERE id = ?", (audit_id,)
            ).fetchone()
            if not row:
                raise ValueError(f"No stored decision {audit_id}")
            if row[0] != DecisionStatus.ACCEPTED.value and action in (
                ReviewAction.ACCEPTED, ReviewAction.MODIFIED
            ):
                raise ValueError(
                    f"Decision {audit_id} is {row[0]} and has no therapy to {action.value}"
                )

            conn.execute(
                """
                UPDATE therapy_decisions
                SET review_status = ?, review_action = ?, reviewed_by = ?,
                    reviewed_at = ?, modifications_json = ?, override_reason = ?
                WHERE id = ?
                """,
                (
                    action.review_status,
                    action.value,
                    actor_id,
                    now,
                    json.dumps([m.to_dict() for m in modifications]),
                    override_reason,
                    audit_id,
                ),
            )

            details = [f"{m.field}: {m.from_value} -> {m.to_value}" for m in modifications]
            if override_reason:
                details.append(f"Reason: {override_reason}")
            self._audit(conn, audit_id, action.value, actor_id, "; ".join(details) or None)

        logger.info(f"Review of {audit_id} by {actor_id}: {action.value}")

    def get(self, audit_id: str) -> dict | None:
        """Get a stored decision by audit ID.

        Returns:
            Row dict with the parsed decision under "decision", or None
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM therapy_decisions WHERE id = ?", (audit_id,)
            ).fetchone()

        if not row:
            return None
        return self._row_to_dict(row)

    def list_for_patient(self, patient_id: str) -> list[dict]:
        """List all decisions for a patient, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM therapy_decisions
                WHERE patient_id = ?
                ORDER BY decided_at DESC
                """,
                (patient_id,),
            ).fetchall()

        return [self._row_to_dict(row) for row in rows]

    def stats(self) -> dict:
        """Get decision statistics.

        Returns:
            Dict with counts by status and the most frequently chosen drugs
        """
        with self._connect() as conn:
            status_rows = conn.execute(
                "SELECT status, COUNT(*) FROM therapy_decisions GROUP BY status"
            ).fetchall()
            by_status = {row[0]: row[1] for row in status_rows}

            drug_rows = conn.execute(
                """
                SELECT chosen_drug, COUNT(*)
                FROM therapy_decisions
                WHERE chosen_drug IS NOT NULL
                GROUP BY chosen_drug
                ORDER BY COUNT(*) DESC
                LIMIT 10
                """
            ).fetchall()
            top_chosen = {row[0]: row[1] for row in drug_rows}

            review_rows = conn.execute(
                """
                SELECT review_action, modifications_json, override_reason
                FROM therapy_decisions
                WHERE review_action IS NOT NULL
                """
            ).fetchall()

        return {
            "by_status": by_status,
            "top_chosen": top_chosen,
            "total": sum(by_status.values()),
            "reviews": self._review_stats(review_rows, sum(by_status.values())),
        }

    def _review_stats(self, rows: list[sqlite3.Row], total: int) -> dict:
        actions = Counter(row[0] for row in rows)
        fields = Counter(
            modification["field"]
            for row in rows
            for modification in json.loads(row[1] or "[]")
        )
        reasons = Counter(row[2] for row in rows if row[2])

        reviewed = len(rows)
        accepted = actions[ReviewAction.ACCEPTED.value]
        modified = actions[ReviewAction.MODIFIED.value]
        return {
            "reviewed": reviewed,
            "pending": total - reviewed,
            "accepted": accepted,
            "modified": modified,
            "rejected": (
                actions[ReviewAction.REJECTED.value]
                + actions[ReviewAction.WROTE_FROM_SCRATCH.value]
            ),
            "acceptance_rate": accepted / reviewed if reviewed else 0.0,
            "modification_rate": modified / reviewed if reviewed else 0.0,
            "top_modified_fields": dict(fields.most_common(5)),
            "top_override_reasons": dict(reasons.most_common(5)),
        }

    def export(self, start: datetime, end: datetime) -> list[dict]:
        """Export decisions decided in [start, end)."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM therapy_decisions
                WHERE decided_at >= ? AND decided_at < ?
                ORDER BY decided_at ASC
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()

        return [self._row_to_dict(row) for row in rows]

    def get_audit_log(self, audit_id: str) -> list[dict]:
        """Get audit log entries for a stored decision."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT action, performed_by, performed_at, details
                FROM therapy_decision_audit
                WHERE audit_id = ?
                ORDER BY performed_at ASC, id ASC
                """,
                (audit_id,),
            ).fetchall()

        return [
            {
                "action": row[0],
                "performed_by": row[1],
                "performed_at": row[2],
                "details": row[3],
            }
            for row in rows
        ]
