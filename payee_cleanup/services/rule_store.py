"""
Rule catalog store for payee cleanup rules and their application history.

Every mutation is atomic per rule:
- status changes are compare-and-swap on the current status, so two
  reviewers racing on the same pending rule cannot both win;
- usage/success counters are updated in a single read-modify-write
  statement inside one transaction.
"""
from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from payee_cleanup.models.rules import (
    FeedbackStatus,
    GeneratorType,
    PatternType,
    PayeeCleanupRule,
    RuleApplication,
    RuleReview,
    RuleStatus,
    utcnow,
)
from payee_cleanup.services.db import DB, DB_ERRORS
from payee_cleanup.services.errors import (
    InvalidRuleStateError,
    PersistenceError,
    RuleNotFoundError,
)


DB_PATH = os.getenv("PAYEE_CLEANUP_DB", os.path.join(os.getcwd(), "payee_cleanup.sqlite3"))

_ACTION_FOR_STATUS = {
    RuleStatus.APPROVED: "approve",
    RuleStatus.REJECTED: "reject",
    RuleStatus.PENDING: "reopen",
}

EDITABLE_FIELDS = ("pattern", "pattern_type", "replacement")


def _ts(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width timestamps keep ORDER BY on the text column chronological.
    return value.isoformat(timespec="microseconds") if value else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _success_rate_after(rule: PayeeCleanupRule, was_successful: bool) -> float:
    """
    Count-weighted running average, taken before usage_count is bumped:
    (rate * n + outcome) / (n + 1).
    """
    n = rule.usage_count
    rate = (rule.success_rate * n + (1.0 if was_successful else 0.0)) / (n + 1)
    return min(1.0, max(0.0, rate))


class RuleStore(ABC):
    """Storage contract the cleanup service depends on."""

    @abstractmethod
    def save(self, rule: PayeeCleanupRule) -> PayeeCleanupRule:
        """Insert a new rule. Fails with PersistenceError if the id already exists."""

    @abstractmethod
    def find_by_id(self, rule_id: str) -> Optional[PayeeCleanupRule]:
        ...

    @abstractmethod
    def find_by_status(self, status: RuleStatus) -> List[PayeeCleanupRule]:
        """Rules in the given status, newest first."""

    @abstractmethod
    def transition_status(
        self,
        rule_id: str,
        expected: RuleStatus,
        new_status: RuleStatus,
        modifications: Optional[Dict[str, Any]] = None,
    ) -> PayeeCleanupRule:
        """Move a rule from ``expected`` to ``new_status`` only if it is still in ``expected``."""

    @abstractmethod
    def record_application(self, application: RuleApplication) -> bool:
        """Append an application. Returns False if (transaction_id, rule_id) was already recorded."""

    @abstractmethod
    def update_rule_counters(
        self,
        rule_id: str,
        usage_delta: int,
        new_success_rate: Optional[float] = None,
    ) -> PayeeCleanupRule:
        ...

    @abstractmethod
    def apply_feedback(self, rule_id: str, was_successful: bool) -> PayeeCleanupRule:
        """Atomically fold one feedback signal into success_rate and usage_count."""

    @abstractmethod
    def mark_latest_application_feedback(
        self,
        rule_id: str,
        status: FeedbackStatus,
    ) -> Optional[RuleApplication]:
        """Attach feedback to the newest application of the rule that has none yet."""

    @abstractmethod
    def list_applications(self, rule_id: Optional[str] = None) -> List[RuleApplication]:
        """Applications newest first, optionally for a single rule."""

    @abstractmethod
    def record_review(self, review: RuleReview) -> RuleReview:
        ...

    @abstractmethod
    def list_reviews(self, rule_id: str) -> List[RuleReview]:
        ...


class SQLRuleStore(RuleStore):
    """SQLite/Postgres backed catalog (payee_cleanup_rules, payee_rule_applications)."""

    def __init__(self, db_path: str = DB_PATH, dsn: Optional[str] = None) -> None:
        self.db = DB(sqlite_path=db_path, dsn=dsn)
        self._ensure_tables()

    def _ensure_tables(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS payee_cleanup_rules (
                id VARCHAR(36) PRIMARY KEY,
                pattern VARCHAR(255) NOT NULL,
                pattern_type VARCHAR(20) NOT NULL,
                replacement VARCHAR(255) NOT NULL,
                confidence DOUBLE PRECISION NOT NULL,
                generated_by VARCHAR(20) NOT NULL,
                status VARCHAR(20) NOT NULL,
                usage_count INTEGER NOT NULL DEFAULT 0,
                success_rate DOUBLE PRECISION NOT NULL DEFAULT 1.0,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_payee_cleanup_rules_status ON payee_cleanup_rules(status)",
            """
            CREATE TABLE IF NOT EXISTS payee_rule_applications (
                id VARCHAR(36) PRIMARY KEY,
                rule_id VARCHAR(36) REFERENCES payee_cleanup_rules(id),
                transaction_id VARCHAR(255) NOT NULL,
                original_payee VARCHAR(255) NOT NULL,
                cleaned_payee VARCHAR(255) NOT NULL,
                applied_at TEXT NOT NULL,
                feedback_status VARCHAR(20),
                feedback_at TEXT,
                CONSTRAINT unique_transaction_rule UNIQUE (transaction_id, rule_id)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_payee_rule_applications_transaction ON payee_rule_applications(transaction_id)",
            "CREATE INDEX IF NOT EXISTS idx_payee_rule_applications_rule ON payee_rule_applications(rule_id)",
            """
            CREATE TABLE IF NOT EXISTS payee_rule_reviews (
                id VARCHAR(36) PRIMARY KEY,
                rule_id VARCHAR(36) NOT NULL REFERENCES payee_cleanup_rules(id),
                action VARCHAR(20) NOT NULL,
                reason TEXT,
                created_at TEXT NOT NULL
            )
            """,
        ]
        try:
            for sql in statements:
                self.db.execute(sql)
        except DB_ERRORS as exc:
            raise PersistenceError("initialization", str(exc)) from exc

    # ------------------------------------------------------------------ #
    # Rules
    # ------------------------------------------------------------------ #
    def save(self, rule: PayeeCleanupRule) -> PayeeCleanupRule:
        try:
            self.db.execute(
                """
                INSERT INTO payee_cleanup_rules (
                    id, pattern, pattern_type, replacement, confidence, generated_by,
                    status, usage_count, success_rate, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.id,
                    rule.pattern,
                    rule.pattern_type.name,
                    rule.replacement,
                    rule.confidence,
                    rule.generated_by.name,
                    rule.status.name,
                    rule.usage_count,
                    rule.success_rate,
                    _ts(rule.created_at),
                    _ts(rule.updated_at),
                ),
            )
        except DB_ERRORS as exc:
            raise PersistenceError("save", str(exc)) from exc
        return rule

    def find_by_id(self, rule_id: str) -> Optional[PayeeCleanupRule]:
        try:
            row = self.db.fetchone_dict("SELECT * FROM payee_cleanup_rules WHERE id = ?", (rule_id,))
        except DB_ERRORS as exc:
            raise PersistenceError("find_by_id", str(exc)) from exc
        return self._row_to_rule(row) if row else None

    def find_by_status(self, status: RuleStatus) -> List[PayeeCleanupRule]:
        try:
            rows = self.db.fetchall_dict(
                "SELECT * FROM payee_cleanup_rules WHERE status = ? ORDER BY created_at DESC, id",
                (status.name,),
            )
        except DB_ERRORS as exc:
            raise PersistenceError("find_by_status", str(exc)) from exc
        return [self._row_to_rule(row) for row in rows]

    def transition_status(
        self,
        rule_id: str,
        expected: RuleStatus,
        new_status: RuleStatus,
        modifications: Optional[Dict[str, Any]] = None,
    ) -> PayeeCleanupRule:
        changes = {k: v for k, v in (modifications or {}).items() if k in EDITABLE_FIELDS}
        if "pattern_type" in changes:
            changes["pattern_type"] = PatternType.parse(changes["pattern_type"]).name
        assignments = ["status = ?", "updated_at = ?"] + [f"{column} = ?" for column in changes]
        params = (new_status.name, _ts(utcnow()), *changes.values(), rule_id, expected.name)

        try:
            with self.db.transaction() as tx:
                updated = tx.execute(
                    f"UPDATE payee_cleanup_rules SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                    params,
                )
                row = tx.fetchone_dict("SELECT * FROM payee_cleanup_rules WHERE id = ?", (rule_id,))
        except DB_ERRORS as exc:
            raise PersistenceError("transition_status", str(exc)) from exc

        if row is None:
            raise RuleNotFoundError(rule_id)
        rule = self._row_to_rule(row)
        if updated != 1:
            raise InvalidRuleStateError(rule_id, rule.status.value, _ACTION_FOR_STATUS[new_status])
        return rule

    def update_rule_counters(
        self,
        rule_id: str,
        usage_delta: int,
        new_success_rate: Optional[float] = None,
    ) -> PayeeCleanupRule:
        sql = "UPDATE payee_cleanup_rules SET usage_count = usage_count + ?, updated_at = ?"
        params: tuple = (usage_delta, _ts(utcnow()))
        if new_success_rate is not None:
            sql += ", success_rate = ?"
            params += (min(1.0, max(0.0, new_success_rate)),)
        sql += " WHERE id = ?"
        params += (rule_id,)
        return self._update_and_fetch("update_rule_counters", rule_id, sql, params)

    def apply_feedback(self, rule_id: str, was_successful: bool) -> PayeeCleanupRule:
        # SET expressions all read the pre-update row, so success_rate uses the old usage_count.
        return self._update_and_fetch(
            "apply_feedback",
            rule_id,
            """
            UPDATE payee_cleanup_rules
            SET success_rate = (success_rate * usage_count + ?) / (usage_count + 1),
                usage_count = usage_count + 1,
                updated_at = ?
            WHERE id = ?
            """,
            (1.0 if was_successful else 0.0, _ts(utcnow()), rule_id),
        )

    def _update_and_fetch(self, operation: str, rule_id: str, sql: str, params: tuple) -> PayeeCleanupRule:
        try:
            with self.db.transaction() as tx:
                updated = tx.execute(sql, params)
                row = tx.fetchone_dict("SELECT * FROM payee_cleanup_rules WHERE id = ?", (rule_id,))
        except DB_ERRORS as exc:
            raise PersistenceError(operation, str(exc)) from exc
        if not updated or row is None:
            raise RuleNotFoundError(rule_id)
        return self._row_to_rule(row)

    # ------------------------------------------------------------------ #
    # Applications
    # ------------------------------------------------------------------ #
    def record_application(self, application: RuleApplication) -> bool:
        try:
            inserted = self.db.execute(
                """
                INSERT INTO payee_rule_applications (
                    id, rule_id, transaction_id, original_payee, cleaned_payee,
                    applied_at, feedback_status, feedback_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (transaction_id, rule_id) DO NOTHING
                """,
                (
                    application.id,
                    application.rule_id,
                    application.transaction_id,
                    application.original_payee,
                    application.cleaned_payee,
                    _ts(application.applied_at),
                    application.feedback_status.name if application.feedback_status else None,
                    _ts(application.feedback_at),
                ),
            )
        except DB_ERRORS as exc:
            raise PersistenceError("record_application", str(exc)) from exc
        return inserted == 1

    def mark_latest_application_feedback(
        self,
        rule_id: str,
        status: FeedbackStatus,
    ) -> Optional[RuleApplication]:
        try:
            with self.db.transaction() as tx:
                row = tx.fetchone_dict(
                    """
                    SELECT * FROM payee_rule_applications
                    WHERE rule_id = ? AND feedback_status IS NULL
                    ORDER BY applied_at DESC, id DESC
                    LIMIT 1
                    """,
                    (rule_id,),
                )
                if row is None:
                    return None
                feedback_at = utcnow()
                tx.execute(
                    "UPDATE payee_rule_applications SET feedback_status = ?, feedback_at = ? WHERE id = ?",
                    (status.name, _ts(feedback_at), row["id"]),
                )
        except DB_ERRORS as exc:
            raise PersistenceError("mark_latest_application_feedback", str(exc)) from exc
        row.update(feedback_status=status.name, feedback_at=_ts(feedback_at))
        return self._row_to_application(row)

    def list_applications(self, rule_id: Optional[str] = None) -> List[RuleApplication]:
        sql = "SELECT * FROM payee_rule_applications"
        params: tuple = ()
        if rule_id is not None:
            sql += " WHERE rule_id = ?"
            params = (rule_id,)
        sql += " ORDER BY applied_at DESC, id DESC"
        try:
            rows = self.db.fetchall_dict(sql, params)
        except DB_ERRORS as exc:
            raise PersistenceError("list_applications", str(exc)) from exc
        return [self._row_to_application(row) for row in rows]

    # ------------------------------------------------------------------ #
    # Reviews
    # ------------------------------------------------------------------ #
    def record_review(self, review: RuleReview) -> RuleReview:
        try:
            self.db.execute(
                "INSERT INTO payee_rule_reviews (id, rule_id, action, reason, created_at) VALUES (?, ?, ?, ?, ?)",
                (review.id, review.rule_id, review.action.name, review.reason, _ts(review.created_at)),
            )
        except DB_ERRORS as exc:
            raise PersistenceError("record_review", str(exc)) from exc
        return review

    def list_reviews(self, rule_id: str) -> List[RuleReview]:
        try:
            rows = self.db.fetchall_dict(
                "SELECT * FROM payee_rule_reviews WHERE rule_id = ? ORDER BY created_at, id",
                (rule_id,),
            )
        except DB_ERRORS as exc:
            raise PersistenceError("list_reviews", str(exc)) from exc
        return [
            RuleReview(
                id=row["id"],
                rule_id=row["rule_id"],
                action=RuleStatus[row["action"]],
                reason=row["reason"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------ #
    # Row mapping
    # ------------------------------------------------------------------ #
    @staticmethod
    def _row_to_rule(row: Dict[str, Any]) -> PayeeCleanupRule:
        return PayeeCleanupRule(
            id=row["id"],
            pattern=row["pattern"],
            pattern_type=PatternType[row["pattern_type"]],
            replacement=row["replacement"],
            confidence=float(row["confidence"]),
            generated_by=GeneratorType[row["generated_by"]],
            status=RuleStatus[row["status"]],
            usage_count=int(row["usage_count"]),
            success_rate=float(row["success_rate"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_application(row: Dict[str, Any]) -> RuleApplication:
        return RuleApplication(
            id=row["id"],
            rule_id=row["rule_id"],
            transaction_id=row["transaction_id"],
            original_payee=row["original_payee"],
            cleaned_payee=row["cleaned_payee"],
            applied_at=_parse_ts(row["applied_at"]),
            feedback_status=FeedbackStatus[row["feedback_status"]] if row["feedback_status"] else None,
            feedback_at=_parse_ts(row["feedback_at"]),
        )


class InMemoryRuleStore(RuleStore):
    """
    Process-local catalog for tests and single-worker deployments.

    A single lock guards every read-modify-write; reads return copies so
    callers never hold references into the store.
    """

    def __init__(self, rules: Optional[Iterable[PayeeCleanupRule]] = None) -> None:
        self._lock = threading.Lock()
        self._rules: Dict[str, PayeeCleanupRule] = {}
        self._applications: List[RuleApplication] = []
        self._reviews: List[RuleReview] = []
        for rule in rules or ():
            self.save(rule)

    def save(self, rule: PayeeCleanupRule) -> PayeeCleanupRule:
        with self._lock:
            if rule.id in self._rules:
                raise PersistenceError("save", f"Rule {rule.id} already exists")
            self._rules[rule.id] = rule.model_copy(deep=True)
        return rule

    def find_by_id(self, rule_id: str) -> Optional[PayeeCleanupRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy(deep=True) if rule else None

    def find_by_status(self, status: RuleStatus) -> List[PayeeCleanupRule]:
        with self._lock:
            rules = [r.model_copy(deep=True) for r in self._rules.values() if r.status == status]
        rules.sort(key=lambda r: r.id)
        rules.sort(key=lambda r: r.created_at, reverse=True)
        return rules

    def transition_status(
        self,
        rule_id: str,
        expected: RuleStatus,
        new_status: RuleStatus,
        modifications: Optional[Dict[str, Any]] = None,
    ) -> PayeeCleanupRule:
        changes = {k: v for k, v in (modifications or {}).items() if k in EDITABLE_FIELDS}
        if "pattern_type" in changes:
            changes["pattern_type"] = PatternType.parse(changes["pattern_type"])
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            if rule.status != expected:
                raise InvalidRuleStateError(rule_id, rule.status.value, _ACTION_FOR_STATUS[new_status])
            updated = rule.model_copy(update={**changes, "status": new_status, "updated_at": utcnow()})
            self._rules[rule_id] = updated
            return updated.model_copy(deep=True)

    def update_rule_counters(
        self,
        rule_id: str,
        usage_delta: int,
        new_success_rate: Optional[float] = None,
    ) -> PayeeCleanupRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            update: Dict[str, Any] = {"usage_count": rule.usage_count + usage_delta, "updated_at": utcnow()}
            if new_success_rate is not None:
                update["success_rate"] = min(1.0, max(0.0, new_success_rate))
            updated = rule.model_copy(update=update)
            self._rules[rule_id] = updated
            return updated.model_copy(deep=True)

    def apply_feedback(self, rule_id: str, was_successful: bool) -> PayeeCleanupRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise RuleNotFoundError(rule_id)
            updated = rule.model_copy(update={
                "success_rate": _success_rate_after(rule, was_successful),
                "usage_count": rule.usage_count + 1,
                "updated_at": utcnow(),
            })
            self._rules[rule_id] = updated
            return updated.model_copy(deep=True)

    def record_application(self, application: RuleApplication) -> bool:
        with self._lock:
            if application.rule_id is not None and any(
                a.rule_id == application.rule_id and a.transaction_id == application.transaction_id
                for a in self._applications
            ):
                return False
            self._applications.append(application.model_copy(deep=True))
            return True

    def mark_latest_application_feedback(
        self,
        rule_id: str,
        status: FeedbackStatus,
    ) -> Optional[RuleApplication]:
        with self._lock:
            candidates = [
                (i, a) for i, a in enumerate(self._applications)
                if a.rule_id == rule_id and a.feedback_status is None
            ]
            if not candidates:
                return None
            index, latest = max(candidates, key=lambda pair: (pair[1].applied_at, pair[0]))
            marked = latest.model_copy(update={"feedback_status": status, "feedback_at": utcnow()})
            self._applications[index] = marked
            return marked.model_copy(deep=True)

    def list_applications(self, rule_id: Optional[str] = None) -> List[RuleApplication]:
        with self._lock:
            indexed = [
                (i, a.model_copy(deep=True)) for i, a in enumerate(self._applications)
                if rule_id is None or a.rule_id == rule_id
            ]
        indexed.sort(key=lambda pair: (pair[1].applied_at, pair[0]), reverse=True)
        return [a for _, a in indexed]

    def record_review(self, review: RuleReview) -> RuleReview:
        with self._lock:
            self._reviews.append(review.model_copy(deep=True))
        return review

    def list_reviews(self, rule_id: str) -> List[RuleReview]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._reviews if r.rule_id == rule_id]
