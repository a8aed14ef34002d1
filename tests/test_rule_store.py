"""
Tests for the rule catalog stores (in-memory and SQLite).

The ``store`` fixture runs every test against both implementations.
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from payee_cleanup.models.rules import (
    FeedbackStatus,
    PatternType,
    PayeeCleanupRule,
    RuleApplication,
    RuleReview,
    RuleStatus,
)
from payee_cleanup.services.errors import (
    InvalidRuleStateError,
    PersistenceError,
    RuleNotFoundError,
)
from payee_cleanup.services.rule_store import SQLRuleStore


def llm_rule(pattern="ACME STORE", replacement="Acme Store", confidence=0.8):
    return PayeeCleanupRule.new_from_llm(pattern, PatternType.CONTAINS, replacement, confidence)


class TestRuleCrud:
    def test_save_and_find_by_id_round_trip(self, store):
        rule = llm_rule()
        store.save(rule)

        found = store.find_by_id(rule.id)

        assert found == rule

    def test_find_unknown_id_returns_none(self, store):
        assert store.find_by_id("missing") is None

    def test_duplicate_id_is_rejected(self, store):
        rule = llm_rule()
        store.save(rule)
        with pytest.raises(PersistenceError):
            store.save(rule)

    def test_find_by_status_newest_first(self, store):
        now = datetime.now(timezone.utc)
        old = llm_rule("OLD").model_copy(update={"created_at": now - timedelta(days=2)})
        mid = llm_rule("MID").model_copy(update={"created_at": now - timedelta(days=1)})
        new = llm_rule("NEW").model_copy(update={"created_at": now})
        approved = PayeeCleanupRule.new_from_human("HUMAN", PatternType.EXACT, "Human")
        for rule in (mid, old, approved, new):
            store.save(rule)

        pending = store.find_by_status(RuleStatus.PENDING)

        assert [r.pattern for r in pending] == ["NEW", "MID", "OLD"]
        assert [r.id for r in store.find_by_status(RuleStatus.APPROVED)] == [approved.id]


class TestStatusTransitions:
    def test_transition_applies_modifications(self, store):
        rule = store.save(llm_rule())

        approved = store.transition_status(
            rule.id,
            RuleStatus.PENDING,
            RuleStatus.APPROVED,
            {"pattern": "ACME", "pattern_type": PatternType.STARTS_WITH},
        )

        assert approved.status == RuleStatus.APPROVED
        assert approved.pattern == "ACME"
        assert approved.pattern_type == PatternType.STARTS_WITH
        assert approved.replacement == "Acme Store"
        assert store.find_by_id(rule.id) == approved

    def test_transition_from_wrong_state_fails_and_keeps_state(self, store):
        rule = store.save(llm_rule())
        store.transition_status(rule.id, RuleStatus.PENDING, RuleStatus.REJECTED)

        with pytest.raises(InvalidRuleStateError):
            store.transition_status(rule.id, RuleStatus.PENDING, RuleStatus.APPROVED)

        assert store.find_by_id(rule.id).status == RuleStatus.REJECTED

    def test_transition_unknown_rule(self, store):
        with pytest.raises(RuleNotFoundError):
            store.transition_status("missing", RuleStatus.PENDING, RuleStatus.APPROVED)


class TestCounters:
    def test_update_rule_counters(self, store):
        rule = store.save(llm_rule())

        updated = store.update_rule_counters(rule.id, usage_delta=2, new_success_rate=0.25)

        assert updated.usage_count == 2
        assert updated.success_rate == pytest.approx(0.25)

    def test_update_counters_clamps_success_rate(self, store):
        rule = store.save(llm_rule())
        assert store.update_rule_counters(rule.id, 0, new_success_rate=1.7).success_rate == 1.0

    def test_update_counters_unknown_rule(self, store):
        with pytest.raises(RuleNotFoundError):
            store.update_rule_counters("missing", 1)

    def test_apply_feedback_running_average(self, store):
        rule = store.save(llm_rule())

        first = store.apply_feedback(rule.id, False)
        second = store.apply_feedback(rule.id, True)

        # (1.0 * 0 + 0) / 1 = 0.0, then (0.0 * 1 + 1) / 2 = 0.5
        assert first.success_rate == pytest.approx(0.0)
        assert first.usage_count == 1
        assert second.success_rate == pytest.approx(0.5)
        assert second.usage_count == 2

    def test_apply_feedback_unknown_rule(self, store):
        with pytest.raises(RuleNotFoundError):
            store.apply_feedback("missing", True)


class TestApplications:
    def test_duplicate_transaction_rule_pair_is_ignored(self, store):
        rule = store.save(llm_rule())
        app = RuleApplication(rule_id=rule.id, transaction_id="tx_1", original_payee="ACME", cleaned_payee="Acme")
        again = RuleApplication(rule_id=rule.id, transaction_id="tx_1", original_payee="ACME", cleaned_payee="Acme")

        assert store.record_application(app) is True
        assert store.record_application(again) is False
        assert len(store.list_applications(rule.id)) == 1

    def test_applications_without_rule_are_never_deduplicated(self, store):
        for _ in range(2):
            store.record_application(
                RuleApplication(rule_id=None, transaction_id="tx_1", original_payee="X", cleaned_payee="Y")
            )
        assert len(store.list_applications()) == 2

    def test_mark_latest_application_feedback(self, store):
        rule = store.save(llm_rule())
        now = datetime.now(timezone.utc)
        older = RuleApplication(
            rule_id=rule.id, transaction_id="tx_1", original_payee="A", cleaned_payee="B",
            applied_at=now - timedelta(minutes=5),
        )
        newer = RuleApplication(
            rule_id=rule.id, transaction_id="tx_2", original_payee="A", cleaned_payee="B", applied_at=now,
        )
        store.record_application(older)
        store.record_application(newer)

        first = store.mark_latest_application_feedback(rule.id, FeedbackStatus.CORRECT)
        second = store.mark_latest_application_feedback(rule.id, FeedbackStatus.INCORRECT)
        third = store.mark_latest_application_feedback(rule.id, FeedbackStatus.CORRECT)

        assert first.id == newer.id and first.feedback_status == FeedbackStatus.CORRECT
        assert second.id == older.id and second.feedback_status == FeedbackStatus.INCORRECT
        assert second.feedback_at is not None
        assert third is None

    def test_reviews_keep_reason(self, store):
        rule = store.save(llm_rule())
        store.record_review(RuleReview(rule_id=rule.id, action=RuleStatus.REJECTED, reason="Too broad"))

        reviews = store.list_reviews(rule.id)

        assert [(r.action, r.reason) for r in reviews] == [(RuleStatus.REJECTED, "Too broad")]


class TestSQLStoreConcurrency:
    """Per-rule atomicity under concurrent writers on a shared SQLite file."""

    def setup_method(self):
        self.errors = []

    def _run_threads(self, target, count):
        threads = [threading.Thread(target=target) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    def test_only_one_concurrent_approval_wins(self, sqlite_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        store = SQLRuleStore(db_path=sqlite_path)
        rule = store.save(llm_rule())
        outcomes = []

        def approve():
            try:
                store.transition_status(rule.id, RuleStatus.PENDING, RuleStatus.APPROVED)
                outcomes.append("approved")
            except InvalidRuleStateError:
                outcomes.append("conflict")

        self._run_threads(approve, 8)

        assert sorted(outcomes) == ["approved"] + ["conflict"] * 7

    def test_concurrent_feedback_is_not_lost(self, sqlite_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        store = SQLRuleStore(db_path=sqlite_path)
        rule = store.save(llm_rule())

        self._run_threads(lambda: store.apply_feedback(rule.id, True), 10)

        final = store.find_by_id(rule.id)
        assert final.usage_count == 10
        assert final.success_rate == pytest.approx(1.0)
