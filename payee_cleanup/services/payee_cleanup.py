"""
Payee Cleanup Service

Turns noisy bank payee strings into clean payee names.

Flow for a single payee:
1. Match against approved rules; the best match wins (see rule_matcher).
2. No match: ask the LLM for a cleaned name. Its rule suggestion (or, when
   it has none, an exact-match rule for this payee) is saved as PENDING
   and only used for matching after someone approves it.
3. Every cleanup is recorded as a RuleApplication for audit and feedback.

Errors are never swallowed here: LLM failures propagate typed, and a
candidate rule that fails to persist fails the whole call.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from payee_cleanup.models.rules import (
    PatternType,
    PayeeCleanupResult,
    PayeeCleanupRule,
    RuleApplication,
    RuleDraft,
    RuleReview,
    RuleStatus,
)
from payee_cleanup.services.errors import (
    InvalidRuleStateError,
    LLMError,
    RuleNotFoundError,
    ValidationError,
)
from payee_cleanup.services.feedback import FeedbackTracker
from payee_cleanup.services.llm_client import DEFAULT_CONFIDENCE, PayeeLLMClient
from payee_cleanup.services.logging import log_cleanup, log_error
from payee_cleanup.services.rule_matcher import (
    MatchOutcome,
    apply_rule,
    find_matching_rules,
    validate_rule_fields,
)
from payee_cleanup.services.rule_store import RuleStore, SQLRuleStore

logger = logging.getLogger(__name__)

_MODIFICATION_KEYS = {
    "pattern": "pattern",
    "replacement": "replacement",
    "pattern_type": "pattern_type",
    "patternType": "pattern_type",
}


class PayeeCleanupService:
    """
    Facade used by the transaction pipeline and the rule review surface.

    Usage:
        service = PayeeCleanupService(store=SQLRuleStore(), llm_client=PayeeLLMClient())
        result = service.cleanup_payee("AMAZON MKTPLC AMZN.CO.UK/PMTS", {"transaction_id": "tx_1"})
        if result.generated_rule:
            service.approve_rule(result.generated_rule.id)
    """

    def __init__(
        self,
        store: Optional[RuleStore] = None,
        llm_client: Optional[PayeeLLMClient] = None,
        default_confidence: Optional[float] = None,
    ):
        self.store = store if store is not None else SQLRuleStore()
        self.llm_client = llm_client if llm_client is not None else PayeeLLMClient()
        self.default_confidence = (
            DEFAULT_CONFIDENCE if default_confidence is None else default_confidence
        )
        self.feedback = FeedbackTracker(self.store)

    # ------------------------------------------------------------------ #
    # Cleanup
    # ------------------------------------------------------------------ #
    def cleanup_payee(
        self,
        original: str,
        context: Optional[Dict[str, str]] = None,
    ) -> PayeeCleanupResult:
        """
        Clean a raw payee name.

        Args:
            original: Payee string exactly as it appears on the transaction
            context: Extra transaction details passed to the LLM. The
                     "transaction_id" entry, when present, is the correlation
                     key for the application record.

        Returns:
            PayeeCleanupResult with exactly one of applied_rule / generated_rule.

        Raises:
            ValidationError: original is empty
            LLMError: no rule matched and the LLM call failed
            PersistenceError: the catalog could not record the outcome
        """
        if not original or not original.strip():
            raise ValidationError("original", "Payee name must not be empty")
        context = dict(context or {})
        transaction_id = context.get("transaction_id") or str(uuid.uuid4())

        outcome = self.match(original)
        if outcome.winner is not None:
            return self._apply_matched_rule(original, outcome.winner, transaction_id)
        return self._cleanup_with_llm(original, context, transaction_id)

    def _apply_matched_rule(
        self,
        original: str,
        rule: PayeeCleanupRule,
        transaction_id: str,
    ) -> PayeeCleanupResult:
        cleaned = apply_rule(rule, original)
        recorded = self.store.record_application(
            RuleApplication(
                rule_id=rule.id,
                transaction_id=transaction_id,
                original_payee=original,
                cleaned_payee=cleaned,
            )
        )
        if recorded:
            rule = self.store.update_rule_counters(rule.id, usage_delta=1)
        else:
            logger.info(f"Rule {rule.id} already applied to transaction {transaction_id}; usage unchanged")

        log_cleanup(original, cleaned, "rule", transaction_id, rule_id=rule.id, counted=recorded)
        return PayeeCleanupResult(
            original=original,
            cleaned=cleaned,
            confidence=rule.confidence,
            applied_rule=rule,
        )

    def _cleanup_with_llm(
        self,
        original: str,
        context: Dict[str, str],
        transaction_id: str,
    ) -> PayeeCleanupResult:
        try:
            cleaned, draft = self.llm_client.cleanup_payee(original, context)
        except LLMError as exc:
            if exc.retryable:
                logger.warning(f"LLM cleanup failed for {original!r} ({exc.code.value}): {exc.detail}")
            else:
                log_error(
                    exc.code.value,
                    "LLM cleanup failed",
                    context={
                        "original_payee": original,
                        "transaction_id": transaction_id,
                        "provider": exc.provider,
                        "detail": exc.detail,
                    },
                    exception=exc,
                )
            raise

        if draft is None:
            draft = RuleDraft(
                pattern=original,
                pattern_type=PatternType.EXACT,
                replacement=cleaned,
                confidence=self.default_confidence,
                explanation="Exact mapping of the original payee to the LLM answer",
            )

        # Save the candidate before recording anything that refers to it.
        generated = self.store.save(draft.to_rule())
        self.store.record_application(
            RuleApplication(
                rule_id=None,
                transaction_id=transaction_id,
                original_payee=original,
                cleaned_payee=cleaned,
            )
        )
        log_cleanup(
            original,
            cleaned,
            "llm",
            transaction_id,
            pending_rule_id=generated.id,
            pattern_type=generated.pattern_type.value,
            pattern=generated.pattern,
        )
        return PayeeCleanupResult(
            original=original,
            cleaned=cleaned,
            confidence=draft.confidence,
            generated_rule=generated,
        )

    # ------------------------------------------------------------------ #
    # Matching
    # ------------------------------------------------------------------ #
    def match(self, payee_name: str) -> MatchOutcome:
        """Full matcher outcome over the current approved snapshot."""
        return find_matching_rules(payee_name, self.store.find_by_status(RuleStatus.APPROVED))

    def find_matching_rules(self, payee_name: str) -> List[PayeeCleanupRule]:
        """All approved rules matching the payee, best first."""
        return self.match(payee_name).matches

    # ------------------------------------------------------------------ #
    # Rule lifecycle
    # ------------------------------------------------------------------ #
    def get_pending_rules(self) -> List[PayeeCleanupRule]:
        return self.store.find_by_status(RuleStatus.PENDING)

    def get_approved_rules(self) -> List[PayeeCleanupRule]:
        return self.store.find_by_status(RuleStatus.APPROVED)

    def get_rule(self, rule_id: str) -> PayeeCleanupRule:
        rule = self.store.find_by_id(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def get_rule_applications(self, rule_id: str) -> List[RuleApplication]:
        self.get_rule(rule_id)
        return self.store.list_applications(rule_id)

    def get_rule_reviews(self, rule_id: str) -> List[RuleReview]:
        self.get_rule(rule_id)
        return self.store.list_reviews(rule_id)

    def create_rule(
        self,
        pattern: str,
        pattern_type: PatternType,
        replacement: str,
    ) -> PayeeCleanupRule:
        """Create a human-authored rule; it is approved and matchable immediately."""
        try:
            pattern_type = PatternType.parse(pattern_type)
        except ValueError as exc:
            raise ValidationError("pattern_type", str(exc)) from exc
        validate_rule_fields(pattern, pattern_type, replacement)

        rule = self.store.save(PayeeCleanupRule.new_from_human(pattern, pattern_type, replacement))
        logger.info(f"Created rule {rule.id}: {pattern_type.value} {pattern!r} -> {replacement!r}")
        return rule

    def approve_rule(
        self,
        rule_id: str,
        modifications: Optional[Dict[str, Any]] = None,
    ) -> PayeeCleanupRule:
        """
        Approve a pending rule, optionally editing pattern, pattern_type or
        replacement first. The rule is matchable as soon as this returns.
        """
        rule = self._get_pending(rule_id, "approve")
        changes = self._validated_modifications(rule, modifications or {})

        approved = self.store.transition_status(
            rule_id, RuleStatus.PENDING, RuleStatus.APPROVED, changes
        )
        self.store.record_review(RuleReview(rule_id=rule_id, action=RuleStatus.APPROVED))
        logger.info(f"Approved rule {rule_id}" + (f" with changes {sorted(changes)}" if changes else ""))
        return approved

    def reject_rule(self, rule_id: str, reason: Optional[str] = None) -> PayeeCleanupRule:
        """Reject a pending rule. The reason is kept for audit only."""
        self._get_pending(rule_id, "reject")
        rejected = self.store.transition_status(rule_id, RuleStatus.PENDING, RuleStatus.REJECTED)
        self.store.record_review(RuleReview(rule_id=rule_id, action=RuleStatus.REJECTED, reason=reason))
        logger.info(f"Rejected rule {rule_id}" + (f": {reason}" if reason else ""))
        return rejected

    def provide_feedback(self, rule_id: str, was_successful: bool) -> PayeeCleanupRule:
        return self.feedback.provide_feedback(rule_id, was_successful)

    def health_check(self) -> None:
        self.llm_client.health_check()

    def _get_pending(self, rule_id: str, action: str) -> PayeeCleanupRule:
        rule = self.get_rule(rule_id)
        if rule.status != RuleStatus.PENDING:
            raise InvalidRuleStateError(rule_id, rule.status.value, action)
        return rule

    def _validated_modifications(
        self,
        rule: PayeeCleanupRule,
        modifications: Dict[str, Any],
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for key, value in modifications.items():
            field = _MODIFICATION_KEYS.get(key)
            if field is None:
                raise ValidationError(key, "Only pattern, pattern_type and replacement can be modified")
            # Patterns are matched against raw payee text, so only the replacement is trimmed.
            changes[field] = value.strip() if isinstance(value, str) and field == "replacement" else value

        if "pattern_type" in changes:
            try:
                changes["pattern_type"] = PatternType.parse(changes["pattern_type"])
            except ValueError as exc:
                raise ValidationError("pattern_type", str(exc)) from exc

        validate_rule_fields(
            changes.get("pattern", rule.pattern),
            changes.get("pattern_type", rule.pattern_type),
            changes.get("replacement", rule.replacement),
        )
        return changes
