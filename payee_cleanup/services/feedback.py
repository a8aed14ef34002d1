"""
Feedback tracking for payee cleanup rules.

When a reviewer confirms or corrects a cleaned payee, the rule's counters
move with a count-weighted running average:

    success_rate' = (success_rate * usage_count + outcome) / (usage_count + 1)
    usage_count'  = usage_count + 1

with outcome 1 for a confirmation and 0 for a correction. Early feedback
weighs more; the rate stays inside [0, 1] because it is a mean of 0/1
outcomes seeded with a value already in range.
"""
import logging

from payee_cleanup.models.rules import FeedbackStatus, PayeeCleanupRule
from payee_cleanup.services.rule_store import RuleStore

logger = logging.getLogger(__name__)


class FeedbackTracker:
    def __init__(self, store: RuleStore):
        self.store = store

    def provide_feedback(self, rule_id: str, was_successful: bool) -> PayeeCleanupRule:
        """
        Fold one feedback signal into the rule and tag its latest unreviewed application.

        Raises RuleNotFoundError for an unknown rule.
        """
        rule = self.store.apply_feedback(rule_id, was_successful)
        status = FeedbackStatus.CORRECT if was_successful else FeedbackStatus.INCORRECT
        application = self.store.mark_latest_application_feedback(rule_id, status)

        logger.info(
            f"Feedback on rule {rule_id}: {status.value} "
            f"(success_rate={rule.success_rate:.3f}, usage_count={rule.usage_count}, "
            f"application={application.id if application else 'none'})"
        )
        return rule
