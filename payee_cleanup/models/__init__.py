from payee_cleanup.models.base import PCBaseModel, RawTextModel
from payee_cleanup.models.rules import (
    FeedbackStatus,
    GeneratorType,
    PatternType,
    PayeeCleanupResult,
    PayeeCleanupRule,
    RuleApplication,
    RuleDraft,
    RuleReview,
    RuleStatus,
)

__all__ = [
    "FeedbackStatus",
    "GeneratorType",
    "PCBaseModel",
    "PatternType",
    "RawTextModel",
    "PayeeCleanupResult",
    "PayeeCleanupRule",
    "RuleApplication",
    "RuleDraft",
    "RuleReview",
    "RuleStatus",
]
