"""
Payee cleanup rule models.

A rule maps a noisy bank payee string to a clean payee name. Rules are
either authored by a person (approved on creation) or suggested by the
LLM fallback (pending until someone reviews them).
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Optional

from pydantic import BeforeValidator, Field, model_validator

from payee_cleanup.models.base import PCBaseModel, RawTextModel, UTCDateTime, new_id, utcnow


def _strip_text(value):
    return value.strip() if isinstance(value, str) else value


# Replacement names are display text; patterns are compared raw and are never trimmed.
TrimmedText = Annotated[str, BeforeValidator(_strip_text)]


class PatternType(str, Enum):
    """How a rule pattern is compared against the payee string."""
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    REGEX = "regex"

    @property
    def specificity(self) -> int:
        """Rank used to break confidence ties: higher is more specific."""
        return _SPECIFICITY[self]

    @classmethod
    def parse(cls, value: "str | PatternType") -> "PatternType":
        """
        Accept the enum value, the persisted upper-case name (STARTS_WITH)
        or the camel-case alias used by review forms (startsWith).
        """
        if isinstance(value, PatternType):
            return value
        key = str(value or "").strip()
        found = _ALIASES.get(key) or _ALIASES.get(key.lower())
        if found is None:
            raise ValueError(f"Unknown pattern type: {value!r}")
        return found


_SPECIFICITY = {
    PatternType.EXACT: 4,
    PatternType.STARTS_WITH: 3,
    PatternType.CONTAINS: 2,
    PatternType.REGEX: 1,
}

_ALIASES = {
    "exact": PatternType.EXACT,
    "contains": PatternType.CONTAINS,
    "starts_with": PatternType.STARTS_WITH,
    "startswith": PatternType.STARTS_WITH,
    "startsWith": PatternType.STARTS_WITH,
    "regex": PatternType.REGEX,
}


class GeneratorType(str, Enum):
    """Who produced a rule."""
    LLM = "llm"
    HUMAN = "human"


class RuleStatus(str, Enum):
    """Review lifecycle. Only approved rules take part in matching."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class FeedbackStatus(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"


class PayeeCleanupRule(RawTextModel):
    """
    A pattern -> replacement mapping for payee names.

    The pattern is kept verbatim, surrounding spaces included, because it is
    compared against the raw payee text. Only the replacement is trimmed.
    """

    id: str = Field(default_factory=new_id)
    pattern: str = Field(min_length=1)
    pattern_type: PatternType
    replacement: TrimmedText = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    generated_by: GeneratorType
    status: RuleStatus
    usage_count: int = Field(default=0, ge=0)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: Optional[UTCDateTime] = None

    @classmethod
    def new_from_human(
        cls,
        pattern: str,
        pattern_type: PatternType,
        replacement: str,
    ) -> "PayeeCleanupRule":
        """Human-authored rules are trusted immediately."""
        now = utcnow()
        return cls(
            pattern=pattern,
            pattern_type=pattern_type,
            replacement=replacement,
            confidence=1.0,
            generated_by=GeneratorType.HUMAN,
            status=RuleStatus.APPROVED,
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def new_from_llm(
        cls,
        pattern: str,
        pattern_type: PatternType,
        replacement: str,
        confidence: float,
    ) -> "PayeeCleanupRule":
        """LLM suggestions wait for review before they are used."""
        now = utcnow()
        return cls(
            pattern=pattern,
            pattern_type=pattern_type,
            replacement=replacement,
            confidence=confidence,
            generated_by=GeneratorType.LLM,
            status=RuleStatus.PENDING,
            created_at=now,
            updated_at=now,
        )


class RuleDraft(RawTextModel):
    """Candidate rule suggested by the LLM, not yet persisted."""

    pattern: str = Field(min_length=1)
    pattern_type: PatternType
    replacement: TrimmedText = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    explanation: Optional[str] = None

    def to_rule(self) -> PayeeCleanupRule:
        return PayeeCleanupRule.new_from_llm(
            pattern=self.pattern,
            pattern_type=self.pattern_type,
            replacement=self.replacement,
            confidence=self.confidence,
        )


class RuleApplication(RawTextModel):
    """
    Append-only audit record of one cleanup.

    rule_id is None when no rule matched and the LLM produced the name.
    """

    id: str = Field(default_factory=new_id)
    rule_id: Optional[str] = None
    transaction_id: str = Field(min_length=1)
    original_payee: str
    cleaned_payee: str
    applied_at: UTCDateTime = Field(default_factory=utcnow)
    feedback_status: Optional[FeedbackStatus] = None
    feedback_at: Optional[UTCDateTime] = None


class RuleReview(PCBaseModel):
    """Approve/reject decision kept for audit."""

    id: str = Field(default_factory=new_id)
    rule_id: str
    action: RuleStatus
    reason: Optional[str] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)


class PayeeCleanupResult(RawTextModel):
    """Outcome of a single cleanup call. Not persisted."""

    original: str
    cleaned: str
    confidence: float = Field(ge=0.0, le=1.0)
    applied_rule: Optional[PayeeCleanupRule] = None
    generated_rule: Optional[PayeeCleanupRule] = None

    @model_validator(mode="after")
    def _exactly_one_rule(self) -> "PayeeCleanupResult":
        if (self.applied_rule is None) == (self.generated_rule is None):
            raise ValueError("A cleanup result carries exactly one of applied_rule or generated_rule")
        return self
