"""
Rule matching for payee cleanup.

Pure functions over a snapshot of rules; nothing here touches storage.

Matching is case-sensitive on the raw payee string:
- EXACT: whole string equals the pattern
- CONTAINS: pattern occurs anywhere
- STARTS_WITH: payee begins with the pattern
- REGEX: re.search finds the pattern anywhere

Ranking when several approved rules match:
1. higher confidence
2. more specific pattern type (EXACT > STARTS_WITH > CONTAINS > REGEX)
3. older rule (earlier created_at)
4. rule id, so the order is total
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Pattern, Tuple

from payee_cleanup.models.rules import PatternType, PayeeCleanupRule, RuleStatus
from payee_cleanup.services.errors import ValidationError

logger = logging.getLogger(__name__)


class InvalidPatternError(Exception):
    """A stored regex rule that does not compile."""


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise InvalidPatternError(str(exc)) from exc


def _match_exact(rule: PayeeCleanupRule, payee: str) -> bool:
    return payee == rule.pattern


def _match_contains(rule: PayeeCleanupRule, payee: str) -> bool:
    return rule.pattern in payee


def _match_starts_with(rule: PayeeCleanupRule, payee: str) -> bool:
    return payee.startswith(rule.pattern)


def _match_regex(rule: PayeeCleanupRule, payee: str) -> bool:
    return compile_pattern(rule.pattern).search(payee) is not None


_MATCHERS: Dict[PatternType, Callable[[PayeeCleanupRule, str], bool]] = {
    PatternType.EXACT: _match_exact,
    PatternType.CONTAINS: _match_contains,
    PatternType.STARTS_WITH: _match_starts_with,
    PatternType.REGEX: _match_regex,
}

if set(_MATCHERS) != set(PatternType):  # pragma: no cover
    raise RuntimeError(f"No matcher for pattern types: {set(PatternType) - set(_MATCHERS)}")


@dataclass
class MatchOutcome:
    """Ranked matches for one payee, plus approved rules skipped because their regex is broken."""

    payee: str
    matches: List[PayeeCleanupRule] = field(default_factory=list)
    invalid_rules: List[PayeeCleanupRule] = field(default_factory=list)

    @property
    def winner(self) -> Optional[PayeeCleanupRule]:
        return self.matches[0] if self.matches else None


def rank_key(rule: PayeeCleanupRule) -> Tuple:
    """Sort key implementing the tie-break order; smallest key wins."""
    return (-rule.confidence, -rule.pattern_type.specificity, rule.created_at, rule.id)


def rule_matches(rule: PayeeCleanupRule, payee: str) -> bool:
    """Raises InvalidPatternError for a regex rule that does not compile."""
    return _MATCHERS[rule.pattern_type](rule, payee)


def find_matching_rules(payee: str, rules: Iterable[PayeeCleanupRule]) -> MatchOutcome:
    """
    Match ``payee`` against the approved rules in ``rules``.

    Rules in any other status are ignored, whatever the caller passes in.
    Broken regex rules never raise; they are logged and reported in
    ``invalid_rules``.
    """
    outcome = MatchOutcome(payee=payee)
    for rule in rules:
        if rule.status != RuleStatus.APPROVED:
            continue
        try:
            matched = rule_matches(rule, payee)
        except InvalidPatternError as exc:
            logger.warning("Skipping rule %s: invalid regex %r (%s)", rule.id, rule.pattern, exc)
            outcome.invalid_rules.append(rule)
            continue
        if matched:
            outcome.matches.append(rule)
    outcome.matches.sort(key=rank_key)
    return outcome


def apply_rule(rule: PayeeCleanupRule, payee: str) -> str:
    """
    Produce the cleaned payee for a rule that matched.

    EXACT, CONTAINS and STARTS_WITH replace the whole payee. REGEX replaces
    only the first match, literally (no group references), and trims the
    surrounding whitespace; a rule meant to rename the whole payee should
    use a pattern that spans it, e.g. ``^AMZN.*``.
    """
    if rule.pattern_type != PatternType.REGEX:
        return rule.replacement
    try:
        cleaned = compile_pattern(rule.pattern).sub(lambda _: rule.replacement, payee, count=1)
    except InvalidPatternError:
        return rule.replacement
    return cleaned.strip() or rule.replacement


def validate_rule_fields(pattern: str, pattern_type: PatternType, replacement: str) -> None:
    """Raise ValidationError unless the rule can be stored and matched."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise ValidationError("pattern", "Pattern must not be empty")
    if not isinstance(replacement, str) or not replacement.strip():
        raise ValidationError("replacement", "Replacement must not be empty")
    if pattern_type == PatternType.REGEX:
        try:
            compile_pattern(pattern)
        except InvalidPatternError as exc:
            raise ValidationError("pattern", f"Invalid regular expression: {exc}") from exc
