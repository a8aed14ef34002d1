"""
Tests for rule matching and tie-breaking.
"""
from datetime import datetime, timedelta, timezone

import pytest

from payee_cleanup.models.rules import GeneratorType, PatternType, PayeeCleanupRule, RuleStatus
from payee_cleanup.services.errors import ValidationError
from payee_cleanup.services.rule_matcher import (
    apply_rule,
    find_matching_rules,
    rank_key,
    validate_rule_fields,
)

BASE_TIME = datetime(2026, 1, 9, 12, 0, tzinfo=timezone.utc)


def make_rule(
    pattern,
    pattern_type=PatternType.CONTAINS,
    replacement="Clean",
    confidence=1.0,
    status=RuleStatus.APPROVED,
    age_minutes=0,
    rule_id=None,
):
    kwargs = {}
    if rule_id:
        kwargs["id"] = rule_id
    return PayeeCleanupRule(
        pattern=pattern,
        pattern_type=pattern_type,
        replacement=replacement,
        confidence=confidence,
        generated_by=GeneratorType.HUMAN,
        status=status,
        created_at=BASE_TIME - timedelta(minutes=age_minutes),
        **kwargs,
    )


class TestPatternSemantics:
    """Each pattern type matches the way its name says, case-sensitively."""

    def test_exact_requires_full_string(self):
        rule = make_rule("STARBUCKS", PatternType.EXACT)
        assert find_matching_rules("STARBUCKS", [rule]).matches == [rule]
        assert find_matching_rules("STARBUCKS LONDON", [rule]).matches == []

    def test_contains_matches_substring(self):
        rule = make_rule("AMAZON")
        assert find_matching_rules("AMAZON MKTPLC AMZN.CO.UK/PMTS 15OCT A1B2CD3E4", [rule]).winner == rule

    def test_starts_with_requires_prefix(self):
        rule = make_rule("UBER", PatternType.STARTS_WITH)
        assert find_matching_rules("UBER TRIP 16OCT", [rule]).winner == rule
        assert find_matching_rules("PAYMENT UBER TRIP", [rule]).winner is None

    def test_regex_searches_anywhere(self):
        rule = make_rule(r"AMZN\s+MKTP", PatternType.REGEX)
        assert find_matching_rules("CARD 1234 AMZN  MKTP US", [rule]).winner == rule

    def test_matching_is_case_sensitive(self):
        rule = make_rule("amazon")
        assert find_matching_rules("AMAZON MKTPLC", [rule]).matches == []

    def test_only_approved_rules_match(self):
        pending = make_rule("AMAZON", status=RuleStatus.PENDING)
        rejected = make_rule("AMAZON", status=RuleStatus.REJECTED)
        assert find_matching_rules("AMAZON MKTPLC", [pending, rejected]).matches == []

    def test_invalid_regex_is_flagged_not_raised(self):
        broken = make_rule("AMAZON(", PatternType.REGEX)
        good = make_rule("AMAZON")

        outcome = find_matching_rules("AMAZON MKTPLC", [broken, good])

        assert outcome.matches == [good]
        assert outcome.invalid_rules == [broken]


class TestTieBreak:
    """Confidence first, then pattern specificity, then the oldest rule."""

    def test_higher_confidence_wins(self):
        low = make_rule("AMAZON", PatternType.EXACT, confidence=0.8)
        high = make_rule("AMA", PatternType.REGEX, confidence=0.9)
        assert find_matching_rules("AMAZON", [low, high]).winner == high

    def test_specificity_breaks_confidence_tie(self):
        rules = [
            make_rule("AMA", PatternType.REGEX, replacement="regex"),
            make_rule("ZON", PatternType.CONTAINS, replacement="contains"),
            make_rule("AMAZON", PatternType.EXACT, replacement="exact"),
            make_rule("AMA", PatternType.STARTS_WITH, replacement="starts"),
        ]

        outcome = find_matching_rules("AMAZON", rules)

        assert [r.replacement for r in outcome.matches] == ["exact", "starts", "contains", "regex"]

    def test_oldest_rule_wins_full_tie(self):
        newer = make_rule("AMAZON", age_minutes=1, replacement="newer")
        older = make_rule("AMAZON", age_minutes=10, replacement="older")
        assert find_matching_rules("AMAZON MKTPLC", [newer, older]).winner == older

    def test_winner_is_independent_of_input_order(self):
        rules = [
            make_rule("AMAZON", confidence=0.9, rule_id="b"),
            make_rule("AMAZON", confidence=0.9, rule_id="a"),
            make_rule("AMAZON MK", PatternType.STARTS_WITH, confidence=0.9, rule_id="c"),
        ]
        winners = {
            find_matching_rules("AMAZON MKTPLC", ordering).winner.id
            for ordering in (rules, rules[::-1], rules[1:] + rules[:1])
        }
        assert winners == {"c"}

    def test_rank_key_uses_id_as_last_resort(self):
        a = make_rule("X", rule_id="a")
        b = make_rule("X", rule_id="b")
        assert rank_key(a) < rank_key(b)

    def test_naive_timestamps_rank_as_utc(self):
        legacy = PayeeCleanupRule(
            pattern="A",
            pattern_type=PatternType.CONTAINS,
            replacement="Legacy",
            confidence=1.0,
            generated_by=GeneratorType.HUMAN,
            status=RuleStatus.APPROVED,
            created_at=datetime(2020, 1, 1),
        )
        fresh = PayeeCleanupRule.new_from_human("A", PatternType.CONTAINS, "Fresh")

        outcome = find_matching_rules("A", [fresh, legacy])

        assert legacy.created_at.tzinfo is not None
        assert outcome.winner == legacy


class TestApplyRule:
    def test_non_regex_rules_replace_whole_payee(self):
        for pattern_type in (PatternType.EXACT, PatternType.CONTAINS, PatternType.STARTS_WITH):
            rule = make_rule("AMAZON", pattern_type, replacement="Amazon")
            assert apply_rule(rule, "AMAZON MKTPLC 15OCT") == "Amazon"

    def test_regex_replaces_first_match_only(self):
        rule = make_rule(r"\d+", PatternType.REGEX, replacement="#")
        assert apply_rule(rule, "SHOP 123 REF 456") == "SHOP # REF 456"

    def test_regex_replacement_is_literal(self):
        rule = make_rule(r"(AMZN).*", PatternType.REGEX, replacement=r"Amazon \1")
        assert apply_rule(rule, "AMZN MKTP US") == r"Amazon \1"

    def test_regex_spanning_pattern_renames_whole_payee(self):
        rule = make_rule(r"^AMZN.*$", PatternType.REGEX, replacement="Amazon")
        assert apply_rule(rule, "AMZN MKTP US*2K4 AMZN.COM/BILL") == "Amazon"

    def test_regex_result_is_trimmed(self):
        rule = make_rule(r"\s*REF\d+$", PatternType.REGEX, replacement="x")
        rule = rule.model_copy(update={"replacement": " "})
        assert apply_rule(rule, "ACME REF859") == "ACME"


class TestValidateRuleFields:
    def test_rejects_empty_pattern(self):
        with pytest.raises(ValidationError) as exc:
            validate_rule_fields("  ", PatternType.CONTAINS, "Acme")
        assert exc.value.context["field"] == "pattern"

    def test_rejects_empty_replacement(self):
        with pytest.raises(ValidationError) as exc:
            validate_rule_fields("ACME", PatternType.CONTAINS, "")
        assert exc.value.context["field"] == "replacement"

    def test_rejects_invalid_regex(self):
        with pytest.raises(ValidationError):
            validate_rule_fields("ACME[", PatternType.REGEX, "Acme")

    def test_unbalanced_text_is_fine_for_plain_patterns(self):
        validate_rule_fields("ACME[", PatternType.CONTAINS, "Acme")
