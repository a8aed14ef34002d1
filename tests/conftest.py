"""Shared fixtures for the payee cleanup tests."""
import os
import tempfile

import pytest

from payee_cleanup.models.rules import PatternType, PayeeCleanupRule, RuleDraft
from payee_cleanup.services.payee_cleanup import PayeeCleanupService
from payee_cleanup.services.rule_store import InMemoryRuleStore, SQLRuleStore


AMAZON_PAYEE = "AMAZON MKTPLC AMZN.CO.UK/PMTS 15OCT A1B2CD3E4"
UBER_PAYEE = "UBER TRIP HELP.UBER.COM 16OCT 12345"
UNKNOWN_PAYEE = "ACME STORE LONDON 19OCT REF859GBP22.50"


class FakeLLMClient:
    """Stands in for PayeeLLMClient with canned answers per merchant."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def cleanup_payee(self, original, context=None):
        self.calls.append((original, dict(context or {})))
        if self.error is not None:
            raise self.error
        if "AMAZON" in original:
            return "Amazon", RuleDraft(
                pattern="AMAZON", pattern_type=PatternType.CONTAINS, replacement="Amazon", confidence=0.95
            )
        if "UBER" in original:
            return "Uber", RuleDraft(
                pattern="UBER", pattern_type=PatternType.CONTAINS, replacement="Uber", confidence=0.9
            )
        if "ACME" in original:
            return "Acme Store", RuleDraft(
                pattern="ACME STORE", pattern_type=PatternType.CONTAINS, replacement="Acme Store", confidence=0.8
            )
        return original, None

    def health_check(self):
        if self.error is not None:
            raise self.error


def seed_rules():
    return [
        PayeeCleanupRule.new_from_human("AMAZON", PatternType.CONTAINS, "Amazon"),
        PayeeCleanupRule.new_from_human("UBER", PatternType.CONTAINS, "Uber"),
    ]


@pytest.fixture
def sqlite_path():
    handle = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    handle.close()
    yield handle.name
    os.unlink(handle.name)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, monkeypatch, sqlite_path):
    """Both catalog implementations, exercised through the same tests."""
    if request.param == "memory":
        return InMemoryRuleStore()
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return SQLRuleStore(db_path=sqlite_path)


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def service(store, fake_llm):
    for rule in seed_rules():
        store.save(rule)
    return PayeeCleanupService(store=store, llm_client=fake_llm, default_confidence=0.5)
