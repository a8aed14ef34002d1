# Lazy imports to avoid dependency chains at startup
def __getattr__(name):
    if name == "PayeeCleanupService":
        from payee_cleanup.services.payee_cleanup import PayeeCleanupService
        return PayeeCleanupService
    elif name == "PayeeLLMClient":
        from payee_cleanup.services.llm_client import PayeeLLMClient
        return PayeeLLMClient
    elif name == "LLMConfig":
        from payee_cleanup.services.llm_client import LLMConfig
        return LLMConfig
    elif name == "SQLRuleStore":
        from payee_cleanup.services.rule_store import SQLRuleStore
        return SQLRuleStore
    elif name == "InMemoryRuleStore":
        from payee_cleanup.services.rule_store import InMemoryRuleStore
        return InMemoryRuleStore
    elif name == "FeedbackTracker":
        from payee_cleanup.services.feedback import FeedbackTracker
        return FeedbackTracker
    raise AttributeError(f"module 'payee_cleanup.services' has no attribute '{name}'")
