# tests/conftest.py
"""
Shared fixtures: a disposable SQLite DB per test (seeded with the default
routes), the internal secrets, and small factories for entries and jobs.
"""
import os

# must be set before rewrite_pipeline.db is imported (engine is built at import time)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_AS_JSON", "false")

import pytest

from rewrite_pipeline import db as dbmod
from rewrite_pipeline import store
from rewrite_pipeline.models import JournalEntry, MemberProfile, PreferencePublication
from rewrite_pipeline.utils import new_id

TEST_SECRET = "test-secret"


@pytest.fixture(autouse=True)
def fresh_db(tmp_path, monkeypatch):
    dbmod.reconfigure(f"sqlite:///{tmp_path}/rewrite_test.db")
    dbmod.init_db()
    store.seed_defaults()
    for name in ("CLASSIFIER_SHARED_SECRET", "ORCHESTRATOR_SHARED_SECRET", "WORKER_SHARED_SECRET"):
        monkeypatch.setenv(name, TEST_SECRET)
    monkeypatch.delenv("CLASSIFIER_FUNCTION_URL", raising=False)
    monkeypatch.delenv("ORCHESTRATOR_FUNCTION_URL", raising=False)
    yield
    dbmod.engine.dispose()


@pytest.fixture
def make_entry():
    """Insert a journal entry (+ recipient locale / preferences). Returns the orchestrator payload."""
    def _make(text="You left the kitchen a total mess again.", locale="en", preferences=None,
              recipient_on_entry=True):
        ids = {
            "entry_id": new_id(),
            "home_id": new_id(),
            "sender_user_id": new_id(),
            "recipient_user_id": new_id(),
        }
        with dbmod.session_scope() as s:
            s.add(JournalEntry(
                entry_id=ids["entry_id"],
                home_id=ids["home_id"],
                author_user_id=ids["sender_user_id"],
                recipient_user_id=ids["recipient_user_id"] if recipient_on_entry else None,
                comment=text,
            ))
            if locale is not None:
                s.add(MemberProfile(user_id=ids["recipient_user_id"], locale=locale))
            if preferences is not None:
                s.add(PreferencePublication(user_id=ids["recipient_user_id"], payload=preferences))
        return {**ids, "surface": "weekly_harmony"}
    return _make


@pytest.fixture
def make_job():
    """Create one rewrite request + job directly through the store. Returns the job dict."""
    def _make(execution_mode="async", max_attempts=2, target_locale="en", intent="request",
              provider="openai", adapter_kind="openai_responses",
              original_text="You left the kitchen a total mess again."):
        rid = new_id()
        recipient = new_id()
        routing = {
            "provider": provider,
            "adapter_kind": adapter_kind,
            "model": "gpt-5-nano",
            "prompt_version": "v1",
            "policy_version": "v1",
            "execution_mode": execution_mode,
            "max_retries": max_attempts,
        }
        context_pack = {"power": {"power_mode": "peer"}, "recipient_signals": []}
        policy = {"tone": "gentle", "directness": "soft", "emotional_temperature": "cool_down",
                  "rewrite_strength": "full_reframe"}
        blob = {"target_locale": target_locale, "intent": intent, "original_text": original_text,
                "context_pack": context_pack, "policy": policy}
        out = store.enqueue_rewrite(
            rewrite_request_id=rid,
            home_id=new_id(),
            sender_user_id=new_id(),
            recipient_user_id=recipient,
            recipient_snapshot_id=new_id(),
            recipient_preference_snapshot_id=new_id(),
            surface="weekly_harmony",
            original_text=original_text,
            rewrite_request=blob,
            classifier_result={"topics": ["cleanliness"]},
            context_pack=context_pack,
            policy=policy,
            source_locale="en",
            target_locale=target_locale,
            lane="same_language" if target_locale == "en" else "cross_language",
            topics=["cleanliness"],
            intent=intent,
            rewrite_strength="full_reframe",
            classifier_version="v1",
            context_pack_version="v1.1",
            policy_version="v1",
            routing_decision=routing,
            max_attempts=max_attempts,
        )
        return store.fetch_job(out["job_id"])
    return _make
