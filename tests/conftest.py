"""
Shared fixtures: a throwaway SQLite database per test, in-memory state
backends, and fakes for the two external edges (profile providers and the
OpenAI client).
"""
from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any

import pytest

from leadscore.core.config import settings
from leadscore.db import init_db
from leadscore.services.credit_ledger import CreditLedger
from leadscore.services.generation import ScoreGenerator
from leadscore.services.job_service import JobService
from leadscore.services.job_store import JobStore
from leadscore.services.lead_store import BusinessStore, LeadStore
from leadscore.services.metrics import MetricsRecorder
from leadscore.services.pipeline import AnalysisPipeline
from leadscore.services.profile_cache import MemoryCacheBackend, ProfileCache
from leadscore.services.progress import MemoryProgressBackend, ProgressHub
from leadscore.services.providers import FetchResult, data_quality

ACCOUNT = "acct_1"


async def no_sleep(_delay: float) -> None:
    return None


def make_profile(username: str = "nike", posts: int = 6, **overrides: Any) -> dict[str, Any]:
    profile = {
        "username": username,
        "display_name": username.title(),
        "bio": "Just do it.",
        "follower_count": 300_000_000,
        "following_count": 150,
        "post_count": 1200,
        "is_verified": True,
        "is_private": False,
        "is_business_account": True,
        "profile_pic_url": f"https://cdn.example.com/{username}.jpg",
        "external_url": "https://nike.com",
        "posts": [
            {
                "id": f"p{i}",
                "caption": f"Post {i} caption",
                "like_count": 1000 + i,
                "comment_count": 10 + i,
                "timestamp": "2026-01-01T00:00:00Z",
                "media_type": "photo",
            }
            for i in range(posts)
        ],
        "scraper_used": "profile_basic",
        "data_quality": data_quality(posts),
    }
    profile.update(overrides)
    return profile


# ─── Fakes ───────────────────────────────────────────────────────────────────

class FakeProviders:
    """Stands in for ProviderChain. Returns queued outcomes, then the default profile."""

    def __init__(self, outcomes: list | None = None, on_fetch=None):
        self.outcomes = list(outcomes or [])
        self.on_fetch = on_fetch
        self.calls: list[tuple[str, str]] = []

    async def fetch(self, subject_id: str, job_type: str) -> FetchResult:
        self.calls.append((subject_id, job_type))
        if self.on_fetch:
            await self.on_fetch(subject_id)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        profile = outcome or make_profile(subject_id)
        return FetchResult(profile=profile, provider="profile_basic", elapsed_ms=12.0, attempts=1)


def completion(content: str | None, finish_reason: str = "stop", prompt_tokens: int = 400, completion_tokens: int = 60):
    return SimpleNamespace(
        choices=[SimpleNamespace(
            message=SimpleNamespace(content=content, refusal=None),
            finish_reason=finish_reason,
        )],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


class FakeOpenAI:
    """Mimics ``AsyncOpenAI().chat.completions.create``. Items may be strings or exceptions."""

    def __init__(self, responses: list):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return completion(item)


def score_json(score: int = 82, summary: str = "Strong brand fit with an engaged audience.") -> str:
    return json.dumps({"score": score, "summary": summary})


# ─── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def sqlite_db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    monkeypatch.setattr(settings, "SQLITE_PATH", str(tmp_path / "leadscore_test.db"))
    init_db()
    yield


@pytest.fixture
def ledger():
    return CreditLedger()


@pytest.fixture
def jobs():
    return JobStore()


@pytest.fixture
def businesses():
    return BusinessStore()


@pytest.fixture
def hub():
    return ProgressHub(MemoryProgressBackend())


@pytest.fixture
def cache():
    return ProfileCache(MemoryCacheBackend())


@pytest.fixture
async def business_profile_id(businesses):
    return await businesses.create_profile(
        ACCOUNT,
        "Acme Running Co",
        business_one_liner="Performance running shoes",
        target_audience="Marathon runners",
        context={"outreach_goals": "Sponsored race-day content"},
    )


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def openai_client():
    return FakeOpenAI([score_json()])


@pytest.fixture
def generator(openai_client):
    return ScoreGenerator(client=openai_client, sleep=no_sleep)


@pytest.fixture
def pipeline(jobs, ledger, businesses, cache, providers, generator, hub):
    return AnalysisPipeline(
        jobs=jobs,
        ledger=ledger,
        businesses=businesses,
        leads=LeadStore(),
        cache=cache,
        providers=providers,
        generator=generator,
        progress=hub,
        metrics=MetricsRecorder(),
        sleep=no_sleep,
    )


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def job_service(jobs, ledger, businesses, hub, dispatched):
    async def dispatch(job_id: str) -> None:
        dispatched.append(job_id)
    return JobService(jobs, ledger, businesses, hub, dispatch)
