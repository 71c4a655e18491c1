from __future__ import annotations
from enum import Enum
from pydantic import BaseModel


class JobType(str, Enum):
    LIGHT = "light"
    DEEP = "deep"


class FreshnessTier(str, Enum):
    """Named cache-TTL profiles. Coarser tiers tolerate older data."""
    STANDARD = "standard"
    FRESH = "fresh"


TIER_TTL_SECONDS: dict[FreshnessTier, int] = {
    FreshnessTier.STANDARD: 24 * 60 * 60,
    FreshnessTier.FRESH: 6 * 60 * 60,
}


def ttl_for_tier(tier: FreshnessTier) -> int:
    return TIER_TTL_SECONDS[FreshnessTier(tier)]


class JobTypeProfile(BaseModel):
    """
    Cost, cache and generation settings for one job type.
    """
    # ─── Pricing ─────────────────────────────────────────────────────────────
    credit_cost: int = 1
    scraping_cost_usd: float = 0.003

    # ─── Data ────────────────────────────────────────────────────────────────
    posts_limit: int = 12
    freshness_tier: FreshnessTier = FreshnessTier.STANDARD

    # ─── Generation ──────────────────────────────────────────────────────────
    model: str = "gpt-4o-mini"
    max_tokens: int = 800
    summary_sentences: str = "2-3"
    caption_truncate_length: int = 200

    @classmethod
    def for_type(cls, job_type: JobType | str) -> "JobTypeProfile":
        job_type = JobType(job_type)

        if job_type == JobType.DEEP:
            return cls(
                credit_cost=2,
                freshness_tier=FreshnessTier.FRESH,  # deep scoring wants recent posts
                model="gpt-4o",
                max_tokens=2000,
                summary_sentences="4-6",
                caption_truncate_length=400,
            )

        return cls()
