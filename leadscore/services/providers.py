"""
providers.py
~~~~~~~~~~~~
Profile data providers and the fallback chain that tries them in order.

Each provider reports the same logical attributes under its own field names,
so every ``ProviderConfig`` carries a mapping of candidate source fields per
canonical attribute. Failures are classified as:

  • permanent — a property of the subject (not found, private, 403/404).
    The chain stops; no other provider can do better.
  • transient — timeouts, 429/5xx, empty or malformed payloads.
    Retried within the provider, then the next provider is tried.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence

import httpx

from leadscore.core.config import settings
from leadscore.core.errors import ProviderPermanentError, ProviderTransientError
from leadscore.services.job_types import JobType, JobTypeProfile

logger = logging.getLogger(__name__)

FieldMapping = Mapping[str, Sequence[str]]

PROFILE_FIELDS: FieldMapping = {
    "username": ("username",),
    "display_name": ("fullName", "displayName", "full_name"),
    "bio": ("biography", "bio"),
    "follower_count": ("followersCount", "follower_count", "followers"),
    "following_count": ("followsCount", "followingCount", "following"),
    "post_count": ("postsCount", "mediaCount", "posts_count"),
    "is_verified": ("verified", "isVerified", "is_verified"),
    "is_private": ("private", "isPrivate", "is_private"),
    "profile_pic_url": ("profilePicUrlHD", "profilePicUrl", "profile_pic_url"),
    "external_url": ("externalUrl", "website", "external_url"),
    "is_business_account": ("isBusinessAccount", "is_business_account"),
    "business_category": ("businessCategoryName", "category"),
    "posts": ("latestPosts", "posts", "items"),
}

POST_FIELDS: FieldMapping = {
    "id": ("id", "shortCode", "pk"),
    "caption": ("caption", "text"),
    "like_count": ("likesCount", "likeCount", "like_count"),
    "comment_count": ("commentsCount", "commentCount", "comment_count"),
    "timestamp": ("timestamp", "takenAt", "taken_at"),
    "media_type": ("type", "mediaType", "productType"),
}

MEDIA_TYPES = {"image": "photo", "video": "video", "sidecar": "carousel", "clips": "video"}

PERMANENT_ERROR_PATTERNS = (
    "not found",
    "not_found",
    "is private",
    "does not exist",
    "user not found",
    "account deleted",
    "invalid username",
)


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    endpoint: str
    build_input: Callable[[str, int], dict[str, Any]]
    field_mapping: FieldMapping = field(default_factory=lambda: PROFILE_FIELDS)
    timeout: float = 30.0
    max_retries: int = 2
    retry_delay: float = 2.0


@dataclass
class FetchResult:
    profile: dict[str, Any]
    provider: str
    elapsed_ms: float
    attempts: int


# ─── Provider Definitions ────────────────────────────────────────────────────

def _usernames_input(username: str, posts_limit: int) -> dict[str, Any]:
    return {"usernames": [username], "resultsLimit": posts_limit}


def _direct_url_input(username: str, posts_limit: int) -> dict[str, Any]:
    return {
        "addParentData": False,
        "directUrls": [f"https://instagram.com/{username}/"],
        "enhanceUserSearchWithFacebookPage": False,
        "resultsLimit": posts_limit,
        "resultsType": "details",
    }


PROVIDERS: dict[str, ProviderConfig] = {
    "profile_basic": ProviderConfig(
        name="profile_basic",
        endpoint="dSCLg0C3YEZ83HzYX",
        build_input=_usernames_input,
        timeout=30.0,
        max_retries=2,
        retry_delay=2.0,
    ),
    "profile_details": ProviderConfig(
        name="profile_details",
        endpoint="shu8hvrXbJbY3Eb9W",
        build_input=_direct_url_input,
        timeout=60.0,
        max_retries=2,
        retry_delay=3.0,
    ),
}


def provider_chain_for(job_type: JobType | str) -> list[ProviderConfig]:
    """Providers in priority order for a job type."""
    if JobType(job_type) == JobType.DEEP:
        return [PROVIDERS["profile_details"], PROVIDERS["profile_basic"]]
    return [PROVIDERS["profile_basic"], PROVIDERS["profile_details"]]


# ─── Field Mapping ───────────────────────────────────────────────────────────

def pick(raw: Mapping[str, Any], candidates: Sequence[str], default: Any = None) -> Any:
    """First non-null value among the candidate field names."""
    for name in candidates:
        value = raw.get(name)
        if value is not None:
            return value
    return default


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def data_quality(post_count: int) -> str:
    if post_count > 3:
        return "high"
    if post_count >= 1:
        return "medium"
    return "low"


def map_post(raw: Mapping[str, Any]) -> dict[str, Any]:
    media = str(pick(raw, POST_FIELDS["media_type"], "image")).lower()
    return {
        "id": str(pick(raw, POST_FIELDS["id"], "")),
        "caption": pick(raw, POST_FIELDS["caption"], "") or "",
        "like_count": _as_int(pick(raw, POST_FIELDS["like_count"], 0)),
        "comment_count": _as_int(pick(raw, POST_FIELDS["comment_count"], 0)),
        "timestamp": pick(raw, POST_FIELDS["timestamp"], ""),
        "media_type": MEDIA_TYPES.get(media, "photo"),
    }


def map_profile(raw: Mapping[str, Any], mapping: FieldMapping, provider: str, posts_limit: int) -> dict[str, Any]:
    """Translate one provider item into the canonical profile shape."""
    username = pick(raw, mapping["username"])
    if not username:
        raise ProviderTransientError(f"{provider}: payload has no username field")

    raw_posts = pick(raw, mapping["posts"], []) or []
    if not isinstance(raw_posts, list):
        raise ProviderTransientError(f"{provider}: posts field is not a list")
    posts = [map_post(p) for p in raw_posts[:posts_limit] if isinstance(p, Mapping)]

    business_category = pick(raw, mapping["business_category"])
    return {
        "username": str(username).lower(),
        "display_name": pick(raw, mapping["display_name"]) or username,
        "bio": pick(raw, mapping["bio"], "") or "",
        "follower_count": _as_int(pick(raw, mapping["follower_count"], 0)),
        "following_count": _as_int(pick(raw, mapping["following_count"], 0)),
        "post_count": _as_int(pick(raw, mapping["post_count"], 0)),
        "is_verified": bool(pick(raw, mapping["is_verified"], False)),
        "is_private": bool(pick(raw, mapping["is_private"], False)),
        "is_business_account": bool(pick(raw, mapping["is_business_account"], False) or business_category),
        "profile_pic_url": pick(raw, mapping["profile_pic_url"], "") or "",
        "external_url": pick(raw, mapping["external_url"]),
        "posts": posts,
        "scraper_used": provider,
        "data_quality": data_quality(len(posts)),
    }


def _is_permanent_message(message: str) -> bool:
    message = message.lower()
    return any(pattern in message for pattern in PERMANENT_ERROR_PATTERNS)


# ─── HTTP Client ─────────────────────────────────────────────────────────────

class ProviderClient(Protocol):
    async def run(self, config: ProviderConfig, subject_id: str, posts_limit: int) -> list[dict[str, Any]]:
        ...


class ApifyClient:
    """
    Runs an actor synchronously and returns its dataset items.
    Status codes are classified here; payload-level checks happen in the chain.
    """

    def __init__(self, client: httpx.AsyncClient, api_token: str, base_url: str = settings.APIFY_BASE_URL):
        self.client = client
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")

    async def run(self, config: ProviderConfig, subject_id: str, posts_limit: int) -> list[dict[str, Any]]:
        url = f"{self.base_url}/{config.endpoint}/run-sync-get-dataset-items"
        try:
            response = await self.client.post(
                url,
                params={"token": self.api_token},
                json=config.build_input(subject_id, posts_limit),
                timeout=config.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTransientError(f"{config.name}: timed out after {config.timeout}s") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"{config.name}: connection error: {e}") from e

        status = response.status_code
        if status in (403, 404):
            raise ProviderPermanentError(f"{config.name}: profile @{subject_id} unavailable ({status})")
        if status >= 400:
            detail = response.text.strip()[:200] or response.reason_phrase
            raise ProviderTransientError(f"{config.name}: API error {status}: {detail}")

        try:
            items = response.json()
        except json.JSONDecodeError as e:
            raise ProviderTransientError(f"{config.name}: malformed JSON payload") from e

        if not isinstance(items, list):
            raise ProviderTransientError(f"{config.name}: expected a list of items")
        return items


# ─── Fallback Chain ──────────────────────────────────────────────────────────

class ProviderChain:

    def __init__(
        self,
        client: ProviderClient,
        chain_for: Callable[[JobType | str], list[ProviderConfig]] = provider_chain_for,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.chain_for = chain_for
        self.sleep = sleep

    async def fetch(self, subject_id: str, job_type: JobType | str) -> FetchResult:
        """
        Try each provider in priority order.

        Raises:
            ProviderPermanentError: the subject is private/missing; later providers are skipped.
            ProviderTransientError: every provider exhausted its retries (last error).
        """
        posts_limit = JobTypeProfile.for_type(job_type).posts_limit
        start = time.perf_counter()
        attempts = 0
        last_error: Optional[ProviderTransientError] = None

        for config in self.chain_for(job_type):
            for attempt in range(1, config.max_retries + 1):
                attempts += 1
                try:
                    logger.info(f"[{config.name}] Attempt {attempt}/{config.max_retries} for @{subject_id}")
                    items = await self.client.run(config, subject_id, posts_limit)
                    profile = self._extract(items, config, subject_id, posts_limit)
                except ProviderPermanentError as e:
                    logger.warning(f"[{config.name}] Permanent failure for @{subject_id}: {e.message}")
                    raise
                except ProviderTransientError as e:
                    last_error = e
                    if attempt < config.max_retries:
                        delay = attempt * config.retry_delay
                        logger.warning(f"[{config.name}] Attempt {attempt} failed ({e.message}), retrying in {delay:.1f}s")
                        await self.sleep(delay)
                    continue

                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.info(f"[{config.name}] Fetched @{subject_id} in {elapsed_ms:.0f}ms ({len(profile['posts'])} posts)")
                return FetchResult(profile=profile, provider=config.name, elapsed_ms=elapsed_ms, attempts=attempts)

            logger.warning(f"[{config.name}] Exhausted {config.max_retries} attempts for @{subject_id}, falling back")

        if last_error is None:
            last_error = ProviderTransientError("No providers configured")
        logger.error(f"All providers failed for @{subject_id}: {last_error.message}")
        raise last_error

    def _extract(self, items: list[dict[str, Any]], config: ProviderConfig, subject_id: str, posts_limit: int) -> dict[str, Any]:
        if not items:
            raise ProviderTransientError(f"{config.name}: empty dataset for @{subject_id}")

        item = items[0]
        if not isinstance(item, Mapping):
            raise ProviderTransientError(f"{config.name}: malformed dataset item")

        error = item.get("error") or item.get("errorDescription")
        if error:
            message = f"{item.get('error', '')} {item.get('errorDescription', '')}".strip()
            if _is_permanent_message(message):
                raise ProviderPermanentError(f"Profile @{subject_id} not found: {message}")
            raise ProviderTransientError(f"{config.name}: provider error: {message}")

        profile = map_profile(item, config.field_mapping, config.name, posts_limit)
        if profile["is_private"]:
            raise ProviderPermanentError(f"Profile @{subject_id} is private")
        return profile
