from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from jinja2 import Environment, FileSystemLoader
from openai import (
    AsyncOpenAI,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from leadscore.core.config import settings
from leadscore.core.errors import InternalError, SchemaValidationError
from leadscore.services.job_types import JobType, JobTypeProfile

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Jinja2 Template Environment ─────────────────────────────────────────────
TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates", "prompts")
_jinja_env = Environment(loader=FileSystemLoader(TEMPLATE_DIR), trim_blocks=True, lstrip_blocks=True)

# ─── Constants ───────────────────────────────────────────────────────────────
BUDGET_MULTIPLIERS: tuple[float, ...] = (1.0, 1.5, 2.0)   # one entry per schema attempt
RETRY_BASE_DELAY_SEC: float = 1.0
RETRY_MAX_DELAY_SEC: float  = 16.0

# USD per 1M tokens (input, output)
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o":      (2.50, 10.00),
}

_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    RateLimitError,
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    asyncio.TimeoutError,
)

SCORE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "score": {"type": "integer", "minimum": 0, "maximum": 100},
        "summary": {"type": "string"},
    },
    "required": ["score", "summary"],
    "additionalProperties": False,
}


class ScorePayload(BaseModel):
    """The only shape accepted from the model."""
    model_config = ConfigDict(extra="forbid", strict=True)

    score: int = Field(ge=0, le=100)
    summary: str = Field(min_length=1)


# ─── Result Dataclass ────────────────────────────────────────────────────────
@dataclass
class ScoreResult:
    """
    Validated score plus what it cost to produce.

    Attributes:
        score:              Fit score, 0-100.
        summary:            Short natural-language justification.
        model_used:         Model that produced the accepted output.
        prompt_tokens:      Input tokens summed over every attempt.
        completion_tokens:  Output tokens summed over every attempt.
        cost_usd:           Cost of all attempts from MODEL_PRICING.
        response_time_ms:   Wall time including retries.
        schema_attempts:    Calls made until the output validated.
    """
    score:              int
    summary:            str
    model_used:         str   = ""
    prompt_tokens:      int   = 0
    completion_tokens:  int   = 0
    cost_usd:           float = 0.0
    response_time_ms:   float = 0.0
    schema_attempts:    int   = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "score":             self.score,
            "summary":           self.summary,
            "model_used":        self.model_used,
            "prompt_tokens":     self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_usd":          round(self.cost_usd, 6),
            "response_time_ms":  round(self.response_time_ms, 2),
            "schema_attempts":   self.schema_attempts,
        }


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model, MODEL_PRICING["gpt-4o-mini"])
    return (prompt_tokens * input_price + completion_tokens * output_price) / 1_000_000


# ─── Prompt Builder ──────────────────────────────────────────────────────────
def build_prompt(context: dict[str, Any], profile: dict[str, Any], job_type: JobType | str) -> tuple[str, str]:
    """Render the system and user prompts for one scoring call."""
    config = JobTypeProfile.for_type(job_type)
    limit = config.caption_truncate_length

    posts = []
    for post in (profile.get("posts") or [])[:config.posts_limit]:
        caption = post.get("caption") or ""
        if len(caption) > limit:
            caption = caption[:limit] + "..."
        posts.append({**post, "caption": caption})

    business = {
        "business_name": context.get("business_name", ""),
        "business_one_liner": context.get("business_one_liner", ""),
        "target_audience": context.get("target_audience", ""),
        "context": context.get("context") or {},
    }
    profile_view = {
        "username": profile.get("username", ""),
        "display_name": profile.get("display_name") or profile.get("username", ""),
        "bio": profile.get("bio", ""),
        "follower_count": int(profile.get("follower_count") or 0),
        "following_count": int(profile.get("following_count") or 0),
        "post_count": int(profile.get("post_count") or 0),
        "is_verified": bool(profile.get("is_verified")),
        "is_business_account": bool(profile.get("is_business_account")),
        "external_url": profile.get("external_url"),
    }

    system_prompt = _jinja_env.get_template("score_system.txt").render(
        summary_sentences=config.summary_sentences,
    )
    user_prompt = _jinja_env.get_template("score_user.txt").render(
        business=business,
        profile=profile_view,
        posts=posts,
        summary_sentences=config.summary_sentences,
    )
    return system_prompt, user_prompt


def parse_score(content: Optional[str]) -> ScorePayload:
    """
    Parse raw model output against the score schema.

    Raises:
        ValueError: Empty, non-JSON, or schema-violating output.
    """
    if not content or not content.strip():
        raise ValueError("empty response body")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValueError(f"response is not JSON: {e.msg}") from e
    try:
        return ScorePayload.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"response does not match schema: {e.error_count()} error(s)") from e


# ─── Generator ───────────────────────────────────────────────────────────────
class ScoreGenerator:
    """
    Produces a validated ``ScoreResult`` for a (business context, profile) pair.

    Two independent retry loops:
        - API level: transient OpenAI errors back off exponentially with jitter.
        - Schema level: invalid output is retried with a larger output budget
          (``BUDGET_MULTIPLIERS``); after the last attempt SchemaValidationError
          is raised.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        max_api_retries: int = settings.GENERATION_MAX_API_RETRIES,
        timeout: float = settings.GENERATION_TIMEOUT_SEC,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if client is None and settings.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.client = client
        self.max_api_retries = max_api_retries
        self.timeout = timeout
        self.sleep = sleep

    async def generate(self, context: dict[str, Any], profile: dict[str, Any], job_type: JobType | str = JobType.LIGHT) -> ScoreResult:
        if self.client is None:
            raise InternalError("OPENAI_API_KEY is not configured")

        config = JobTypeProfile.for_type(job_type)
        system_prompt, user_prompt = build_prompt(context, profile, job_type)
        logger.info("Prompt ready for @%s (system: %d chars, user: %d chars).",
                    profile.get("username"), len(system_prompt), len(user_prompt))

        start_time = time.perf_counter()
        prompt_tokens = completion_tokens = 0
        last_problem = ""

        for attempt, multiplier in enumerate(BUDGET_MULTIPLIERS, start=1):
            budget = int(config.max_tokens * multiplier)
            response = await self._call_with_retry(config.model, system_prompt, user_prompt, budget)

            if response.usage:
                prompt_tokens += response.usage.prompt_tokens or 0
                completion_tokens += response.usage.completion_tokens or 0

            try:
                payload = self._extract(response)
            except ValueError as e:
                last_problem = str(e)
                logger.warning("Schema attempt %d/%d failed (%s, budget %d tokens).",
                               attempt, len(BUDGET_MULTIPLIERS), last_problem, budget)
                continue

            elapsed_ms = (time.perf_counter() - start_time) * 1000
            result = ScoreResult(
                score=payload.score,
                summary=payload.summary.strip(),
                model_used=config.model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost_usd=calculate_cost(config.model, prompt_tokens, completion_tokens),
                response_time_ms=elapsed_ms,
                schema_attempts=attempt,
            )
            logger.info("Score generated for @%s: %d (%d tokens, %.0f ms, attempt %d).",
                        profile.get("username"), result.score,
                        prompt_tokens + completion_tokens, elapsed_ms, attempt)
            return result

        raise SchemaValidationError(
            f"Model output failed validation after {len(BUDGET_MULTIPLIERS)} attempts: {last_problem}"
        )

    @staticmethod
    def _extract(response: Any) -> ScorePayload:
        if not response.choices:
            raise ValueError("response has no choices")
        choice = response.choices[0]
        if getattr(choice.message, "refusal", None):
            raise ValueError("model refused the request")
        if choice.finish_reason == "length":
            raise ValueError("output truncated at token limit")
        return parse_score(choice.message.content)

    async def _call_with_retry(self, model: str, system_prompt: str, user_prompt: str, max_tokens: int) -> Any:
        """
        Call the chat completions API, backing off on transient errors.

        Raises:
            InternalError: Authentication failed, or all retries exhausted.
        """
        for attempt in range(self.max_api_retries + 1):
            try:
                return await asyncio.wait_for(
                    self.client.chat.completions.create(
                        model=model,
                        messages=[
                            {"role": "system", "content": system_prompt},
                            {"role": "user",   "content": user_prompt},
                        ],
                        max_tokens=max_tokens,
                        response_format={
                            "type": "json_schema",
                            "json_schema": {"name": "lead_score", "strict": True, "schema": SCORE_SCHEMA},
                        },
                    ),
                    timeout=self.timeout,
                )

            except AuthenticationError as e:
                # Won't fix itself; no retry
                logger.error("OpenAI authentication failed: %s", str(e))
                raise InternalError("Generation service authentication failed") from e

            except _RETRYABLE_EXCEPTIONS as e:
                if attempt >= self.max_api_retries:
                    logger.error("All %d retries exhausted. Last error: %s", self.max_api_retries, str(e))
                    raise InternalError(
                        f"Generation API failed after {self.max_api_retries} retries: {type(e).__name__}"
                    ) from e
                delay = min(
                    RETRY_BASE_DELAY_SEC * (2 ** attempt) + random.uniform(0, 1),
                    RETRY_MAX_DELAY_SEC,
                )
                logger.warning("Transient error on attempt %d (%s), retrying in %.1f s.",
                               attempt + 1, type(e).__name__, delay)
                await self.sleep(delay)

        raise InternalError("Unexpected state in retry loop.")
