import json
import logging
import uuid
from typing import Any, Dict, Optional

from leadscore.db import get_async_db_connection, row_to_dict, utc_now

logger = logging.getLogger(__name__)


class BusinessStore:
    """Scoring context: the business profile a lead is evaluated against."""

    def __init__(self, connect=get_async_db_connection):
        self._connect = connect

    async def create_profile(
        self,
        account_id: str,
        business_name: str,
        business_one_liner: str = "",
        target_audience: str = "",
        context: Optional[Dict[str, Any]] = None,
        business_profile_id: Optional[str] = None,
    ) -> str:
        business_profile_id = business_profile_id or f"biz_{uuid.uuid4().hex}"
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO business_profiles (
                    business_profile_id, account_id, business_name,
                    business_one_liner, target_audience, context_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (business_profile_id, account_id, business_name, business_one_liner,
                 target_audience, json.dumps(context or {}), utc_now()),
            )
            await conn.commit()
        return business_profile_id

    async def get_profile(self, business_profile_id: str, account_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                "SELECT * FROM business_profiles WHERE business_profile_id = ? AND account_id = ?",
                (business_profile_id, account_id),
            )
            row = row_to_dict(await cursor.fetchone())
        if row is None:
            return None
        row["context"] = json.loads(row.pop("context_json") or "{}")
        return row


class LeadStore:
    """
    Subject metadata per (account, business profile). Upserts are idempotent:
    writing the same profile twice leaves one row with the same values.
    """

    def __init__(self, connect=get_async_db_connection):
        self._connect = connect

    async def upsert_lead(self, account_id: str, business_profile_id: str, profile: Dict[str, Any]) -> str:
        now = utc_now()
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO leads (
                    lead_id, account_id, business_profile_id, subject_id, display_name, bio,
                    follower_count, following_count, post_count, external_url, profile_pic_url,
                    is_verified, is_private, is_business_account, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (account_id, business_profile_id, subject_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    bio = excluded.bio,
                    follower_count = excluded.follower_count,
                    following_count = excluded.following_count,
                    post_count = excluded.post_count,
                    external_url = excluded.external_url,
                    profile_pic_url = excluded.profile_pic_url,
                    is_verified = excluded.is_verified,
                    is_private = excluded.is_private,
                    is_business_account = excluded.is_business_account,
                    updated_at = excluded.updated_at
                RETURNING lead_id
                """,
                (
                    f"lead_{uuid.uuid4().hex}",
                    account_id,
                    business_profile_id,
                    profile["username"].lower(),
                    profile.get("display_name") or profile["username"],
                    profile.get("bio") or "",
                    int(profile.get("follower_count") or 0),
                    int(profile.get("following_count") or 0),
                    int(profile.get("post_count") or 0),
                    profile.get("external_url"),
                    profile.get("profile_pic_url"),
                    bool(profile.get("is_verified")),
                    bool(profile.get("is_private")),
                    bool(profile.get("is_business_account")),
                    now,
                ),
            )
            rows = await cursor.fetchall()
            await conn.commit()
        lead_id = rows[0]["lead_id"]
        logger.debug(f"Lead upserted: {lead_id} (@{profile['username']})")
        return lead_id

    async def get_lead(self, account_id: str, business_profile_id: str, subject_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM leads
                WHERE account_id = ? AND business_profile_id = ? AND subject_id = ?
                """,
                (account_id, business_profile_id, subject_id.lower()),
            )
            return row_to_dict(await cursor.fetchone())
