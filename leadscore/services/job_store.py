import uuid
import json
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any
from enum import Enum

from leadscore.core.errors import ConflictError
from leadscore.db import get_async_db_connection, is_unique_violation, row_to_dict, utc_now

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass
class Job:
    job_id: str
    account_id: str
    subject_id: str
    business_profile_id: str
    job_type: str
    status: JobStatus
    credits_reserved: int = 0
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            job_id=row["job_id"],
            account_id=row["account_id"],
            subject_id=row["subject_id"],
            business_profile_id=row["business_profile_id"],
            job_type=row["job_type"],
            status=JobStatus(row["status"]),
            credits_reserved=row["credits_reserved"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            result=json.loads(row["result_json"]) if row["result_json"] else None,
            error_message=row["error_message"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "account_id": self.account_id,
            "subject_id": self.subject_id,
            "business_profile_id": self.business_profile_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "credits_reserved": self.credits_reserved,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error_message": self.error_message,
        }


def normalize_subject(subject_id: str) -> str:
    return subject_id.strip().lstrip("@").lower()


class JobStore:
    """
    Persists job records.

    Terminal states are enforced in SQL: every transition only matches rows
    that are still pending/processing, so a finished job never moves again.
    The in-flight unique index turns create into an atomic check-then-insert.
    """

    def __init__(self, connect=get_async_db_connection):
        self._connect = connect

    async def create_job_async(
        self,
        account_id: str,
        subject_id: str,
        business_profile_id: str,
        job_type: str,
    ) -> Job:
        job_id = f"job_{uuid.uuid4().hex}"
        subject_id = normalize_subject(subject_id)
        now = utc_now()

        query = """
            INSERT INTO jobs (
                job_id, account_id, subject_id, business_profile_id, job_type,
                status, credits_reserved, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        args = (job_id, account_id, subject_id, business_profile_id, job_type,
                JobStatus.PENDING.value, 0, now, now)

        try:
            async with self._connect() as conn:
                await conn.execute(query, args)
                await conn.commit()
        except Exception as e:
            if not is_unique_violation(e):
                raise
            existing = await self.find_in_flight(account_id, subject_id)
            logger.warning(f"Duplicate submission for {account_id}/@{subject_id} rejected.")
            raise ConflictError(existing_job_id=existing.job_id if existing else None) from e

        logger.info(f"Job {job_id} created in DB ({job_type} @{subject_id}).")
        return Job(
            job_id=job_id,
            account_id=account_id,
            subject_id=subject_id,
            business_profile_id=business_profile_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    async def get_job_async(self, job_id: str) -> Optional[Job]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
            row = await cursor.fetchone()
        if not row:
            return None
        return Job.from_row(row_to_dict(row))

    async def find_in_flight(
        self, account_id: str, subject_id: str, exclude_job_id: Optional[str] = None
    ) -> Optional[Job]:
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM jobs
                WHERE account_id = ? AND subject_id = ? AND status IN ('pending', 'processing')
                ORDER BY created_at
                """,
                (account_id, normalize_subject(subject_id)),
            )
            rows = await cursor.fetchall()
        for row in rows:
            job = Job.from_row(row_to_dict(row))
            if job.job_id != exclude_job_id:
                return job
        return None

    async def _transition(self, job_id: str, assignments: str, args: tuple) -> bool:
        async with self._connect() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE jobs SET {assignments}, updated_at = ?
                WHERE job_id = ? AND status IN ('pending', 'processing')
                RETURNING job_id
                """,
                (*args, utc_now(), job_id),
            )
            rows = await cursor.fetchall()
            await conn.commit()
        return len(rows) > 0

    async def mark_processing(self, job_id: str) -> bool:
        return await self._transition(job_id, "status = ?", (JobStatus.PROCESSING.value,))

    async def set_credits_reserved(self, job_id: str, amount: int) -> bool:
        """Record the reservation amount. Only the first call has any effect."""
        async with self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE jobs SET credits_reserved = ?, updated_at = ?
                WHERE job_id = ? AND credits_reserved = 0
                RETURNING job_id
                """,
                (amount, utc_now(), job_id),
            )
            rows = await cursor.fetchall()
            await conn.commit()
        return len(rows) > 0

    async def complete_job(self, job_id: str, result: Dict[str, Any]) -> bool:
        changed = await self._transition(
            job_id,
            "status = ?, result_json = ?, error_message = NULL, completed_at = ?",
            (JobStatus.COMPLETE.value, json.dumps(result, default=str), utc_now()),
        )
        if changed:
            logger.info(f"Job {job_id} marked as COMPLETE in DB.")
        return changed

    async def fail_job(self, job_id: str, error_message: str) -> bool:
        changed = await self._transition(
            job_id,
            "status = ?, error_message = ?, completed_at = ?",
            (JobStatus.FAILED.value, error_message, utc_now()),
        )
        if changed:
            logger.error(f"Job {job_id} marked as FAILED in DB: {error_message}")
        return changed

    async def cancel_job(self, job_id: str) -> bool:
        changed = await self._transition(
            job_id,
            "status = ?, completed_at = ?",
            (JobStatus.CANCELLED.value, utc_now()),
        )
        if changed:
            logger.info(f"Job {job_id} marked as CANCELLED in DB.")
        return changed
