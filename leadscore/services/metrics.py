import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from leadscore.db import get_async_db_connection, row_to_dict, utc_now

logger = logging.getLogger(__name__)


@dataclass
class JobMetrics:
    job_id: str
    provider: Optional[str] = None
    cache_hit: bool = False
    fetch_ms: float = 0.0
    generation_ms: float = 0.0
    total_ms: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    ai_cost_usd: float = 0.0
    scraping_cost_usd: float = 0.0

    @property
    def total_cost_usd(self) -> float:
        return self.ai_cost_usd + self.scraping_cost_usd


class MetricsRecorder:
    """Per-job timing and cost rows. Written once per completed job."""

    def __init__(self, connect=get_async_db_connection):
        self._connect = connect

    async def record(self, metrics: JobMetrics) -> None:
        row = asdict(metrics)
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        async with self._connect() as conn:
            await conn.execute(
                f"""
                INSERT INTO job_metrics ({columns}, created_at) VALUES ({placeholders}, ?)
                ON CONFLICT (job_id) DO NOTHING
                """,
                (*row.values(), utc_now()),
            )
            await conn.commit()
        logger.info(
            f"[{metrics.job_id}] Metrics: {metrics.total_ms:.0f}ms total, "
            f"cache_hit={metrics.cache_hit}, cost ${metrics.total_cost_usd:.5f}"
        )

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cursor = await conn.execute("SELECT * FROM job_metrics WHERE job_id = ?", (job_id,))
            return row_to_dict(await cursor.fetchone())
