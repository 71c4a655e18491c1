from fastapi import APIRouter

from leadscore.api.routes import business, credits, jobs, progress

router = APIRouter()

router.include_router(jobs.router, tags=["jobs"])
router.include_router(progress.router, tags=["progress"])
router.include_router(credits.router, tags=["credits"])
router.include_router(business.router, tags=["business"])
