"""
Scheduler Router — Control the review poller.
Admin endpoints need the API key; /cron/poll is for an external cron and uses CRON_SECRET.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from review_responder.auth import require_auth, require_cron_secret
from review_responder.database import get_db
from review_responder.dependencies import get_scheduler
from review_responder.routers.owners import get_owner_or_404
from review_responder.scheduler import ReviewScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Admin (API key) ───────────────────────────────────────────────────

@router.get("/scheduler/status", dependencies=[Depends(require_auth)])
async def scheduler_status(scheduler: ReviewScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.post("/scheduler/start", dependencies=[Depends(require_auth)])
async def start_scheduler(scheduler: ReviewScheduler = Depends(get_scheduler)):
    scheduler.start()
    return scheduler.status()


@router.post("/scheduler/stop", dependencies=[Depends(require_auth)])
async def stop_scheduler(scheduler: ReviewScheduler = Depends(get_scheduler)):
    scheduler.stop()
    return scheduler.status()


@router.post("/scheduler/poll/{owner_id}", dependencies=[Depends(require_auth)])
async def poll_owner_now(
    owner_id: str,
    db: AsyncSession = Depends(get_db),
    scheduler: ReviewScheduler = Depends(get_scheduler),
):
    """Poll one owner's resources right away and report new reviews per resource."""
    owner = await get_owner_or_404(db, owner_id)
    # The poll writes through its own sessions; release this connection first
    await db.commit()
    results = await scheduler.poll_owner(owner.id)
    return {
        "owner_id": str(owner.id),
        "total_new_reviews": sum(r.new_reviews for r in results),
        "resources": [
            {
                "resource_id": str(r.resource_id),
                "resource_name": r.resource_name,
                "new_reviews": r.new_reviews,
                "error": r.error,
            }
            for r in results
        ],
    }


# ── Cron (CRON_SECRET) ────────────────────────────────────────────────

@router.post("/cron/poll", dependencies=[Depends(require_cron_secret)])
async def cron_poll(scheduler: ReviewScheduler = Depends(get_scheduler)):
    """
    Run one full poll cycle. Call from an external cron:
    POST https://your-app/api/cron/poll
    Header: X-Cron-Secret: <CRON_SECRET>
    """
    try:
        report = await scheduler.run_cycle()
    except Exception as e:
        logger.exception("Cron poll failed")
        raise HTTPException(500, str(e))
    if report is None:
        return {"status": "skipped", "reason": "A poll cycle is already running"}
    return {"status": "ok", "result": report.to_dict()}
