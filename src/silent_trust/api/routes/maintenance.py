"""
Maintenance API routes.

Lets an external cron trigger the periodic jobs and read queue and
daily stats.
"""

from typing import Any

from fastapi import APIRouter, HTTPException, status

from silent_trust.api.deps import Services
from silent_trust.db.gateway import PersistenceError

router = APIRouter()


@router.get("/jobs")
async def list_jobs(services: Services) -> dict[str, Any]:
    return {"jobs": services.maintenance.job_names}


@router.post("/{job_name}")
async def run_job(job_name: str, services: Services) -> dict[str, Any]:
    try:
        job = await services.maintenance.run(job_name)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {job_name}")
    return job.to_dict()


@router.get("/stats/queue")
async def queue_stats(services: Services) -> dict[str, Any]:
    try:
        return await services.async_gate.get_queue_stats()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/stats/daily")
async def daily_stats(services: Services) -> dict[str, Any]:
    try:
        return await services.reporter.daily_stats()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/stats/weekly")
async def weekly_stats(services: Services) -> dict[str, Any]:
    try:
        return await services.reporter.weekly_stats()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
