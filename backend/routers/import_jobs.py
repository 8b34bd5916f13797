"""
Import Jobs Router - read-only job status and cancellation
"""
from fastapi import APIRouter, HTTPException, Request

router = APIRouter(prefix="/import-jobs", tags=["import-jobs"])


def _scheduler(request: Request):
    return request.app.state.worker_scheduler


@router.get("/{queue_name}/{job_id}")
async def get_import_job(queue_name: str, job_id: str, request: Request):
    """Status, progress and result of one job"""
    queues = _scheduler(request).queues
    if queue_name not in queues:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {queue_name}")

    job = await queues[queue_name].get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{queue_name}/{job_id}/cancel")
async def cancel_import_job(queue_name: str, job_id: str, request: Request):
    """Request cancellation; a running import stops at its next yield point"""
    queues = _scheduler(request).queues
    if queue_name not in queues:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {queue_name}")

    if not await queues[queue_name].cancel(job_id):
        raise HTTPException(status_code=409, detail="Job is not cancellable")
    return {"success": True, "job_id": job_id}
