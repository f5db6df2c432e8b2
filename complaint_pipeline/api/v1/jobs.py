"""Job status API."""

from fastapi import APIRouter, HTTPException

from complaint_pipeline.errors import JobNotFoundError

router = APIRouter()

# Set by main.py during lifespan
_registry = None


def set_registry(registry):
    global _registry
    _registry = registry


@router.get("/jobs/{job_id}", name="get_job_status")
async def get_job_status(job_id: str):
    """Return the persisted job record as-is."""
    if _registry is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    try:
        job = await _registry.find_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    return job.model_dump(mode="json")
