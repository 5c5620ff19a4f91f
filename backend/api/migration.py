"""
Migration status API.
Job status with reconciled progress, job deletion, and the Tent webhook sink.
"""

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from services.migration.errors import NotFoundError
from services.migration.service import JobStatusReport, MigrationService


router = APIRouter(prefix="/migration", tags=["Migration"])


# ==================== RESPONSE MODELS ====================

class CategoryProgressResponse(BaseModel):
    """Progress of one resource category"""
    exported_ids: List[str]
    imported_ids: List[str]
    failed_ids: List[str]
    anomalies: List[str] = []


class MigrationJobResponse(BaseModel):
    """Migration job status"""
    job_key: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    exported_ids: List[str]
    imported_ids: List[str]
    failed_ids: List[str]
    categories: Dict[str, CategoryProgressResponse]

    @classmethod
    def from_report(cls, report: JobStatusReport) -> "MigrationJobResponse":
        return cls(
            job_key=report.job_key,
            status=report.status.value,
            started_at=report.started_at,
            completed_at=report.completed_at,
            error=report.error,
            exported_ids=sorted(report.exported_ids),
            imported_ids=sorted(report.imported_ids),
            failed_ids=sorted(report.failed_ids),
            categories={
                name: CategoryProgressResponse(
                    exported_ids=sorted(entry.exported),
                    imported_ids=sorted(entry.imported),
                    failed_ids=sorted(entry.failed),
                    anomalies=sorted(entry.anomalies),
                )
                for name, entry in report.reconciliation.categories.items()
            },
        )


# ==================== DEPENDENCIES ====================

def get_migration_service(request: Request) -> MigrationService:
    """Service constructed by the application lifespan"""
    return request.app.state.migration_service


# ==================== ENDPOINTS ====================

@router.get("/jobs/{job_key}", response_model=MigrationJobResponse)
async def get_job_status(
    job_key: str,
    service: MigrationService = Depends(get_migration_service)
):
    """Get migration job progress (for polling)"""
    try:
        report = await service.get_job_status(job_key)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return MigrationJobResponse.from_report(report)


@router.delete("/jobs/{job_key}")
async def delete_job(
    job_key: str,
    service: MigrationService = Depends(get_migration_service)
):
    """Cancel a running migration and purge the job"""
    try:
        await service.delete_job(job_key)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"status": "deleted"}


@router.post("/webhooks")
async def webhooks():
    """Tent notifications for the app are accepted and ignored"""
    return {"status": "ok"}
