"""Execution analytics endpoints.

- POST /api/analytics/executions - Increment today's execution counter
- GET /api/analytics/executions?date=YYYY-MM-DD - Read a day's counter
- POST /api/analytics/exports - Export a day's counter as a JSON blob
- GET /api/analytics/exports - List exported files
- GET /api/analytics/exports/{filename} - Download one export
"""

from datetime import date as date_type
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from imagestudio.api.dependencies import get_execution_counter
from imagestudio.services.analytics import (
    ExecutionCountResult,
    ExecutionCounter,
    ExportDownload,
    ExportListResult,
    ExportResult,
)
from imagestudio.services.exceptions import ErrorKind

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

CounterDep = Annotated[ExecutionCounter, Depends(get_execution_counter)]


class ExportRequest(BaseModel):
    date: Optional[date_type] = None


def _raise_on_failure(success: bool, error: Optional[str]) -> None:
    if not success:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error)


@router.post("/executions", response_model=ExecutionCountResult)
async def track_execution(counter: CounterDep) -> ExecutionCountResult:
    result = await counter.track_execution()
    _raise_on_failure(result.success, result.error)
    return result


@router.get("/executions", response_model=ExecutionCountResult)
async def get_execution_count(
    counter: CounterDep,
    date: Optional[date_type] = Query(default=None, description="UTC day, defaults to today"),
) -> ExecutionCountResult:
    result = await counter.get_execution_count(date.isoformat() if date else None)
    _raise_on_failure(result.success, result.error)
    return result


@router.post("/exports", response_model=ExportResult, status_code=status.HTTP_201_CREATED)
async def export_analytics(
    counter: CounterDep, request: Optional[ExportRequest] = None
) -> ExportResult:
    export_date = request.date if request is not None else None
    result = await counter.export_to_storage(export_date.isoformat() if export_date else None)
    _raise_on_failure(result.success, result.error)
    return result


@router.get("/exports", response_model=ExportListResult)
async def list_exports(counter: CounterDep) -> ExportListResult:
    result = await counter.list_exports()
    _raise_on_failure(result.success, result.error)
    return result


@router.get("/exports/{filename}", response_model=ExportDownload)
async def download_export(filename: str, counter: CounterDep) -> ExportDownload:
    result = await counter.download_export(filename)
    if result.error_kind == ErrorKind.NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    _raise_on_failure(result.success, result.error)
    return result
