"""Operational endpoints to trigger, inspect and clean up sync jobs.

Triggers only enqueue work: the pipelines log and persist their own failures,
so a 202 means "queued", not "succeeded".
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel

from delta_consumer.api.deps import get_consumer, require_token
from delta_consumer.services.consumer_service import Consumer
from delta_consumer.services.datetime_service import format_iso

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])


# ── Schemas ──────────────────────────────────────────


class TriggerResponse(BaseModel):
    status: str
    message: str


class CleanupResponse(BaseModel):
    removed: int


class JobResponse(BaseModel):
    uri: str
    uuid: str
    operation: str
    status: str
    created: str
    modified: str


def _operation_uri(consumer: Consumer, operation: str) -> str:
    aliases = {
        "delta": consumer.settings.delta_sync_job_operation,
        "initial": consumer.settings.initial_sync_job_operation,
    }
    return aliases.get(operation, operation)


async def _ensure_idle(consumer: Consumer, operation: str, label: str) -> None:
    if await consumer.is_busy(operation):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A {label} job is already running",
        )


def _skipped(response: Response, message: str) -> TriggerResponse:
    logger.info(message)
    response.status_code = status.HTTP_200_OK
    return TriggerResponse(status="skipped", message=message)


# ── Endpoints ────────────────────────────────────────


@router.post(
    "/initial-sync-jobs",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_token)],
)
async def start_initial_sync(
    response: Response,
    consumer: Annotated[Consumer, Depends(get_consumer)],
) -> TriggerResponse:
    if consumer.settings.disable_initial_sync:
        return _skipped(response, "Initial sync is disabled")
    await _ensure_idle(consumer, consumer.settings.initial_sync_job_operation, "initial sync")
    consumer.enqueue_initial_sync()
    return TriggerResponse(status="accepted", message="Initial sync queued")


@router.delete(
    "/initial-sync-jobs",
    response_model=CleanupResponse,
    dependencies=[Depends(require_token)],
)
async def cleanup_initial_sync(
    consumer: Annotated[Consumer, Depends(get_consumer)],
) -> CleanupResponse:
    """Remove every initial sync job with its tasks, so that the initial sync can run again."""
    operation = consumer.settings.initial_sync_job_operation
    await _ensure_idle(consumer, operation, "initial sync")
    removed = await consumer.ledger.cleanup_jobs(operation)
    logger.info("Removed %d initial sync job(s)", removed)
    return CleanupResponse(removed=removed)


@router.post(
    "/delta-sync-jobs",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_token)],
)
async def start_delta_sync(
    response: Response,
    consumer: Annotated[Consumer, Depends(get_consumer)],
) -> TriggerResponse:
    if consumer.settings.disable_delta_ingest:
        return _skipped(response, "Delta ingest is disabled")
    await _ensure_idle(consumer, consumer.settings.delta_sync_job_operation, "delta sync")
    consumer.enqueue_delta_sync()
    return TriggerResponse(status="accepted", message="Delta sync queued")


@router.post(
    "/file-sync-jobs",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_token)],
)
async def start_file_sync(
    response: Response,
    consumer: Annotated[Consumer, Depends(get_consumer)],
) -> TriggerResponse:
    if consumer.settings.disable_file_ingest:
        return _skipped(response, "File ingest is disabled")
    consumer.enqueue_file_sync()
    return TriggerResponse(status="accepted", message="File sync queued")


@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    consumer: Annotated[Consumer, Depends(get_consumer)],
    operation: Annotated[str, Query(min_length=1)] = "delta",
) -> list[JobResponse]:
    """List the jobs of an operation, oldest first.

    ``operation`` is ``delta``, ``initial`` or a job operation URI.
    """
    jobs = await consumer.ledger.get_jobs(_operation_uri(consumer, operation))
    return [
        JobResponse(
            uri=job.uri,
            uuid=job.uuid,
            operation=job.operation,
            status=job.status.label,
            created=format_iso(job.created),
            modified=format_iso(job.modified),
        )
        for job in jobs
    ]
