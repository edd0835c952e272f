"""Liveness and health check endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from delta_consumer.api.deps import get_consumer, get_settings
from delta_consumer.config import Settings
from delta_consumer.exceptions import StoreError
from delta_consumer.services.consumer_service import Consumer

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    store: str


@router.get("/")
async def root(settings: Annotated[Settings, Depends(get_settings)]) -> dict[str, str]:
    return {"message": f"Hello, this is {settings.service_name}"}


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    consumer: Annotated[Consumer, Depends(get_consumer)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    store_status = "ok"
    try:
        await consumer.client.query("SELECT ?s WHERE { ?s ?p ?o } LIMIT 1")
    except StoreError:
        logger.warning("Health check store query failed", exc_info=True)
        store_status = "error"

    return HealthResponse(
        status="ok" if store_status == "ok" else "degraded",
        version=VERSION,
        store=store_status,
    )
