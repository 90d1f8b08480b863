"""Operational surface of the ingestion core.

The only entry points outside callers (HTTP router, admin scripts, the OAuth
completion flow) use to touch the queue. None of them write metric rows or
queue rows directly.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.deps import Settings, get_settings
from adsync.exceptions import AuthError, ValidationError
from adsync.models import Connection, ConnectionStatusEnum, SyncProgress, SyncStageEnum
from adsync.schemas import JobSpec
from adsync.security import decrypt_secret
from adsync.services.backfill_orchestrator import BackfillOrchestrator, BackfillPlan
from adsync.services.job_queue import JobQueue, RemoveResult

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Requested connection or job does not exist."""


def enqueue_job(db: Session, job_spec: Union[JobSpec, dict], settings: Optional[Settings] = None) -> UUID:
    """Validate and enqueue one job (raises ValidationError)."""
    return JobQueue(db, settings or get_settings()).enqueue(job_spec)


def get_queue_stats(db: Session, brand_id: Optional[UUID] = None) -> Dict[str, int]:
    return JobQueue(db).get_stats(brand_id)


def get_connection_progress(db: Session, connection_id: UUID) -> Dict[str, Any]:
    """Progress of one connection; `pending` with zero days before any backfill.

    Raises:
        NotFoundError: Unknown connection
    """
    connection = db.query(Connection).filter(Connection.id == connection_id).first()
    if not connection:
        raise NotFoundError(f"Connection {connection_id} not found")

    progress = db.query(SyncProgress).filter(SyncProgress.connection_id == connection_id).first()
    if not progress:
        return {
            "connection_id": connection_id,
            "stage": SyncStageEnum.pending,
            "days_completed": 0,
            "days_target": 0,
            "percent": 0,
            "last_error": None,
        }
    return {
        "connection_id": connection_id,
        "stage": progress.stage,
        "days_completed": progress.days_completed,
        "days_target": progress.days_target,
        "percent": progress.percent,
        "last_error": progress.last_error,
    }


def trigger_backfill(
    db: Session,
    brand_id: UUID,
    connection_id: UUID,
    start_date: Optional[date] = None,
    settings: Optional[Settings] = None,
) -> BackfillPlan:
    """Queue a historical sync for a connection using its stored token.

    Raises:
        NotFoundError: Unknown connection or connection of another brand
        ValidationError: Connection is not active
        AuthError: Stored token missing or unreadable
    """
    connection = db.query(Connection).filter(Connection.id == connection_id).first()
    if not connection or connection.brand_id != brand_id:
        raise NotFoundError(f"Connection {connection_id} not found for brand {brand_id}")
    if connection.status != ConnectionStatusEnum.active:
        raise ValidationError(
            f"Connection {connection_id} is {connection.status.value}; reconnect before backfilling",
            field="connection_id",
        )
    if not connection.access_token_enc:
        raise AuthError(f"Connection {connection_id} has no stored access token", provider="meta")
    try:
        access_token = decrypt_secret(connection.access_token_enc, context=f"meta:{connection.external_account_id}")
    except ValueError as e:
        raise AuthError(f"Stored token for connection {connection_id} is unreadable", provider="meta") from e

    logger.info("[BACKFILL] Backfill triggered for connection %s (start=%s)", connection_id, start_date)
    return BackfillOrchestrator(db, settings or get_settings()).queue_historical_sync(
        brand_id=brand_id,
        connection_id=connection_id,
        access_token=access_token,
        account_id=connection.external_account_id,
        start_date=start_date,
    )


def remove_job(db: Session, job_id: UUID) -> RemoveResult:
    return JobQueue(db).remove(job_id)
