"""Operational endpoints for inspecting and driving webhook subscriptions."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field

from webhook_sync.api.metrics import get_subscription_store
from webhook_sync.models.subscription import WebhookStatus
from webhook_sync.services.subscription_manager import (
    AttemptOutcome,
    AttemptResult,
    SubscriptionManager,
    build_manager,
)
from webhook_sync.services.subscription_store import StoreError, SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    repository_id: UUID
    status: WebhookStatus
    webhook_id: str | None = None
    webhook_url: str | None = None
    events: str | None = None
    last_ping: datetime | None = None
    last_delivery: datetime | None = None
    failure_count: int = 0
    last_error: str | None = None
    error_kind: str | None = None
    subscription_date: datetime | None = None
    updated_at: datetime | None = None


class WebhookStatusResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    unsubscribed_repositories: int


class AttemptResponse(BaseModel):
    repository_id: UUID
    outcome: AttemptOutcome
    reason: str | None = None
    error_kind: str | None = None
    subscription: SubscriptionResponse | None = None


class RepositoryWebhookStatusResponse(BaseModel):
    repository_id: UUID
    full_name: str
    has_webhook: bool
    active: bool
    stale: bool
    healthy: bool
    subscription: SubscriptionResponse | None = None


class DeliveryReport(BaseModel):
    """Outcome of one inbound delivery, reported by the receiving service."""

    success: bool
    error: str | None = Field(default=None, max_length=1000)


def get_subscription_manager() -> SubscriptionManager:
    return build_manager()


def enqueue_reconciliation() -> str:
    from webhook_sync.tasks.webhook_tasks import run_reconciliation

    return run_reconciliation.apply_async().id


def _store_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Subscription store unavailable",
    )


def _attempt_response(result: AttemptResult, response: Response) -> AttemptResponse:
    if result.outcome == AttemptOutcome.SKIPPED and result.reason in (
        "repository_not_found",
        "no_subscription",
    ):
        response.status_code = status.HTTP_404_NOT_FOUND
    elif result.outcome == AttemptOutcome.SKIPPED and result.reason != "already_inactive":
        response.status_code = status.HTTP_409_CONFLICT
    elif result.outcome == AttemptOutcome.FAILED:
        response.status_code = status.HTTP_502_BAD_GATEWAY
    elif result.outcome == AttemptOutcome.ERROR:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return AttemptResponse(
        repository_id=result.repository_id,
        outcome=result.outcome,
        reason=result.reason,
        error_kind=result.error_kind.value if result.error_kind else None,
        subscription=(
            SubscriptionResponse.model_validate(result.subscription)
            if result.subscription is not None
            else None
        ),
    )


@router.get("/status", response_model=WebhookStatusResponse)
async def webhook_status(
    store: SubscriptionStore = Depends(get_subscription_store),
) -> WebhookStatusResponse:
    """Subscription totals by status plus repositories still waiting for one."""
    try:
        counts = await store.count_by_status()
        unsubscribed = await store.find_without_subscription()
    except StoreError as e:
        logger.warning("Failed to load webhook status", extra={"error": str(e)})
        raise _store_unavailable() from e
    return WebhookStatusResponse(
        total=sum(counts.values()),
        by_status=counts,
        unsubscribed_repositories=len(unsubscribed),
    )


@router.get("", response_model=list[SubscriptionResponse])
async def list_webhooks(
    status_filter: WebhookStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> list[SubscriptionResponse]:
    try:
        rows = await store.list_subscriptions(status=status_filter, limit=limit, offset=offset)
    except StoreError as e:
        raise _store_unavailable() from e
    return [SubscriptionResponse.model_validate(row) for row in rows]


@router.post("/subscribe/{repository_id}", response_model=AttemptResponse)
async def subscribe_repository(
    repository_id: UUID,
    response: Response,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> AttemptResponse:
    """Run a subscribe attempt for one repository right away."""
    result = await manager.attempt_subscribe(repository_id, job="api")
    return _attempt_response(result, response)


@router.delete("/{repository_id}", response_model=AttemptResponse)
async def unsubscribe_repository(
    repository_id: UUID,
    response: Response,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> AttemptResponse:
    """Delete the remote hook and mark the subscription inactive."""
    result = await manager.unsubscribe(repository_id)
    return _attempt_response(result, response)


@router.get("/repository/{repository_id}/status", response_model=RepositoryWebhookStatusResponse)
async def repository_webhook_status(
    repository_id: UUID,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> RepositoryWebhookStatusResponse:
    try:
        state = await manager.repository_status(repository_id)
    except StoreError as e:
        logger.warning("Failed to load repository webhook status", extra={"error": str(e)})
        raise _store_unavailable() from e
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Repository not found")

    subscription = state.subscription
    return RepositoryWebhookStatusResponse(
        repository_id=repository_id,
        full_name=state.repository.full_name,
        has_webhook=subscription is not None and subscription.webhook_id is not None,
        active=subscription is not None and subscription.status == WebhookStatus.ACTIVE.value,
        stale=state.stale,
        healthy=state.healthy,
        subscription=(
            SubscriptionResponse.model_validate(subscription) if subscription is not None else None
        ),
    )


@router.post("/reregister/{repository_id}", response_model=AttemptResponse)
async def reregister_repository(
    repository_id: UUID,
    response: Response,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> AttemptResponse:
    """Remove the current hook and register a fresh one."""
    result = await manager.reregister(repository_id, job="api")
    return _attempt_response(result, response)


@router.post("/subscribe-all", status_code=status.HTTP_202_ACCEPTED)
async def subscribe_all() -> dict:
    """Queue a reconciliation pass on the worker."""
    task_id = enqueue_reconciliation()
    logger.info("Reconciliation pass queued", extra={"task_id": task_id})
    return {"status": "accepted", "job": "reconciliation", "task_id": task_id}


@router.post("/{repository_id}/deliveries", response_model=SubscriptionResponse)
async def record_delivery(
    repository_id: UUID,
    report: DeliveryReport,
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> SubscriptionResponse:
    """Record a delivery outcome observed by the webhook receiver."""
    try:
        row = await manager.record_delivery(
            repository_id, success=report.success, error=report.error
        )
    except StoreError as e:
        raise _store_unavailable() from e
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription")
    return SubscriptionResponse.model_validate(row)
