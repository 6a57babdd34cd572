from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response

from webhook_sync.observability.metrics import METRICS, render_prometheus
from webhook_sync.services.subscription_store import StoreError, SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["metrics"])


def get_subscription_store() -> SubscriptionStore:
    return SubscriptionStore()


@router.get("/metrics")
async def metrics(store: SubscriptionStore = Depends(get_subscription_store)) -> Response:
    try:
        counts = await store.count_by_status()
    except StoreError as e:
        logger.warning("Could not refresh subscription gauge", extra={"error": str(e)})
    else:
        for status, count in counts.items():
            METRICS.subscriptions_by_status.labels(status=status).set(count)
    payload, content_type = render_prometheus()
    return Response(content=payload, media_type=content_type)
