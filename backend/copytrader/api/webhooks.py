"""Payment webhook route."""

from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, HTTPException, Request

from copytrader.services.payment_webhooks import PaymentWebhookProcessor

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "x-webhook-signature"

# Injected at startup
_get_processor: Callable[[], PaymentWebhookProcessor] | None = None


def set_webhook_processor_getter(getter: Callable[[], PaymentWebhookProcessor]) -> None:
    global _get_processor
    _get_processor = getter


@router.post("/payment")
async def payment_webhook(request: Request) -> dict[str, bool]:
    """Verify and accept a payment event; the ledger update runs in the background."""
    if _get_processor is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    processor = _get_processor()
    raw_body = await request.body()
    payload = processor.accept(raw_body, request.headers.get(SIGNATURE_HEADER))
    processor.submit(payload)
    return {"success": True}
