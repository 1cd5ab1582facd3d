"""
Billing API routes.

Minimal surface:
- POST /api/billing/webhook: Handle billing provider webhooks
- GET  /api/billing/webhook/health: Webhook endpoint configuration check
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from backend.core.errors import AppError, InvalidPayloadError, WebhookRejectedError
from backend.core.logging import get_request_id
from backend.core.services import Services, get_services


router = APIRouter(prefix="/billing", tags=["billing"])

logger = logging.getLogger("ecoscore.billing")


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "error": code, "request_id": get_request_id()},
    )


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_signature: str = Header(None),
    services: Services = Depends(get_services),
):
    """
    Handle billing provider webhook events.

    Verifies signature over the raw body, rejects events outside the replay
    window, processes each event id at most once.

    Returns:
        {"status": "success" | "already_processed" | "ignored"}

    Errors:
        401: Invalid signature or stale event
        400: Malformed payload
        500: Processing failed (provider retries)
    """
    # Read raw body (required for signature verification)
    body = await request.body()

    try:
        result = await run_in_threadpool(
            services.ingestor.ingest,
            body,
            x_signature,
            schedule=background_tasks.add_task,
        )
    except WebhookRejectedError as e:
        return _error(401, e.code)
    except InvalidPayloadError as e:
        return _error(400, e.code)
    except AppError as e:
        logger.error("[billing] webhook failed", extra={"error_code": e.code})
        return _error(500, e.code)
    except Exception:
        logger.exception("[billing] webhook failed")
        return _error(500, "internal_error")

    return {"status": result.status.value, "event_id": result.event_id}


@router.get("/webhook/health")
async def webhook_health(services: Services = Depends(get_services)):
    """
    Report webhook endpoint configuration.

    Returns:
        {"status": "ok", "webhook_url": str, "signature_configured": bool}
    """
    return {
        "status": "ok",
        "webhook_url": f"{services.settings.API_URL.rstrip('/')}/api/billing/webhook",
        "signature_configured": services.ingestor.signature_configured,
    }
