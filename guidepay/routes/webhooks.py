"""
Stripe Webhook Endpoint

Receives payment intent events from Stripe. The raw body and the
``Stripe-Signature`` header go to ``WebhookService`` untouched; the
signature is computed over the exact bytes Stripe sent.

Status codes returned to Stripe:
- 200 for processed, skipped (duplicate delivery) and ignored events
- 400 for a missing or invalid signature, or an undecodable payload
- 5xx when the event could not be applied; Stripe redelivers it later
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..core.exceptions import DomainException
from ..database import get_db
from ..schemas.payment import WebhookResult
from ..services.payment_gateway import PaymentGateway, StripePaymentGateway
from ..services.webhook_service import WebhookService
from ..tasks.enqueue import JobProducer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/stripe", tags=["stripe-webhooks"])


def get_payment_gateway() -> PaymentGateway:
    """Get the Stripe-backed gateway."""
    return StripePaymentGateway()


def get_job_producer() -> JobProducer:
    return JobProducer()


def get_webhook_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    job_producer: JobProducer = Depends(get_job_producer),
) -> WebhookService:
    return WebhookService(db, gateway=gateway, job_producer=job_producer)


@router.post("", response_model=WebhookResult)
async def handle_stripe_webhook(
    request: Request, webhook_service: WebhookService = Depends(get_webhook_service)
) -> WebhookResult:
    """
    Handle a Stripe payment intent event.

    Processes:
    - payment_intent.succeeded
    - payment_intent.payment_failed

    Every other event type is acknowledged and ignored.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        return await asyncio.to_thread(webhook_service.process, payload, signature)
    except DomainException as exc:
        logger.warning(
            "stripe_webhook_rejected",
            extra={
                "event": "stripe_webhook_rejected",
                "code": exc.code,
                "status_code": exc.status_code,
            },
        )
        raise exc.to_http_exception()
    except Exception as e:
        logger.error(f"Error processing Stripe webhook: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to process webhook"
        )
