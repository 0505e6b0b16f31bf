"""
Carrier webhook receiver

Carriers that push scan updates post them here. The update goes through
the same reconciler as pulled tracking results, so the terminal latch and
conditional write apply equally to both paths.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.deps import get_carriers, get_reconciler, http_error
from app.core.exceptions import SwiftoraBaseError
from app.models.carrier import CarrierCode
from app.modules.shipping.carriers.base import BaseCarrier
from app.schemas.shipping import WebhookResponse
from app.services.order_reconciler import OrderReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{carrier}", response_model=WebhookResponse)
async def receive_carrier_webhook(
    carrier: str,
    request: Request,
    carriers: List[BaseCarrier] = Depends(get_carriers),
    reconciler: OrderReconciler = Depends(get_reconciler),
):
    try:
        code = CarrierCode(carrier.upper())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown carrier: {carrier}")

    client = next((c for c in carriers if c.carrier_code == code), None)
    if client is None:
        raise HTTPException(status_code=404, detail=f"Carrier {code.value} is not enabled")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Webhook body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    try:
        result = client.parse_webhook(payload)
    except SwiftoraBaseError as e:
        raise http_error(e)

    if not result.waybill:
        logger.warning(f"{code.value} webhook without a waybill: {list(payload.keys())}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload has no waybill",
        )

    outcome = await reconciler.reconcile(result.waybill, result)
    logger.info(f"{code.value} webhook for {result.waybill}: {outcome.value}")

    return WebhookResponse(success=True, waybill=result.waybill, outcome=outcome.value)
