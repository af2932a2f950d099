"""
Payments API routes.

Thin HTTP layer over the payment application services: no gateway or
ledger details here.
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import (
    get_current_superuser,
    get_current_user,
    get_initiation_service,
    get_query_service,
    get_refund_service,
    get_verification_service,
    get_webhook_processor,
    rate_limit_user,
    rate_limit_webhook,
)
from api.middleware.request_id import get_client_ip
from application.dtos.payments import InitiatePayment, RefundCreate, VerifyPayment
from application.services.initiation_service import InitiationService
from application.services.refund_service import RefundService
from application.services.transaction_query_service import TransactionQueryService
from application.services.verification_service import VerificationService
from application.services.webhook_service import WebhookProcessor
from core.config import settings
from core.exceptions import ForbiddenException
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from domain.user.entity import User


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/initiate", summary="Start a payment for a plan")
async def initiate_payment(
    payload: InitiatePayment,
    current_user: User = Depends(rate_limit_user),
    service: InitiationService = Depends(get_initiation_service),
):
    result = await service.initiate(current_user, payload)
    return success_response(data=result.model_dump(mode="json"), message="Payment initiated")


@router.post("/verify", summary="Confirm a payment after checkout")
async def verify_payment(
    payload: VerifyPayment,
    current_user: User = Depends(rate_limit_user),
    service: VerificationService = Depends(get_verification_service),
):
    result = await service.verify(current_user, payload)
    return success_response(data=result.model_dump(mode="json"), message="Payment verified")


@router.get("/history", summary="List the caller's transactions")
async def payment_history(
    skip: int = Query(0, ge=0),
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    service: TransactionQueryService = Depends(get_query_service),
):
    items = await service.history(current_user, skip=skip, limit=limit)
    return success_response(data=[item.model_dump(mode="json") for item in items])


@router.get("/{transaction_id}", summary="Get one transaction")
async def get_transaction(
    transaction_id: str,
    current_user: User = Depends(get_current_user),
    service: TransactionQueryService = Depends(get_query_service),
):
    item = await service.get(current_user, transaction_id)
    return success_response(data=item.model_dump(mode="json"))


@router.post("/{transaction_id}/cancel", summary="Cancel an unpaid transaction")
async def cancel_payment(
    transaction_id: str,
    current_user: User = Depends(get_current_user),
    service: InitiationService = Depends(get_initiation_service),
):
    result = await service.cancel(current_user, transaction_id)
    return success_response(data=result.model_dump(mode="json"), message="Payment cancelled")


@router.post("/{transaction_id}/refunds", summary="Refund a completed transaction")
async def refund_payment(
    transaction_id: str,
    payload: RefundCreate,
    operator: User = Depends(get_current_superuser),
    service: RefundService = Depends(get_refund_service),
):
    logger.info("refund_requested_by_operator", transaction_id=transaction_id, operator_id=operator.id)
    result = await service.refund(transaction_id, payload)
    return success_response(data=result.model_dump(mode="json"), message="Refund processed")


@router.post("/webhook", summary="Gateway webhook", dependencies=[Depends(rate_limit_webhook)])
async def payments_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = get_client_ip() or (request.client.host if request.client else "")
        if not _ip_allowed(remote_ip, allowlist):
            logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
            raise ForbiddenException("Webhook source not allowed")

    raw_body = await request.body()
    signature = request.headers.get(payment_settings.webhook.signature_header)
    ack = await processor.process(raw_body, signature)
    return success_response(data=ack.model_dump(mode="json"), message="Webhook accepted")
