"""
Coaching API Routes

Endpoints:
- GET  /api/coaching/packages - Package catalog
- POST /api/payments/create-intent - Create a payment for a package
- POST /api/payments/confirm - Confirm a payment and issue the coaching session
- POST /api/payments/refund - Refund a payment
- POST /api/webhooks/stripe - Stripe webhook handler
- GET  /api/connect/coach/{provider_id}/transfers - Merged earnings view
- POST /api/connect/create-account - Create a coach connected account
- POST /api/connect/start-onboarding - Create the account and return an onboarding link
- POST /api/connect/account/{account_ref}/onboarding-link - Onboarding link for an account
- GET  /api/connect/coach/{provider_id}/onboarding-link - Onboarding link for a coach
- GET  /api/connect/coach/{provider_id}/status - Connected account status
- GET  /api/conversations/{conversation_id}/messages - Message history
- POST /api/conversations/{conversation_id}/messages - Send a message (guarded)
- POST /api/conversations/{conversation_id}/read - Reset unread count
- GET  /api/conversations/{conversation_id}/quota - Remaining clips and texts
- GET  /api/conversations/{user_id}/{role} - A user's conversations
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .dependencies import CoachingServices, get_services
from .errors import CoachingError, EntitlementPersistFailure, SignatureError
from .models import (
    ConfirmPaymentRequest,
    CreateAccountRequest,
    CreateCheckoutRequest,
    MarkReadRequest,
    OnboardingLinkRequest,
    QuotaResponse,
    RefundRequest,
    SendMessageRequest,
    TransferListing,
)
from .package_catalog import list_packages

logger = logging.getLogger(__name__)

catalog_router = APIRouter(prefix="/coaching", tags=["Coaching"])
payments_router = APIRouter(prefix="/payments", tags=["Payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
connect_router = APIRouter(prefix="/connect", tags=["Connect"])
conversations_router = APIRouter(prefix="/conversations", tags=["Conversations"])


def _http_error(err: CoachingError) -> HTTPException:
    return HTTPException(status_code=err.status_code, detail=err.to_dict())


# ==================== CATALOG ====================

@catalog_router.get("/packages")
async def get_packages():
    return {"packages": [p.model_dump() for p in list_packages()]}


# ==================== PAYMENTS ====================

@payments_router.post("/create-intent")
async def create_payment_intent(
    request: CreateCheckoutRequest,
    services: CoachingServices = Depends(get_services),
):
    """
    Create a payment for a coaching package.

    The package, fee split and routing mode are embedded in the payment
    metadata so the webhook can issue the session on its own.
    """
    try:
        return await services.checkout.create_checkout(
            provider_id=request.coach_id,
            provider_name=request.coach_name,
            sport=request.sport,
            tier=request.tier,
            player_id=request.player_id,
            player_name=request.player_name,
            customer_email=request.customer_email,
            routing_mode=request.routing_mode,
        )
    except CoachingError as e:
        raise _http_error(e)


@payments_router.post("/confirm")
async def confirm_payment(
    request: ConfirmPaymentRequest,
    services: CoachingServices = Depends(get_services),
):
    try:
        result = await services.checkout.confirm_payment(request.payment_intent_id)
    except CoachingError as e:
        raise _http_error(e)

    return {
        "success": True,
        "created": result.created,
        "session": result.entitlement.model_dump(mode="json"),
        "conversation_id": result.conversation_id,
        "transfer": result.transfer.model_dump(mode="json") if result.transfer else None,
        "routing_error": result.routing_error,
    }


@payments_router.post("/refund")
async def refund_payment(
    request: RefundRequest,
    services: CoachingServices = Depends(get_services),
):
    try:
        refund = await services.checkout.refund(request.payment_intent_id, request.amount, request.reason)
    except CoachingError as e:
        raise _http_error(e)
    return refund.model_dump()


# ==================== WEBHOOKS ====================

@webhooks_router.post("/stripe")
async def stripe_webhook(request: Request, services: CoachingServices = Depends(get_services)):
    """
    Handle Stripe webhook events.

    400 on a bad signature, 500 when a paid session could not be written
    (Stripe redelivers), 200 for everything else, routing failures included.
    """
    payload = await request.body()
    try:
        event = services.webhooks.verify_webhook(payload, request.headers.get("stripe-signature"))
    except SignatureError as e:
        raise _http_error(e)

    try:
        return await services.webhooks.handle_event(event)
    except EntitlementPersistFailure as e:
        raise _http_error(e)
    except CoachingError as e:
        logger.error(f"Webhook {event.get('type')} failed: {e.message}")
        raise HTTPException(status_code=500, detail=e.to_dict())


# ==================== CONNECT ====================

@connect_router.get("/coach/{provider_id}/transfers", response_model=TransferListing)
async def get_coach_transfers(
    provider_id: str,
    limit: int = Query(50, ge=1, le=200),
    services: CoachingServices = Depends(get_services),
):
    return await services.reconciler.list_provider_transfers(provider_id, limit)


@connect_router.post("/create-account")
async def create_connect_account(
    request: CreateAccountRequest,
    services: CoachingServices = Depends(get_services),
):
    try:
        account = await services.accounts.create_account(
            request.coach_id, request.coach_name, request.email, request.sport,
            request.country, request.business_type,
        )
    except CoachingError as e:
        raise _http_error(e)
    return {"success": True, "account": account.model_dump(mode="json")}


@connect_router.post("/start-onboarding")
async def start_onboarding(
    request: CreateAccountRequest,
    services: CoachingServices = Depends(get_services),
):
    """Create (or reuse) the coach's connected account and return the hosted onboarding URL."""
    try:
        account, link = await services.accounts.start_onboarding(
            request.coach_id, request.coach_name, request.email, request.sport,
            request.country, request.business_type,
        )
    except CoachingError as e:
        raise _http_error(e)
    return {
        "success": True,
        "account": account.model_dump(mode="json"),
        "onboarding_link": link.model_dump(mode="json"),
    }


@connect_router.post("/account/{account_ref}/onboarding-link")
async def create_account_onboarding_link(
    account_ref: str,
    request: Optional[OnboardingLinkRequest] = None,
    services: CoachingServices = Depends(get_services),
):
    request = request or OnboardingLinkRequest()
    try:
        link = await services.accounts.create_onboarding_link(account_ref, request.refresh_url, request.return_url)
    except CoachingError as e:
        raise _http_error(e)
    return {"success": True, "onboarding_link": link.model_dump(mode="json")}


@connect_router.get("/coach/{provider_id}/onboarding-link")
async def get_coach_onboarding_link(
    provider_id: str,
    refresh_url: Optional[str] = None,
    return_url: Optional[str] = None,
    services: CoachingServices = Depends(get_services),
):
    try:
        account, link = await services.accounts.provider_onboarding_link(provider_id, refresh_url, return_url)
    except CoachingError as e:
        raise _http_error(e)
    return {
        "success": True,
        "onboarding_link": link.model_dump(mode="json"),
        "account": account.model_dump(mode="json"),
    }


@connect_router.get("/coach/{provider_id}/status")
async def get_coach_account_status(provider_id: str, services: CoachingServices = Depends(get_services)):
    account = await services.accounts.refresh_status(provider_id)
    if not account:
        return {"provider_id": provider_id, "connected": False, "usable": False}
    return {
        "connected": bool(account.processor_account_ref),
        "usable": account.is_usable,
        **account.model_dump(mode="json"),
    }


# ==================== CONVERSATIONS ====================

@conversations_router.get("/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    services: CoachingServices = Depends(get_services),
):
    try:
        messages = await services.conversations.list_messages(conversation_id, limit, offset)
    except CoachingError as e:
        raise _http_error(e)
    return {"messages": [m.model_dump(mode="json") for m in messages], "count": len(messages)}


@conversations_router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    services: CoachingServices = Depends(get_services),
):
    """
    Send a message. Player messages pass the entitlement guard first:
    403 expired, 402 no clips left, 429 daily text limit.
    """
    try:
        message = await services.guard.send_message(
            conversation_id,
            request.sender_role,
            request.sender_id,
            request.type,
            request.content,
            request.video_uri,
        )
    except CoachingError as e:
        raise _http_error(e)
    return {"accepted": True, "message": message.model_dump(mode="json")}


@conversations_router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    request: MarkReadRequest,
    services: CoachingServices = Depends(get_services),
):
    try:
        conversation = await services.conversations.mark_read(conversation_id, request.role)
    except CoachingError as e:
        raise _http_error(e)
    return conversation.model_dump(mode="json")


@conversations_router.get("/{conversation_id}/quota", response_model=QuotaResponse)
async def get_quota(conversation_id: str, services: CoachingServices = Depends(get_services)):
    try:
        return await services.guard.get_remaining_quota(conversation_id)
    except CoachingError as e:
        raise _http_error(e)


# Declared last so /{id}/messages and /{id}/quota match first
@conversations_router.get("/{user_id}/{role}")
async def list_conversations(
    user_id: str,
    role: Literal["player", "provider"],
    services: CoachingServices = Depends(get_services),
):
    conversations = await services.conversations.list_conversations(user_id, role)
    return {
        "conversations": [c.model_dump(mode="json") for c in conversations],
        "count": len(conversations),
    }


ALL_ROUTERS = [catalog_router, payments_router, webhooks_router, connect_router, conversations_router]
