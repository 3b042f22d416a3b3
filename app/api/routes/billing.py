"""Tenant billing endpoints: checkout, billing info, portal, and cancellation."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import require_user
from app.clients.supabase_auth import AuthenticatedUser
from app.services.billing.checkout import CheckoutService, get_checkout_service
from app.services.billing.errors import BillingError, CheckoutError
from app.services.billing.reconciler import (
    BillingInfo,
    SubscriptionReconciler,
    get_subscription_reconciler,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateCheckoutRequest(BaseModel):
    price_id: str = Field(alias="priceId")
    success_url: str = Field(alias="successUrl")
    cancel_url: str = Field(alias="cancelUrl")
    gateway: str | None = None
    coupon_code: str | None = Field(default=None, alias="couponCode")

    model_config = ConfigDict(populate_by_name=True)


class CreateCheckoutResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    url: str
    gateway: str

    model_config = ConfigDict(populate_by_name=True)


class CreatePortalRequest(BaseModel):
    return_url: str = Field(alias="returnUrl")

    model_config = ConfigDict(populate_by_name=True)


class CreatePortalResponse(BaseModel):
    url: str
    note: str | None = None


class CancelSubscriptionResponse(BaseModel):
    status: str
    gateway: str | None = None


def _error_response(exc: Exception) -> JSONResponse:
    error_type = "checkout_error" if isinstance(exc, CheckoutError) else "runtime_error"
    return JSONResponse(status_code=400, content={"error": str(exc), "type": error_type})


@router.post("/create-checkout", response_model=CreateCheckoutResponse)
def create_checkout(
    payload: CreateCheckoutRequest,
    user: AuthenticatedUser = Depends(require_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Open a hosted checkout on the active gateway for ``priceId``."""
    try:
        session = service.start_checkout(
            user,
            payload.price_id,
            payload.success_url,
            payload.cancel_url,
            gateway=payload.gateway,
            coupon_code=payload.coupon_code,
        )
    except Exception as exc:
        logger.warning(
            "billing.checkout.failed",
            extra={"user_id": user.id, "error": str(exc), "code": getattr(exc, "code", None)},
        )
        return _error_response(exc)
    return CreateCheckoutResponse(
        session_id=session.session_id, url=session.url, gateway=session.gateway
    )


@router.post("/get-billing-info", response_model=BillingInfo)
def get_billing_info(
    user: AuthenticatedUser = Depends(require_user),
    reconciler: SubscriptionReconciler = Depends(get_subscription_reconciler),
):
    """Reconcile against the gateway and return plan, invoices, and timeline."""
    try:
        return reconciler.reconcile(user.id)
    except BillingError as exc:
        logger.warning(
            "billing.info.failed", extra={"user_id": user.id, "code": exc.code, "error": str(exc)}
        )
        return JSONResponse(status_code=400, content={"error": str(exc)})


@router.post(
    "/create-portal", response_model=CreatePortalResponse, response_model_exclude_none=True
)
def create_portal(
    payload: CreatePortalRequest,
    user: AuthenticatedUser = Depends(require_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        portal = service.create_portal(user, payload.return_url)
    except BillingError as exc:
        return _error_response(exc)
    return CreatePortalResponse(url=portal.url, note=portal.note)


@router.post("/cancel-subscription", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    user: AuthenticatedUser = Depends(require_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    try:
        result = service.cancel(user)
    except BillingError as exc:
        return _error_response(exc)
    return CancelSubscriptionResponse(status=result.status, gateway=result.gateway)
