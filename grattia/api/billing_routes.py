"""
Billing Routes - Stripe checkout, seat subscriptions and points purchases.

All endpoints act on the caller's company and require the company admin role.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from grattia.api.dependencies import (
    get_auth_context,
    get_subscription_service,
    require_company_admin,
)
from grattia.api.errors import to_http_exception
from grattia.exceptions import GrattiaError
from grattia.models.api import (
    CheckoutSessionResponse,
    PointsCheckoutRequest,
    PointsCheckoutResponse,
    PortalRequest,
    PortalResponse,
    SetupCheckoutRequest,
    SubscriptionCheckoutRequest,
    SubscriptionStatusResponse,
    UpdateSubscriptionRequest,
    UpdateSubscriptionResponse,
    VerifyPointsPaymentResponse,
    VerifySessionRequest,
    VerifySessionResponse,
)
from grattia.models.domain import AuthContext
from grattia.services.subscriptions import SubscriptionService

router = APIRouter(prefix="/v1/billing", tags=["billing"])


@router.post("/setup-checkout", response_model=CheckoutSessionResponse)
async def create_setup_checkout(
    request: SetupCheckoutRequest,
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> CheckoutSessionResponse:
    """Put a card on file. The subscription starts when the first member logs in."""
    try:
        result = await subscriptions.create_setup_checkout(
            actor, str(request.origin), request.pending_member
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return CheckoutSessionResponse(session_id=result.session_id, url=result.url)


@router.post("/subscription-checkout", response_model=CheckoutSessionResponse)
async def create_subscription_checkout(
    request: SubscriptionCheckoutRequest,
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> CheckoutSessionResponse:
    try:
        result = await subscriptions.create_subscription_checkout(
            actor, str(request.origin), request.employee_count, request.pending_member
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return CheckoutSessionResponse(session_id=result.session_id, url=result.url)


@router.post("/verify-session", response_model=VerifySessionResponse)
async def verify_session(
    request: VerifySessionRequest,
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> VerifySessionResponse:
    """Confirm a completed setup or subscription checkout. Safe to repeat."""
    try:
        verified = await subscriptions.verify_checkout_session(actor, request.session_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return VerifySessionResponse(
        subscription_id=verified.subscription_id,
        already_processed=verified.already_processed,
    )


@router.post("/update-subscription", response_model=UpdateSubscriptionResponse)
async def update_subscription(
    request: UpdateSubscriptionRequest,
    actor: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> UpdateSubscriptionResponse:
    """
    Set the seat count. Zero cancels the subscription.

    Platform admins may act on any company.
    """
    own_company = actor.is_admin and request.company_id == actor.company_id
    if not (own_company or actor.is_platform_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot modify another company's subscription",
        )

    try:
        change = await subscriptions.update_subscription_quantity(
            request.company_id, request.new_quantity
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return UpdateSubscriptionResponse(
        message=change.message,
        previous_quantity=change.previous_quantity,
        new_quantity=change.new_quantity,
        amount_charged=change.amount_charged,
        cancelled=change.cancelled,
    )


@router.get("/subscription-status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionStatusResponse:
    try:
        report = await subscriptions.get_subscription_status(actor.company_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return SubscriptionStatusResponse(
        has_subscription=report.has_subscription,
        status=report.status,
        current_quantity=report.current_quantity,
        member_count=report.member_count,
        next_billing_date=report.next_billing_date,
        amount_per_member=report.amount_per_member,
    )


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    request: PortalRequest,
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> PortalResponse:
    try:
        url = await subscriptions.create_customer_portal(actor, str(request.return_url))
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return PortalResponse(url=url)


@router.post("/points-checkout", response_model=PointsCheckoutResponse)
async def create_points_checkout(
    request: PointsCheckoutRequest,
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> PointsCheckoutResponse:
    """
    Buy points for the company balance.

    The card processing fee is passed on as a second line item.
    """
    try:
        result, quote = await subscriptions.create_points_checkout(
            actor, str(request.origin), request.points
        )
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return PointsCheckoutResponse(
        session_id=result.session_id,
        url=result.url,
        points_cost_minor=quote.points_cost_minor,
        stripe_fee_minor=quote.stripe_fee_minor,
        total_amount_minor=quote.total_minor,
    )


@router.post("/verify-points-payment", response_model=VerifyPointsPaymentResponse)
async def verify_points_payment(
    request: VerifySessionRequest,
    actor: AuthContext = Depends(require_company_admin),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
) -> VerifyPointsPaymentResponse:
    try:
        result = await subscriptions.verify_points_payment(actor, request.session_id)
    except GrattiaError as exc:
        raise to_http_exception(exc) from exc
    return VerifyPointsPaymentResponse(
        message=result.message,
        points_added=result.points_added,
        new_balance=result.new_balance,
    )
