"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl, field_validator


class MemberStatus(str, Enum):
    """Profile lifecycle status."""

    INVITED = "invited"
    ACTIVE = "active"
    DEACTIVATED = "deactivated"


class SubscriptionStatus(str, Enum):
    """Company subscription status as stored locally."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    CANCELLED = "cancelled"


class PointsOperation(str, Enum):
    """Platform admin adjustment direction."""

    GRANT = "grant"
    REMOVE = "remove"


class PointTransactionType(str, Enum):
    """Member ledger entry type."""

    RECOGNITION = "recognition"
    PLATFORM_GRANT = "platform_grant"
    PLATFORM_DEDUCTION = "platform_deduction"
    MEMBER_REMOVAL_RETURN = "member_removal_return"
    REDEMPTION = "redemption"
    REDEMPTION_REFUND = "redemption_refund"


class CompanyTransactionType(str, Enum):
    """Company ledger entry type."""

    PLATFORM_GRANT = "platform_grant"
    PLATFORM_DEDUCTION = "platform_deduction"
    STRIPE_PAYMENT = "stripe_payment"
    MEMBER_REMOVAL_RETURN = "member_removal_return"
    RECOGNITION_SPEND = "recognition_spend"


class SubscriptionEventType(str, Enum):
    """Append-only billing audit event type."""

    SUBSCRIPTION_CREATED = "subscription_created"
    QUANTITY_UPDATED = "quantity_updated"
    CANCELLED = "cancelled"
    MEMBER_ADDED = "member_added"


class RewardSource(str, Enum):
    """External catalog a reward was imported from."""

    GOODY = "goody"
    RYE = "rye"


class RedemptionStatus(str, Enum):
    """Redemption fulfilment status."""

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class AllocationStatus(str, Enum):
    """Per-company outcome of a monthly allocation run."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


# ============================================================================
# Platform Points Models
# ============================================================================


class CompanyPointsAdjustmentRequest(BaseModel):
    """POST /v1/platform/company-points request body."""

    company_id: UUID
    amount: int = Field(..., gt=0)
    operation: PointsOperation
    description: str = Field(..., min_length=1, max_length=500)


class CompanyPointsAdjustmentResponse(BaseModel):
    """POST /v1/platform/company-points response."""

    success: bool = True
    operation: PointsOperation
    amount: int
    previous_balance: int
    new_balance: int
    company_name: str


class MemberPointsAdjustmentRequest(BaseModel):
    """POST /v1/platform/member-points request body."""

    company_id: UUID
    member_id: UUID
    amount: int = Field(..., gt=0)
    operation: PointsOperation
    description: str = Field(..., min_length=1, max_length=500)


class MemberPointsAdjustmentResponse(BaseModel):
    """POST /v1/platform/member-points response."""

    success: bool = True
    member_id: UUID
    operation: PointsOperation
    previous_points: int
    points_change: int
    new_points: int
    description: str


class BalanceAuditResponse(BaseModel):
    """GET /v1/platform/members/{member_id}/balance-audit response."""

    member_id: UUID
    stored_points: int
    ledger_points: int
    consistent: bool


# ============================================================================
# Recognition Models
# ============================================================================


class GivePointsRequest(BaseModel):
    """POST /v1/points/give request body."""

    recipient_id: UUID
    points: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)


class GivePointsResponse(BaseModel):
    """POST /v1/points/give response."""

    success: bool = True
    transaction_id: UUID
    points: int
    sender_remaining: int
    recipient_points: int
    funded_by: Literal["company_balance", "monthly_allowance"]


class MonthlyBudgetResponse(BaseModel):
    """GET /v1/points/monthly-budget response."""

    allocation_month: str
    allocated: int
    spent: int
    remaining: int


class PointTransactionResponse(BaseModel):
    """Single member ledger entry."""

    id: UUID
    sender_profile_id: UUID | None
    recipient_profile_id: UUID | None
    points: int
    transaction_type: PointTransactionType
    description: str
    created_at: datetime


class PointHistoryResponse(BaseModel):
    """GET /v1/points/history response."""

    transactions: list[PointTransactionResponse]
    total_count: int


class LeaderboardEntry(BaseModel):
    """Single leaderboard row."""

    profile_id: UUID
    first_name: str
    last_name: str
    points_received: int


class LeaderboardResponse(BaseModel):
    """GET /v1/points/leaderboard response."""

    entries: list[LeaderboardEntry]


# ============================================================================
# Monthly Allocation Models
# ============================================================================


class CompanyAllocationResult(BaseModel):
    """Per-company outcome of a monthly allocation run."""

    company_id: UUID
    company_name: str
    status: AllocationStatus
    allocations: int = 0
    reason: str | None = None
    error: str | None = None


class MonthlyAllocationResponse(BaseModel):
    """POST /v1/jobs/monthly-points-allocation response."""

    success: bool = True
    total_companies_processed: int
    total_allocations: int
    results: list[CompanyAllocationResult]
    timestamp: datetime


# ============================================================================
# Billing Models
# ============================================================================


class PendingMember(BaseModel):
    """Member details carried through a checkout session as metadata."""

    email: str = Field(..., min_length=3, max_length=255)
    first_name: str = Field("", max_length=100)
    last_name: str = Field("", max_length=100)
    is_admin: bool = False


class SetupCheckoutRequest(BaseModel):
    """POST /v1/billing/setup-checkout request body."""

    origin: HttpUrl
    pending_member: PendingMember | None = None


class SubscriptionCheckoutRequest(BaseModel):
    """POST /v1/billing/subscription-checkout request body."""

    origin: HttpUrl
    employee_count: int = Field(..., gt=0)
    pending_member: PendingMember | None = None


class CheckoutSessionResponse(BaseModel):
    """Checkout session creation response."""

    session_id: str
    url: str


class VerifySessionRequest(BaseModel):
    """POST /v1/billing/verify-session request body."""

    session_id: str = Field(..., min_length=1, max_length=255)


class VerifySessionResponse(BaseModel):
    """POST /v1/billing/verify-session response."""

    success: bool = True
    subscription_id: str | None
    already_processed: bool = False


class UpdateSubscriptionRequest(BaseModel):
    """POST /v1/billing/update-subscription request body."""

    company_id: UUID
    new_quantity: int = Field(..., ge=0)


class UpdateSubscriptionResponse(BaseModel):
    """POST /v1/billing/update-subscription response."""

    success: bool = True
    message: str
    previous_quantity: int
    new_quantity: int
    amount_charged: int = 0
    cancelled: bool = False


class SubscriptionStatusResponse(BaseModel):
    """GET /v1/billing/subscription-status response."""

    has_subscription: bool
    status: SubscriptionStatus
    current_quantity: int = 0
    member_count: int
    next_billing_date: datetime | None = None
    amount_per_member: int


class PortalRequest(BaseModel):
    """POST /v1/billing/portal request body."""

    return_url: HttpUrl


class PortalResponse(BaseModel):
    """POST /v1/billing/portal response."""

    url: str


class PointsCheckoutRequest(BaseModel):
    """POST /v1/billing/points-checkout request body."""

    origin: HttpUrl
    points: int = Field(..., gt=0, le=10_000_000)


class PointsCheckoutResponse(BaseModel):
    """POST /v1/billing/points-checkout response."""

    session_id: str
    url: str
    points_cost_minor: int
    stripe_fee_minor: int
    total_amount_minor: int


class VerifyPointsPaymentResponse(BaseModel):
    """POST /v1/billing/verify-points-payment response."""

    success: bool = True
    message: str
    points_added: int
    new_balance: int


# ============================================================================
# Reward Catalog Models
# ============================================================================


class ImportRewardRequest(BaseModel):
    """POST /v1/rewards/import request body.

    ``reference`` is a Goody product id or, for Rye, an Amazon product URL.
    """

    source: RewardSource
    reference: str = Field(..., min_length=1, max_length=2048)
    multiplier: Decimal = Field(..., gt=0, le=1000)
    global_reward: bool = False
    stock: int | None = Field(None, ge=0)

    @field_validator("reference")
    @classmethod
    def strip_reference(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reference cannot be blank")
        return v


class RewardResponse(BaseModel):
    """Reward row as exposed to clients."""

    id: UUID
    company_id: UUID | None
    name: str
    description: str | None
    points_cost: int
    source: RewardSource
    external_id: str
    image_url: str | None
    brand_name: str | None
    stock: int | None


class RewardListResponse(BaseModel):
    """GET /v1/rewards response."""

    rewards: list[RewardResponse]


class CatalogProductResponse(BaseModel):
    """External catalog product as exposed to admins browsing a provider."""

    external_id: str
    name: str
    brand_name: str | None
    price_minor: int
    image_url: str | None
    is_gift_card: bool


class CatalogPageResponse(BaseModel):
    """GET /v1/catalog/goody response."""

    products: list[CatalogProductResponse]
    page: int
    per_page: int


# ============================================================================
# Member Models
# ============================================================================


class InviteMemberRequest(BaseModel):
    """POST /v1/members/invite request body."""

    email: str = Field(..., min_length=3, max_length=255)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    is_admin: bool = False
    department: str | None = Field(None, max_length=100)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain @")
        return v


class MemberResponse(BaseModel):
    """Profile as exposed to company admins."""

    id: UUID
    company_id: UUID
    email: str
    first_name: str
    last_name: str
    points: int
    is_admin: bool
    status: MemberStatus
    first_login_at: datetime | None


class RemoveMemberResponse(BaseModel):
    """DELETE /v1/members/{member_id} response."""

    success: bool = True
    message: str
    points_returned: int


class MonthlyLimitRequest(BaseModel):
    """PUT /v1/company/monthly-limit request body."""

    team_member_monthly_limit: int = Field(..., ge=0, le=1_000_000)


class MonthlyLimitResponse(BaseModel):
    """PUT /v1/company/monthly-limit response."""

    team_member_monthly_limit: int


# ============================================================================
# Redemption Models
# ============================================================================


class RedeemRequest(BaseModel):
    """POST /v1/redemptions request body."""

    reward_id: UUID


class RedemptionResponse(BaseModel):
    """Redemption row as exposed to clients."""

    id: UUID
    profile_id: UUID
    reward_id: UUID
    points_spent: int
    status: RedemptionStatus
    external_order_id: str | None
    created_at: datetime


class AdvanceRedemptionRequest(BaseModel):
    """POST /v1/platform/redemptions/{redemption_id}/status request body."""

    status: RedemptionStatus
    external_order_id: str | None = Field(None, max_length=255)
