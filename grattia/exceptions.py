"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class GrattiaError(Exception):
    """Base exception for all Grattia errors."""

    pass


class CompanyNotFoundError(GrattiaError):
    """Raised when a company doesn't exist."""

    def __init__(self, company_id: UUID) -> None:
        self.company_id = company_id
        super().__init__(f"Company not found: {company_id}")


class MemberNotFoundError(GrattiaError):
    """Raised when a profile doesn't exist or is outside the expected company."""

    def __init__(self, member_id: UUID, company_id: UUID | None = None) -> None:
        self.member_id = member_id
        self.company_id = company_id
        if company_id is None:
            super().__init__(f"Member not found: {member_id}")
        else:
            super().__init__(f"Member {member_id} not found in company {company_id}")


class RewardNotFoundError(GrattiaError):
    """Raised when a reward doesn't exist or isn't visible to the company."""

    def __init__(self, reward_id: UUID) -> None:
        self.reward_id = reward_id
        super().__init__(f"Reward not found: {reward_id}")


class RedemptionNotFoundError(GrattiaError):
    """Raised when a redemption doesn't exist."""

    def __init__(self, redemption_id: UUID) -> None:
        self.redemption_id = redemption_id
        super().__init__(f"Redemption not found: {redemption_id}")


class InsufficientPointsError(GrattiaError):
    """Raised when a balance cannot cover a removal, gift or redemption."""

    def __init__(self, balance: int, required: int, message: str = "Insufficient points") -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"{message}. Balance: {balance}, Required: {required}")


class InvalidOperationError(GrattiaError):
    """Raised when a request is well-formed but not allowed in the current state."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class LastAdminError(GrattiaError):
    """Raised when removing a member would leave the company without an admin."""

    def __init__(self, company_id: UUID) -> None:
        self.company_id = company_id
        super().__init__("Cannot remove the last admin of a company")


class MemberAlreadyExistsError(GrattiaError):
    """Raised when inviting an email that already has a profile."""

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"A member with email {email} already exists")


class DuplicateRewardError(GrattiaError):
    """Raised when the same external product is imported twice for a company."""

    def __init__(self, source: str, external_id: str) -> None:
        self.source = source
        self.external_id = external_id
        super().__init__(f"Reward already imported: {source}/{external_id}")


class OutOfStockError(GrattiaError):
    """Raised when redeeming a reward with no stock left."""

    def __init__(self, reward_id: UUID) -> None:
        self.reward_id = reward_id
        super().__init__(f"Reward out of stock: {reward_id}")


class InvalidStatusTransitionError(GrattiaError):
    """Raised when a redemption status would move backwards or skip a terminal state."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid redemption status transition: {current} -> {target}")


class SubscriptionNotFoundError(GrattiaError):
    """Raised when a company has no active Stripe subscription."""

    def __init__(self, company_id: UUID) -> None:
        self.company_id = company_id
        super().__init__("Company subscription not found")


class PaymentNotCompletedError(GrattiaError):
    """Raised when a checkout session has not been paid."""

    def __init__(self, session_id: str, payment_status: str) -> None:
        self.session_id = session_id
        self.payment_status = payment_status
        super().__init__(f"Payment not completed (status: {payment_status})")


class WriteVerificationError(GrattiaError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(GrattiaError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class DatabaseError(GrattiaError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentProviderError(GrattiaError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class CatalogProviderError(GrattiaError):
    """Raised when a product catalog (Goody, Rye) request fails."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} catalog error: {message}")


class AuthenticationError(GrattiaError):
    """Raised when authentication fails (missing or invalid token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(GrattiaError):
    """Raised when the caller lacks the required role."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__("Insufficient permissions")
