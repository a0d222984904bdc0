"""
Domain error to HTTP status mapping shared by the route modules.
"""

from fastapi import HTTPException, status
from structlog import get_logger

from grattia.exceptions import (
    AuthenticationError,
    AuthorizationError,
    CatalogProviderError,
    CompanyNotFoundError,
    DatabaseError,
    DataIntegrityError,
    DuplicateRewardError,
    GrattiaError,
    InsufficientPointsError,
    InvalidOperationError,
    InvalidStatusTransitionError,
    LastAdminError,
    MemberAlreadyExistsError,
    MemberNotFoundError,
    OutOfStockError,
    PaymentNotCompletedError,
    PaymentProviderError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    SubscriptionNotFoundError,
    WriteVerificationError,
)

logger = get_logger(__name__)

# Checked in order, so subclasses must precede their bases
_STATUS_BY_ERROR: tuple[tuple[type[GrattiaError], int], ...] = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (CompanyNotFoundError, status.HTTP_404_NOT_FOUND),
    (MemberNotFoundError, status.HTTP_404_NOT_FOUND),
    (RewardNotFoundError, status.HTTP_404_NOT_FOUND),
    (RedemptionNotFoundError, status.HTTP_404_NOT_FOUND),
    (SubscriptionNotFoundError, status.HTTP_404_NOT_FOUND),
    (MemberAlreadyExistsError, status.HTTP_409_CONFLICT),
    (DuplicateRewardError, status.HTTP_409_CONFLICT),
    (InsufficientPointsError, status.HTTP_400_BAD_REQUEST),
    (InvalidOperationError, status.HTTP_400_BAD_REQUEST),
    (InvalidStatusTransitionError, status.HTTP_400_BAD_REQUEST),
    (LastAdminError, status.HTTP_400_BAD_REQUEST),
    (OutOfStockError, status.HTTP_400_BAD_REQUEST),
    (PaymentNotCompletedError, status.HTTP_400_BAD_REQUEST),
    (PaymentProviderError, status.HTTP_502_BAD_GATEWAY),
    (CatalogProviderError, status.HTTP_502_BAD_GATEWAY),
)

_INTERNAL_ERRORS = (WriteVerificationError, DataIntegrityError, DatabaseError)


def to_http_exception(exc: GrattiaError) -> HTTPException:
    """
    Translate a domain error into the HTTPException the client sees.

    Write-verification and integrity failures are logged and hidden
    behind a generic 500.
    """
    if isinstance(exc, _INTERNAL_ERRORS):
        logger.error("request_integrity_failure", error=str(exc), error_type=type(exc).__name__)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        )

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))

    logger.error("unmapped_domain_error", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal server error",
    )
