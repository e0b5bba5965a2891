from typing import List, Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    kind = "ServiceError"

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ServiceError):
    """Payment input rejected locally. Never reaches the network layer."""

    kind = "ValidationError"

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors), status.HTTP_400_BAD_REQUEST)


class SubmissionRejected(ServiceError):
    """The ledger explicitly declined the payment."""

    kind = "SubmissionRejected"

    def __init__(self, message: str, status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY) -> None:
        super().__init__(message, status_code)


class SubmissionUnknownOutcome(ServiceError):
    """Timeout or transport failure; the payment may or may not have been applied."""

    kind = "SubmissionUnknownOutcome"

    def __init__(self, message: str, cause: Optional[str] = None) -> None:
        super().__init__(message, status.HTTP_504_GATEWAY_TIMEOUT)
        self.cause = cause


class ReceiptGenerationFailed(ServiceError):
    """Receipt could not be produced. Does not imply the payment failed."""

    kind = "ReceiptGenerationFailed"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)


class RefreshFailed(ServiceError):
    """Authoritative balances could not be re-fetched."""

    kind = "RefreshFailed"

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_502_BAD_GATEWAY)
