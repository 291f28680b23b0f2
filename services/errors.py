# Structured errors for the affiliate ledger
# Routers turn these into HTTP responses with {"error": code, "message": message}

from fastapi import HTTPException, status


class AffiliateError(Exception):
    code = "affiliate_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_detail(self) -> dict:
        detail = {"error": self.code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_detail())


# Validation errors (user-correctable)

class InvalidKyc(AffiliateError):
    code = "InvalidKyc"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidUpiFormat(AffiliateError):
    code = "InvalidUpiFormat"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidAadhaarLength(AffiliateError):
    code = "InvalidAadhaarLength"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidMonthKey(AffiliateError):
    code = "InvalidMonthKey"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidTierTable(AffiliateError):
    code = "InvalidTierTable"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


# State conflicts (not retried)

class AlreadyRequestedThisMonth(AffiliateError):
    code = "AlreadyRequestedThisMonth"
    status_code = status.HTTP_409_CONFLICT


class NothingToPay(AffiliateError):
    code = "NothingToPay"
    status_code = status.HTTP_400_BAD_REQUEST


class MonthNotClosed(AffiliateError):
    code = "MonthNotClosed"
    status_code = status.HTTP_400_BAD_REQUEST


class IllegalStatusTransition(AffiliateError):
    code = "IllegalStatusTransition"
    status_code = status.HTTP_409_CONFLICT


class ConcurrentUpdate(IllegalStatusTransition):
    """A conditional write lost to another transaction. Retried by run_in_transaction."""
    code = "ConcurrentUpdate"
    retryable = True



# Lookups

class NotAnAffiliate(AffiliateError):
    code = "NotAnAffiliate"
    status_code = status.HTTP_404_NOT_FOUND


class AffiliateNotFound(AffiliateError):
    code = "AffiliateNotFound"
    status_code = status.HTTP_404_NOT_FOUND


class PayoutNotFound(AffiliateError):
    code = "PayoutNotFound"
    status_code = status.HTTP_404_NOT_FOUND


class FlagNotFound(AffiliateError):
    code = "FlagNotFound"
    status_code = status.HTTP_404_NOT_FOUND
