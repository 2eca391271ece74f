from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    EXHAUSTED_RETRIES = "EXHAUSTED_RETRIES"
    DEPENDENCY_FAILURE = "DEPENDENCY_FAILURE"


class ConflictReason(str, Enum):
    ALREADY_REFERRED = "ALREADY_REFERRED"
    SELF_REFERRAL = "SELF_REFERRAL"
    ALREADY_REFERRED_OTHER_CODE = "ALREADY_REFERRED_OTHER_CODE"
    NOT_ELIGIBLE_FOR_CONVERSION = "NOT_ELIGIBLE_FOR_CONVERSION"
    CODE_ALREADY_EXISTS = "CODE_ALREADY_EXISTS"
    DOCUMENT_EXISTS = "DOCUMENT_EXISTS"


class LedgerError(Exception):
    kind: ErrorKind = ErrorKind.DEPENDENCY_FAILURE
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(LedgerError):
    kind = ErrorKind.INVALID_ARGUMENT
    status_code = 400


class RewardCalculationError(InvalidArgumentError):
    pass


class NotFoundError(LedgerError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(LedgerError):
    kind = ErrorKind.CONFLICT
    status_code = 409

    def __init__(self, message: str, reason: ConflictReason, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data

    @classmethod
    def already_referred(cls, code: str) -> "ConflictError":
        return cls("User already referred with this code", ConflictReason.ALREADY_REFERRED, {"referralCode": code})

    @classmethod
    def self_referral(cls) -> "ConflictError":
        return cls("Referrer cannot be the same as the referred user", ConflictReason.SELF_REFERRAL)

    @classmethod
    def already_referred_other_code(cls, code: str) -> "ConflictError":
        return cls(
            "User already referred with another code",
            ConflictReason.ALREADY_REFERRED_OTHER_CODE,
            {"referralCode": code},
        )

    @classmethod
    def not_eligible_for_conversion(cls, current_status: str) -> "ConflictError":
        return cls(
            "Referral not eligible for conversion",
            ConflictReason.NOT_ELIGIBLE_FOR_CONVERSION,
            {"currentStatus": current_status},
        )


class DocumentAlreadyExistsError(ConflictError):
    def __init__(self, collection: str, document_id: str):
        super().__init__(
            f"Document already exists in {collection}: {document_id}",
            ConflictReason.DOCUMENT_EXISTS,
            {"collection": collection, "documentId": document_id},
        )


class ExhaustedRetriesError(LedgerError):
    kind = ErrorKind.EXHAUSTED_RETRIES
    status_code = 500


class DependencyFailureError(LedgerError):
    kind = ErrorKind.DEPENDENCY_FAILURE
    status_code = 502


class DataInvalidError(DependencyFailureError):
    pass


class TransactionAbortedError(DependencyFailureError):
    pass


class DirectoryError(DependencyFailureError):
    pass


class PayoutError(DependencyFailureError):
    pass
