from enum import Enum


class PaymentPurpose(str, Enum):
    ADMISSION_FEE = "ADMISSION_FEE"
    APPLICATION_FEE = "APPLICATION_FEE"
    BOOK_FEE = "BOOK_FEE"
    TUITION_FEE = "TUITION_FEE"
    TRANSPORT_FEE = "TRANSPORT_FEE"
    OTHER = "OTHER"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    UPI = "UPI"
    CARD = "CARD"
    ONLINE = "ONLINE"


class StudentIdentifierKind(str, Enum):
    ADMISSION = "ADMISSION"
    RESERVATION = "RESERVATION"
    ENROLLMENT = "ENROLLMENT"


class SubmissionState(str, Enum):
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RECEIPT_READY = "RECEIPT_READY"


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
