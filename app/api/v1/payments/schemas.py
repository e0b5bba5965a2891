"""Payment schemas: fee categories, balances, line items, requests, results and snapshots."""

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

from app.core.enums import PaymentMethod, PaymentPurpose, StudentIdentifierKind

TERMED_PURPOSES = {
    PaymentPurpose.TUITION_FEE: 3,
    PaymentPurpose.TRANSPORT_FEE: 2,
}

_PREFIX_TO_PURPOSE = {
    "BOOK": PaymentPurpose.BOOK_FEE,
    "ADMISSION": PaymentPurpose.ADMISSION_FEE,
    "APPLICATION": PaymentPurpose.APPLICATION_FEE,
    "OTHER": PaymentPurpose.OTHER,
    "TUITION": PaymentPurpose.TUITION_FEE,
    "TRANSPORT": PaymentPurpose.TRANSPORT_FEE,
}
_PURPOSE_TO_PREFIX = {v: k for k, v in _PREFIX_TO_PURPOSE.items()}
_CODE_RE = re.compile(r"^(?P<prefix>[A-Z]+?)(?:_FEE)?(?:_TERM_?(?P<term>\d+))?$")


# --- Fee category ---
class FeeCategory(BaseModel):
    """One payable line: a purpose plus, for tuition/transport, a term number.

    Accepts either a mapping or a code such as ``BOOK`` or ``TUITION_TERM_2``.
    """

    purpose: PaymentPurpose
    term_number: Optional[int] = Field(None, ge=1)

    class Config:
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def _from_code(cls, data: Any) -> Any:
        if isinstance(data, str):
            return cls._parse_code(data)
        return data

    @model_validator(mode="after")
    def _check_term(self) -> "FeeCategory":
        # term caps are a payment rule, checked by the builder
        if self.purpose not in TERMED_PURPOSES:
            if self.term_number is not None:
                raise ValueError(f"{self.purpose.value} does not take a term number")
        elif self.term_number is None:
            raise ValueError(f"{self.purpose.value} requires a term number")
        return self

    @staticmethod
    def _parse_code(code: str) -> Dict[str, Any]:
        match = _CODE_RE.match(code.strip().upper())
        if not match or match.group("prefix") not in _PREFIX_TO_PURPOSE:
            raise ValueError(f"Unknown fee category: {code}")
        term = match.group("term")
        return {
            "purpose": _PREFIX_TO_PURPOSE[match.group("prefix")],
            "term_number": int(term) if term else None,
        }

    @classmethod
    def parse(cls, code: str) -> "FeeCategory":
        return cls.model_validate(code)

    @computed_field
    @property
    def code(self) -> str:
        prefix = _PURPOSE_TO_PREFIX[self.purpose]
        if self.term_number is None:
            return prefix
        return f"{prefix}_TERM_{self.term_number}"

    def __str__(self) -> str:
        return self.code


# --- Balances ---
class RawFeeTotal(BaseModel):
    """A (category, total, paid) triple as returned by the balance service."""

    category: FeeCategory
    total: Optional[Decimal] = None
    paid: Optional[Decimal] = None


class FeeCategoryBalance(BaseModel):
    category: FeeCategory
    total_amount: Decimal
    paid_amount: Decimal
    outstanding: Decimal


class BalanceSnapshot(BaseModel):
    """Authoritative fee state of one student at fetch time."""

    student_identifier: str
    balances: List[FeeCategoryBalance]
    admission_status: Optional[str] = None
    reservation_status: Optional[str] = None
    fetched_at: datetime


# --- Payment request ---
class PaymentLineItem(BaseModel):
    purpose: PaymentPurpose
    term_number: Optional[int] = None
    paid_amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    custom_purpose_name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "purpose": self.purpose.value,
            "paid_amount": float(self.paid_amount),
            "payment_method": self.payment_method.value,
        }
        if self.term_number is not None:
            body["term_number"] = self.term_number
        if self.custom_purpose_name:
            body["custom_purpose_name"] = self.custom_purpose_name
        return body


class PaymentRequest(BaseModel):
    """One submission attempt. Built fresh from the current selection every time."""

    student_identifier: str = Field(..., min_length=1)
    identifier_kind: StudentIdentifierKind = StudentIdentifierKind.ADMISSION
    details: List[PaymentLineItem] = Field(..., min_length=1)
    remarks: Optional[str] = None

    class Config:
        frozen = True

    @property
    def total_amount(self) -> Decimal:
        return sum((d.paid_amount for d in self.details), Decimal("0"))

    def to_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"details": [d.to_payload() for d in self.details]}
        if self.remarks:
            body["remarks"] = self.remarks
        return body


class PaymentResult(BaseModel):
    """Ledger acknowledgment of an accepted payment."""

    transaction_reference: str
    receipt_no: Optional[str] = None
    snapshot: Optional[BalanceSnapshot] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# --- Router payloads ---
class PaymentSelectionPayload(BaseModel):
    """Selection sent by the admin UI: categories or a custom amount, never both."""

    categories: List[FeeCategory] = Field(default_factory=list)
    custom_amount: Optional[Decimal] = Field(None, gt=0)
    custom_purpose_name: Optional[str] = Field(None, max_length=100)
    payment_method: PaymentMethod = PaymentMethod.CASH
    identifier_kind: StudentIdentifierKind = StudentIdentifierKind.ADMISSION
    remarks: Optional[str] = None


class ReceiptInfo(BaseModel):
    transaction_reference: str
    receipt_no: Optional[str] = None
    filename: str
    content_type: str
    size: int
    generated_at: datetime


class PaymentOutcomeResponse(BaseModel):
    state: str
    transaction_reference: Optional[str] = None
    request: PaymentRequest
    receipt: Optional[ReceiptInfo] = None
    snapshot: Optional[BalanceSnapshot] = None
    warnings: List[str] = Field(default_factory=list)
