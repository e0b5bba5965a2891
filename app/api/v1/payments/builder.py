"""Turns a selection plus current balances into a validated, multi-line PaymentRequest.

Each selected category is settled in full: its line carries the whole
outstanding amount. The only way to pay part of what is owed is the custom
amount override, which is sent as one undifferentiated line.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from app.core.config import settings
from app.core.enums import PaymentMethod, PaymentPurpose, StudentIdentifierKind
from app.core.exceptions import ValidationError

from .schemas import FeeCategoryBalance, PaymentLineItem, PaymentRequest, TERMED_PURPOSES
from .selection import PaymentSelection

_TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class PaymentRules:
    min_amount: Decimal = Decimal("1")
    max_amount: Decimal = Decimal("1000000")
    max_decimals: int = 2
    term_sequence: bool = False
    book_fee_first: bool = False
    require_custom_purpose_name: bool = False
    custom_purpose_min_length: int = 3
    custom_purpose_max_length: int = 100

    @classmethod
    def from_settings(cls) -> "PaymentRules":
        return cls(
            max_amount=settings.max_payment_amount,
            term_sequence=settings.enforce_term_sequence,
            book_fee_first=settings.enforce_book_fee_first,
        )


def _decimal_places(amount: Decimal) -> int:
    exponent = amount.normalize().as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


class PaymentRequestBuilder:
    def __init__(self, rules: Optional[PaymentRules] = None) -> None:
        self.rules = rules or PaymentRules()

    def build(
        self,
        selection: PaymentSelection,
        balances: Sequence[FeeCategoryBalance],
        payment_method: PaymentMethod,
        student_identifier: Optional[str],
        *,
        identifier_kind: StudentIdentifierKind = StudentIdentifierKind.ADMISSION,
        custom_purpose: PaymentPurpose = PaymentPurpose.OTHER,
        remarks: Optional[str] = None,
    ) -> PaymentRequest:
        """Build one request. Raises ValidationError listing every problem found."""
        errors: List[str] = []
        identifier = (student_identifier or "").strip()
        if not identifier:
            errors.append("Student identifier is required")
        if not selection.is_valid():
            errors.append("Select at least one fee or enter a custom amount greater than 0")
            raise ValidationError(errors)

        if selection.uses_custom_amount:
            details = self._custom_line(selection, payment_method, custom_purpose, errors)
        else:
            details = self._category_lines(selection, balances, payment_method, errors)

        total = sum((d.paid_amount for d in details), Decimal("0"))
        if total <= 0:
            errors.append("Total amount must be greater than 0")
        if errors:
            raise ValidationError(errors)

        return PaymentRequest(
            student_identifier=identifier,
            identifier_kind=identifier_kind,
            details=details,
            remarks=(remarks or "").strip() or None,
        )

    # --- Lines ---
    def _custom_line(
        self,
        selection: PaymentSelection,
        payment_method: PaymentMethod,
        purpose: PaymentPurpose,
        errors: List[str],
    ) -> List[PaymentLineItem]:
        found = len(errors)
        amount = selection.custom_amount
        self._check_amount(amount, errors)
        name = (selection.custom_purpose_name or "").strip() or None
        if purpose == PaymentPurpose.OTHER:
            if not name:
                if self.rules.require_custom_purpose_name:
                    errors.append("Custom purpose name is required for OTHER payments")
            elif len(name) < self.rules.custom_purpose_min_length:
                errors.append(
                    f"Custom purpose name must be at least {self.rules.custom_purpose_min_length} characters long"
                )
            elif len(name) > self.rules.custom_purpose_max_length:
                errors.append(
                    f"Custom purpose name cannot exceed {self.rules.custom_purpose_max_length} characters"
                )
        if purpose in TERMED_PURPOSES:
            errors.append(f"{purpose.value} cannot be paid as a custom amount")
        if len(errors) > found or amount is None or amount <= 0:
            return []
        return [
            PaymentLineItem(
                purpose=purpose,
                term_number=None,
                paid_amount=amount,
                payment_method=payment_method,
                custom_purpose_name=name if purpose == PaymentPurpose.OTHER else None,
            )
        ]

    def _category_lines(
        self,
        selection: PaymentSelection,
        balances: Sequence[FeeCategoryBalance],
        payment_method: PaymentMethod,
        errors: List[str],
    ) -> List[PaymentLineItem]:
        known = {b.category for b in balances}
        for category in sorted(selection.categories, key=lambda c: c.code):
            if category not in known:
                errors.append(f"No balance found for {category.code}")

        details: List[PaymentLineItem] = []
        # balance order, not selection order
        for bal in balances:
            if bal.category not in selection.categories or bal.outstanding <= 0:
                continue
            self._check_amount(bal.outstanding, errors, label=bal.category.code)
            max_terms = TERMED_PURPOSES.get(bal.category.purpose)
            if max_terms is not None and bal.category.term_number > max_terms:
                errors.append(f"{bal.category.code}: term number must be between 1 and {max_terms}")
            details.append(
                PaymentLineItem(
                    purpose=bal.category.purpose,
                    term_number=bal.category.term_number if bal.category.purpose in TERMED_PURPOSES else None,
                    paid_amount=bal.outstanding.quantize(_TWO_PLACES),
                    payment_method=payment_method,
                    custom_purpose_name=bal.category.code if bal.category.purpose == PaymentPurpose.OTHER else None,
                )
            )

        self._check_duplicates(details, errors)
        if self.rules.term_sequence:
            self._check_term_sequence(details, errors)
        if self.rules.book_fee_first:
            self._check_book_fee_first(details, balances, errors)
        return details

    # --- Rules ---
    def _check_amount(self, amount: Optional[Decimal], errors: List[str], label: str = "Payment") -> None:
        if amount is None or amount <= 0:
            errors.append(f"{label}: amount must be greater than 0")
            return
        if amount < self.rules.min_amount:
            errors.append(f"{label}: amount must be at least {self.rules.min_amount}")
        if amount > self.rules.max_amount:
            errors.append(f"{label}: amount cannot exceed {self.rules.max_amount}")
        if _decimal_places(amount) > self.rules.max_decimals:
            errors.append(f"{label}: amount can have maximum {self.rules.max_decimals} decimal places")

    @staticmethod
    def _check_duplicates(details: List[PaymentLineItem], errors: List[str]) -> None:
        if sum(1 for d in details if d.purpose == PaymentPurpose.BOOK_FEE) > 1:
            errors.append("Book fee can only be paid once per transaction")
        names = [d.custom_purpose_name for d in details if d.purpose == PaymentPurpose.OTHER]
        if len(names) != len(set(names)):
            errors.append("Duplicate custom purpose payments are not allowed")

    @staticmethod
    def _check_term_sequence(details: List[PaymentLineItem], errors: List[str]) -> None:
        terms: Dict[PaymentPurpose, List[int]] = {}
        for d in details:
            if d.purpose in TERMED_PURPOSES and d.term_number is not None:
                terms.setdefault(d.purpose, []).append(d.term_number)
        for purpose, numbers in terms.items():
            numbers.sort()
            if any(b - a != 1 for a, b in zip(numbers, numbers[1:])):
                label = "Tuition" if purpose == PaymentPurpose.TUITION_FEE else "Transport"
                errors.append(f"{label} fee terms must be paid sequentially")

    @staticmethod
    def _check_book_fee_first(
        details: List[PaymentLineItem],
        balances: Sequence[FeeCategoryBalance],
        errors: List[str],
    ) -> None:
        book = next((b for b in balances if b.category.purpose == PaymentPurpose.BOOK_FEE), None)
        if book is None or book.outstanding <= 0:
            return
        if not any(d.purpose == PaymentPurpose.BOOK_FEE for d in details):
            errors.append("Book fee must be paid before processing any other payments")
