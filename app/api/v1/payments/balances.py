"""Outstanding balance derivation. Pure functions, safe to call on every render."""

from decimal import Decimal
from typing import Iterable, List, Optional

from app.core.enums import PaymentPurpose

from .schemas import FeeCategory, FeeCategoryBalance, RawFeeTotal, TERMED_PURPOSES


def _to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    return val if isinstance(val, Decimal) else Decimal(str(val))


def compute_outstanding(total, paid) -> Decimal:
    """max(0, total - paid), with missing values as 0 and negative inputs clamped at source."""
    total_d = max(Decimal("0"), _to_decimal(total))
    paid_d = max(Decimal("0"), _to_decimal(paid))
    return max(Decimal("0"), total_d - paid_d)


def calculate_balance(row: RawFeeTotal) -> FeeCategoryBalance:
    return FeeCategoryBalance(
        category=row.category,
        total_amount=max(Decimal("0"), _to_decimal(row.total)),
        paid_amount=max(Decimal("0"), _to_decimal(row.paid)),
        outstanding=compute_outstanding(row.total, row.paid),
    )


def calculate_balances(rows: Iterable[RawFeeTotal]) -> List[FeeCategoryBalance]:
    return [calculate_balance(r) for r in rows]


def total_outstanding(balances: Iterable[FeeCategoryBalance]) -> Decimal:
    return sum((b.outstanding for b in balances), Decimal("0"))


def balance_for(
    balances: Iterable[FeeCategoryBalance], category: FeeCategory
) -> Optional[FeeCategoryBalance]:
    for b in balances:
        if b.category == category:
            return b
    return None


def available_terms(
    balances: List[FeeCategoryBalance], purpose: PaymentPurpose
) -> List[int]:
    """Terms of ``purpose`` that can be paid now.

    A term is available when it has outstanding and either it is term 1, the
    previous term is fully settled, or it has already been partially paid.
    """
    max_terms = TERMED_PURPOSES.get(purpose)
    if max_terms is None:
        return []
    result: List[int] = []
    previous_settled = True
    for term in range(1, max_terms + 1):
        bal = balance_for(balances, FeeCategory(purpose=purpose, term_number=term))
        if bal is None:
            previous_settled = True
            continue
        partially_paid = bal.paid_amount > 0 and bal.outstanding > 0
        if bal.outstanding > 0 and (term == 1 or previous_settled or partially_paid):
            result.append(term)
        previous_settled = bal.outstanding == 0
    return result
