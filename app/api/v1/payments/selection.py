"""Which fee categories are selected for the current payment, or a custom override amount."""

from decimal import Decimal, InvalidOperation
from typing import FrozenSet, Optional, Union

from pydantic import BaseModel, model_validator

from app.core.observable import Observable

from .schemas import FeeCategory

AmountLike = Union[Decimal, int, float, str, None]


def _parse_amount(amount: AmountLike) -> Optional[Decimal]:
    if amount is None:
        return None
    if isinstance(amount, str):
        amount = amount.strip()
        if not amount:
            return None
    try:
        amount = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount


class PaymentSelection(BaseModel):
    """Immutable selection value. Categories and custom amount are mutually exclusive."""

    categories: FrozenSet[FeeCategory] = frozenset()
    custom_amount: Optional[Decimal] = None
    custom_purpose_name: Optional[str] = None

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _exclusive(self) -> "PaymentSelection":
        if self.categories and self.custom_amount is not None:
            raise ValueError("A selection holds categories or a custom amount, not both")
        return self

    @property
    def uses_custom_amount(self) -> bool:
        return self.custom_amount is not None

    def with_category(self, category: FeeCategory, included: bool) -> "PaymentSelection":
        """Include or exclude a category. Including one drops any custom amount."""
        if included:
            return PaymentSelection(categories=self.categories | {category})
        if self.custom_amount is not None:
            return self
        return PaymentSelection(categories=self.categories - {category})

    def with_custom_amount(
        self, amount: AmountLike, purpose_name: Optional[str] = None
    ) -> "PaymentSelection":
        """Set the override amount. A non-empty amount drops every category; an empty one clears it."""
        value = _parse_amount(amount)
        if value is None:
            if self.custom_amount is None:
                return self
            return PaymentSelection()
        return PaymentSelection(custom_amount=value, custom_purpose_name=purpose_name)

    def is_valid(self) -> bool:
        if self.custom_amount is not None:
            return self.custom_amount > 0
        return bool(self.categories)


class SelectionModel:
    """Mutable holder of the current selection, observable by the payment dialog."""

    def __init__(self, initial: Optional[PaymentSelection] = None) -> None:
        self.state: Observable[PaymentSelection] = Observable(initial or PaymentSelection())

    @property
    def current(self) -> PaymentSelection:
        return self.state.value

    def toggle_category(self, category: FeeCategory, included: bool) -> PaymentSelection:
        return self._replace(self.current.with_category(category, included))

    def set_custom_amount(self, amount: AmountLike, purpose_name: Optional[str] = None) -> PaymentSelection:
        return self._replace(self.current.with_custom_amount(amount, purpose_name))

    def clear(self) -> PaymentSelection:
        return self._replace(PaymentSelection())

    def is_valid(self) -> bool:
        return self.current.is_valid()

    def _replace(self, selection: PaymentSelection) -> PaymentSelection:
        if selection is not self.current:
            self.state.set(selection)
        return selection
