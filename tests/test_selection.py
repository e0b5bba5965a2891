"""Selection model: categories and custom amount are mutually exclusive."""

from decimal import Decimal

from app.api.v1.payments.schemas import FeeCategory
from app.api.v1.payments.selection import PaymentSelection, SelectionModel

BOOK = FeeCategory.parse("BOOK")
TERM1 = FeeCategory.parse("TUITION_TERM_1")
TERM2 = FeeCategory.parse("TUITION_TERM_2")


def test_empty_selection_is_invalid() -> None:
    assert not SelectionModel().is_valid()


def test_toggle_category_on_and_off_round_trips() -> None:
    model = SelectionModel()
    model.toggle_category(BOOK, True)
    before = model.current
    model.toggle_category(TERM1, True)
    model.toggle_category(TERM1, False)
    assert model.current == before
    assert model.current.categories == frozenset({BOOK})


def test_selecting_category_clears_custom_amount() -> None:
    model = SelectionModel()
    model.set_custom_amount("750.00", "Lab fee")
    assert model.current.custom_amount == Decimal("750.00")
    model.toggle_category(TERM1, True)
    assert model.current.custom_amount is None
    assert model.current.categories == frozenset({TERM1})


def test_custom_amount_clears_categories() -> None:
    model = SelectionModel()
    model.toggle_category(BOOK, True)
    model.toggle_category(TERM2, True)
    model.set_custom_amount(Decimal("750"))
    assert model.current.categories == frozenset()
    assert model.current.custom_amount == Decimal("750")
    assert model.is_valid()


def test_empty_custom_amount_keeps_categories() -> None:
    model = SelectionModel()
    model.toggle_category(BOOK, True)
    model.set_custom_amount("")
    model.set_custom_amount(None)
    assert model.current.categories == frozenset({BOOK})


def test_non_positive_custom_amount_is_invalid() -> None:
    model = SelectionModel()
    model.toggle_category(BOOK, True)
    model.set_custom_amount("0")
    assert model.current.categories == frozenset()
    assert not model.is_valid()
    model.set_custom_amount(-10)
    assert not model.is_valid()


def test_unchecking_while_custom_amount_set_is_a_no_op() -> None:
    selection = PaymentSelection().with_custom_amount("100")
    assert selection.with_category(BOOK, False) is selection


def test_transitions_are_pure() -> None:
    original = PaymentSelection()
    updated = original.with_category(BOOK, True)
    assert original.categories == frozenset()
    assert updated.categories == frozenset({BOOK})


def test_observers_see_each_change() -> None:
    model = SelectionModel()
    seen = []
    unsubscribe = model.state.subscribe(seen.append)
    model.toggle_category(BOOK, True)
    model.set_custom_amount("200")
    model.clear()
    unsubscribe()
    model.toggle_category(TERM1, True)
    assert [s.is_valid() for s in seen] == [True, True, False]


def test_non_finite_custom_amount_is_ignored() -> None:
    model = SelectionModel()
    model.toggle_category(BOOK, True)
    for text in ("NaN", "Infinity", "-inf", "sNaN"):
        model.set_custom_amount(text)
    assert model.current.categories == frozenset({BOOK})
    assert model.current.custom_amount is None
    assert PaymentSelection().with_custom_amount(Decimal("NaN")).custom_amount is None
