"""Fixed-point money in integer minor units (cents).

Floats never enter an amount: values are built from ints, Decimals or numeric
strings, and every rounding step is explicit.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import total_ordering

from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

from repairhub.config import settings

_CENT = Decimal("0.01")


@total_ordering
@dataclass(frozen=True)
class Money:
    cents: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        if isinstance(self.cents, bool) or not isinstance(self.cents, int):
            raise TypeError(f"Money cents must be an int, got {type(self.cents).__name__}")

    @classmethod
    def of(cls, value: "Decimal | str | int | Money", currency: str | None = None) -> "Money":
        """Build from a major-unit amount: ``Money.of("199.99")``.

        Amounts with more than two decimal places are rejected rather than rounded.
        """
        if isinstance(value, Money):
            return value
        if isinstance(value, float):
            raise TypeError("Money does not accept floats; pass a Decimal or a string")
        try:
            amount = Decimal(value)
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"Not a monetary amount: {value!r}") from exc
        if not amount.is_finite():
            raise ValueError(f"Not a monetary amount: {value!r}")
        if amount != amount.quantize(_CENT):
            raise ValueError(f"Amount {value!r} has sub-cent precision")
        return cls(int(amount * 100), currency or settings.currency)

    @classmethod
    def zero(cls, currency: str | None = None) -> "Money":
        return cls(0, currency or settings.currency)

    def _check(self, other: object) -> "Money":
        if not isinstance(other, Money):
            raise TypeError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")
        return other

    def __add__(self, other: "Money") -> "Money":
        other = self._check(other)
        return Money(self.cents + other.cents, self.currency)

    def __radd__(self, other: object) -> "Money":
        # sum() starts from int 0
        if other == 0:
            return self
        return self.__add__(other)  # type: ignore[arg-type]

    def __sub__(self, other: "Money") -> "Money":
        other = self._check(other)
        return Money(self.cents - other.cents, self.currency)

    def __mul__(self, quantity: int) -> "Money":
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise TypeError("Money can only be multiplied by a whole quantity")
        return Money(self.cents * quantity, self.currency)

    def __lt__(self, other: "Money") -> bool:
        other = self._check(other)
        return self.cents < other.cents

    def percent(self, rate: Decimal, rounding: str = ROUND_HALF_UP) -> "Money":
        """Apply a fractional rate (0.15 = 15%), rounded to whole cents."""
        if isinstance(rate, float):
            raise TypeError("Rates must be Decimals")
        scaled = (Decimal(self.cents) * Decimal(rate)).quantize(Decimal("1"), rounding=rounding)
        return Money(int(scaled), self.currency)

    @property
    def is_zero(self) -> bool:
        return self.cents == 0

    @property
    def is_negative(self) -> bool:
        return self.cents < 0

    def to_decimal(self) -> Decimal:
        return (Decimal(self.cents) / 100).quantize(_CENT)

    def __str__(self) -> str:
        return str(self.to_decimal())


class MoneyType(TypeDecorator):
    """Persist Money as a BIGINT count of cents.

    Values load in the configured currency; models with a currency column
    rebind their amounts after load.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: Money | None, dialect) -> int | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        if not isinstance(value, Money):
            value = Money.of(value)
        return value.cents

    def process_result_value(self, value: int | None, dialect) -> Money | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        return Money(int(value), settings.currency)
