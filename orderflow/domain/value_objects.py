"""Value Objects for the domain layer.

Value objects are immutable objects that are defined by their attributes
rather than identity. They are interchangeable when their values are equal.
"""

from dataclasses import asdict, dataclass
from typing import Any, Self

from orderflow.domain.base import ValueObject
from orderflow.domain.exceptions import CurrencyMismatchError, NegativeMoneyError


# ============================================================================
# Money Value Object
# ============================================================================


@dataclass(frozen=True)
class Money(ValueObject):
    """Non-negative amount in minor units of one currency.

    Order totals are recomputed with Money so that a cart line priced in
    a different currency fails instead of being summed.

    Attributes:
        amount_cents: Amount in smallest currency unit (e.g., cents).
        currency: ISO 4217 currency code (e.g., 'USD', 'EUR').
    """

    amount_cents: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        """Validate money constraints."""
        if self.amount_cents < 0:
            raise NegativeMoneyError(self.amount_cents)
        object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = "USD") -> Self:
        """Create zero amount money.

        Args:
            currency: Currency code.

        Returns:
            Money with zero amount.
        """
        return cls(amount_cents=0, currency=currency)

    def __add__(self, other: "Money") -> "Money":
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)
        return Money(
            amount_cents=self.amount_cents + other.amount_cents,
            currency=self.currency,
        )

    def __sub__(self, other: "Money") -> "Money":
        """Subtract money amounts.

        Raises:
            CurrencyMismatchError: If currencies don't match.
            NegativeMoneyError: If result would be negative.
        """
        if self.currency != other.currency:
            raise CurrencyMismatchError(self.currency, other.currency)
        return Money(
            amount_cents=self.amount_cents - other.amount_cents,
            currency=self.currency,
        )

    def __mul__(self, quantity: int) -> "Money":
        return Money(
            amount_cents=self.amount_cents * quantity,
            currency=self.currency,
        )

    def __rmul__(self, quantity: int) -> "Money":
        return self.__mul__(quantity)


# ============================================================================
# Address Value Object
# ============================================================================


@dataclass(frozen=True)
class Address(ValueObject):
    """Shipping or billing address attached to a checkout session.

    Addresses are accepted as entered; completeness is checked when the
    customer tries to leave the step that needs them, not on construction.

    Attributes:
        first_name: Recipient first name.
        last_name: Recipient last name.
        address1: Primary address line.
        city: City name.
        state: State/province/region.
        postal_code: Postal/ZIP code.
        country: ISO 3166-1 alpha-2 country code.
        phone: Contact phone number.
        address2: Secondary address line (optional).
        company: Company name (optional).
    """

    first_name: str = ""
    last_name: str = ""
    address1: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    phone: str = ""
    address2: str | None = None
    company: str | None = None

    REQUIRED_FIELDS = (
        "first_name",
        "last_name",
        "address1",
        "city",
        "state",
        "postal_code",
        "country",
        "phone",
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "country", self.country.strip().upper())

    def missing_fields(self) -> list[str]:
        """List required fields that are blank.

        Returns:
            Field names in declaration order.
        """
        return [name for name in self.REQUIRED_FIELDS if not str(getattr(self, name)).strip()]

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()

    def format_single_line(self) -> str:
        """Format address as single line."""
        parts = [f"{self.first_name} {self.last_name}".strip(), self.address1]
        if self.address2:
            parts.append(self.address2)
        parts.extend([self.city, self.state, self.postal_code, self.country])
        return ", ".join(p for p in parts if p)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ============================================================================
# Checkout Method Selections
# ============================================================================


@dataclass(frozen=True)
class ShippingMethod(ValueObject):
    """Shipping option chosen at checkout.

    Attributes:
        id: Carrier/service identifier.
        name: Display name.
        cost_cents: Price of the option.
        carrier: Carrier name (optional).
    """

    id: str
    name: str
    cost_cents: int = 0
    carrier: str | None = None

    def __post_init__(self) -> None:
        if self.cost_cents < 0:
            raise NegativeMoneyError(self.cost_cents)


@dataclass(frozen=True)
class PaymentMethod(ValueObject):
    """Payment option chosen at checkout.

    Attributes:
        code: Method code (e.g. "card", "bank_transfer", "cash").
        name: Display name.
    """

    code: str
    name: str = ""

    @property
    def is_cash(self) -> bool:
        return self.code.lower() in {"cash", "cash_on_delivery", "cod"}
