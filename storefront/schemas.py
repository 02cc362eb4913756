"""
Request and configuration schemas.

Checkout payloads and the payment-method configuration document are
validated with pydantic before any service touches the database.
"""
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------
class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1, description="State or governorate, used for shipping and tax")
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2)
    phone: Optional[str] = None


class CustomerInfo(BaseModel):
    email: EmailStr
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class CheckoutItem(BaseModel):
    product_id: int = Field(..., ge=1)
    quantity: int = Field(..., ge=1, le=1000)


class CheckoutRequest(BaseModel):
    items: Optional[List[CheckoutItem]] = Field(None, description="Explicit lines, required for guests")
    customer: Optional[CustomerInfo] = None
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: Literal["standard", "express", "overnight"] = "standard"
    payment_method: str = Field(..., min_length=2, max_length=40)
    coupon_code: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _non_empty_items(self):
        if self.items is not None and len(self.items) == 0:
            raise ValueError("items must not be empty")
        return self


# ---------------------------------------------------------------------------
# Payment-method configuration (one variant per method kind)
# ---------------------------------------------------------------------------
class MethodFee(BaseModel):
    type: Literal["percentage", "fixed"] = "fixed"
    value: float = Field(0, ge=0)


class Credentials(BaseModel):
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class MethodBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=2, max_length=40, pattern=r"^[a-z0-9_]+$")
    display_name: str = Field(..., min_length=1, max_length=80)
    description: Optional[str] = None
    instructions: Optional[str] = None
    icon: Optional[str] = None
    enabled: bool = True
    fees: MethodFee = Field(default_factory=MethodFee)
    min_amount: float = Field(0, ge=0)
    max_amount: Optional[float] = Field(None, ge=0)
    order: int = 0

    @model_validator(mode="after")
    def _amount_range(self):
        if self.max_amount is not None and self.max_amount < self.min_amount:
            raise ValueError("max_amount must be greater than or equal to min_amount")
        return self


class CardMethod(MethodBase):
    kind: Literal["card"]
    test_mode: bool = True
    credentials: Credentials = Field(default_factory=Credentials)


class CodMethod(MethodBase):
    kind: Literal["cod"]
    max_order_amount: Optional[float] = Field(None, ge=0)
    allowed_cities: List[str] = Field(default_factory=list)
    verification_required: bool = False


class BankTransferMethod(MethodBase):
    kind: Literal["bank_transfer"]
    bank_name: Optional[str] = None
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    iban: Optional[str] = None
    swift: Optional[str] = None


class WalletMethod(MethodBase):
    kind: Literal["wallet"]
    provider: str = Field(..., min_length=1)
    test_mode: bool = True
    credentials: Credentials = Field(default_factory=Credentials)


PaymentMethod = Annotated[
    Union[CardMethod, CodMethod, BankTransferMethod, WalletMethod],
    Field(discriminator="kind"),
]


class PaymentSettingsDocument(BaseModel):
    methods: List[PaymentMethod] = Field(default_factory=list)
    default_method: Optional[str] = None
    minimum_order_amount: float = Field(0, ge=0)

    @model_validator(mode="after")
    def _consistent(self):
        names = [m.name for m in self.methods]
        if len(names) != len(set(names)):
            raise ValueError("payment method names must be unique")
        if self.default_method is not None:
            default = self.get(self.default_method)
            if default is None:
                raise ValueError("default_method must reference a configured method")
            if not default.enabled:
                raise ValueError("default_method must reference an enabled method")
        return self

    def get(self, name):
        return next((m for m in self.methods if m.name == name), None)

    def ordered(self):
        return sorted(self.methods, key=lambda m: m.order)
