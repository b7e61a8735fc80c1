from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator
from typing import Annotated, Any, List, Literal, Optional, Union
from datetime import datetime
from decimal import Decimal
import enum

from order_pipeline.status import AttemptStatus, OrderStatus, PaymentType


class CartItem(BaseModel):
    product_id: str = Field(..., examples=["product-1"])
    manufacturer_id: str = Field(..., examples=["mfr-1"])
    quantity: int = Field(..., gt=0, examples=[10])
    unit_price: Decimal = Field(..., ge=0)
    base_price: Decimal = Field(..., ge=0, description="Cost basis paid out to the manufacturer per unit")
    your_margin: Decimal = Field(Decimal("0"), ge=0, description="Platform margin per unit")
    ship_cost: Decimal = Field(Decimal("0"), ge=0)
    tax_rate: float = 0
    courier_name: Optional[str] = None
    courier_company_id: Optional[int] = None


class PriceBreakdown(BaseModel):
    total_product_amount: Decimal = Field(..., ge=0)
    remaining_balance: Decimal = Field(Decimal("0"), ge=0)
    total_shipping_amount: Optional[Decimal] = None
    payable_amount: Optional[Decimal] = None


class ShippingAddress(BaseModel):
    address: str
    city: str
    state: str
    pincode: str
    name: Optional[str] = None
    phone: Optional[str] = None

    def flatten(self) -> str:
        return f"{self.address}, {self.city}, {self.state} - {self.pincode}"


class Attribution(BaseModel):
    model_config = ConfigDict(extra="allow")

    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    fbclid: Optional[str] = None
    gclid: Optional[str] = None


class CheckoutAttemptCreate(BaseModel):
    gateway_order_id: str
    user_id: str
    cart_payload: List[CartItem] = Field(..., min_length=1)
    payment_breakdown: PriceBreakdown
    shipping_address: ShippingAddress


class CheckoutAttemptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    gateway_order_id: str
    user_id: str
    status: AttemptStatus
    payment_id: Optional[str] = None
    created_at: datetime


class RecoveryPayload(BaseModel):
    """Everything needed to materialize orders without a stored attempt."""
    user_id: str
    cart_payload: List[CartItem] = Field(..., min_length=1)
    payment_breakdown: PriceBreakdown
    shipping_address: ShippingAddress
    attribution: Optional[Attribution] = None


class ConfirmPaymentRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str

    # Only consulted when the checkout attempt row is missing
    user_id: Optional[str] = None
    cart_payload: Optional[List[CartItem]] = None
    payment_breakdown: Optional[PriceBreakdown] = None
    shipping_address: Optional[ShippingAddress] = None
    attribution: Optional[Attribution] = None

    def recovery_payload(self) -> Optional[RecoveryPayload]:
        if not (self.user_id and self.cart_payload and self.payment_breakdown and self.shipping_address):
            return None
        return RecoveryPayload(
            user_id=self.user_id,
            cart_payload=self.cart_payload,
            payment_breakdown=self.payment_breakdown,
            shipping_address=self.shipping_address,
            attribution=self.attribution,
        )


class ConfirmationStatus(str, enum.Enum):
    CREATED = "created"
    ALREADY_PROCESSED = "already_processed"
    RECOVERED = "recovered"


class ConfirmPaymentResponse(BaseModel):
    success: bool = True
    status: ConfirmationStatus
    payment_id: str
    order_numbers: List[str] = []
    order_ids: List[str] = []


# --- Payment gateway webhook --------------------------------------------------

class GatewayEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: Optional[int] = None


class GatewayEntityWrapper(BaseModel):
    entity: GatewayEntity


class OrderPaidPayload(BaseModel):
    order: GatewayEntityWrapper
    payment: Optional[GatewayEntityWrapper] = None


class OrderPaidEvent(BaseModel):
    event: Literal["order.paid"]
    payload: OrderPaidPayload

    @property
    def gateway_order_id(self) -> str:
        return self.payload.order.entity.id

    @property
    def payment_id(self) -> Optional[str]:
        if self.payload.payment is None:
            return None
        return self.payload.payment.entity.id


class UnhandledGatewayEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str


def _gateway_event_tag(value: Any) -> Optional[str]:
    event = value.get("event") if isinstance(value, dict) else getattr(value, "event", None)
    if not isinstance(event, str):
        return None
    return "order.paid" if event == "order.paid" else "unhandled"


GatewayEvent = Annotated[
    Union[
        Annotated[OrderPaidEvent, Tag("order.paid")],
        Annotated[UnhandledGatewayEvent, Tag("unhandled")],
    ],
    Discriminator(_gateway_event_tag),
]


# --- Shipments & reconciliation -----------------------------------------------

class ShipmentRequest(BaseModel):
    order_id: Optional[str] = None
    order_ids: Optional[List[str]] = None

    @model_validator(mode="after")
    def require_orders(self):
        if not self.order_ids and not self.order_id:
            raise ValueError("order_id or order_ids required")
        return self

    @property
    def ids(self) -> List[str]:
        return list(self.order_ids) if self.order_ids else [self.order_id]


class ShipmentResult(BaseModel):
    success: bool = True
    order_ids: List[str]
    shipment_id: str
    awb: str
    courier: Optional[str] = None
    already_shipped: bool = False
    warnings: List[str] = []


class LabelResult(BaseModel):
    success: bool = True
    order_id: str
    label_url: str


class ReconcileResult(BaseModel):
    order_id: str
    updated: bool
    old_status: OrderStatus
    new_status: OrderStatus
    scope: Optional[Literal["shipment", "awb", "single"]] = None
    courier_status: str = ""
    message: Optional[str] = None


class CourierPush(BaseModel):
    model_config = ConfigDict(extra="ignore")

    awb: str = Field(..., min_length=1)
    current_status: Optional[str] = None
    current_status_id: Optional[int] = None
    shipment_status_id: Optional[int] = None


class CourierPushResult(BaseModel):
    success: bool = True
    awb: str
    new_status: Optional[OrderStatus] = None
    updated: int = 0


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    retailer_id: str
    manufacturer_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    manufacturer_payout: Decimal
    platform_profit: Decimal
    shipping_cost: Decimal
    payment_id: str
    payment_type: PaymentType
    paid_amount: Decimal
    pending_amount: Decimal
    status: OrderStatus
    recovered: bool
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    shipping_label_url: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None
