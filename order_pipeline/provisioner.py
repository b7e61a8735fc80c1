"""Moves paid orders to "shippable" at the courier aggregator.

The work is a short pipeline of typed steps. A fatal step aborts the whole
operation and leaves order status untouched; a best-effort step only adds a
warning, because the shipment it acts on already exists and can be retried
from the aggregator's side.
"""

import enum
import hashlib
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from fastapi import status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_pipeline.courier import CourierClient
from order_pipeline.errors import (
    ConfigurationError,
    CourierError,
    NotFoundError,
    ProvisioningError,
    RejectionError,
)
from order_pipeline.messaging import build_event, publish_event
from order_pipeline.models import Order, Product, User
from order_pipeline.schemas import LabelResult, ShipmentResult
from order_pipeline.status import OrderStatus, can_transition

logger = structlog.get_logger(__name__)

DEFAULT_DIMENSION_CM = 10.0
DEFAULT_WEIGHT_KG = 0.5

REQUIRED_PICKUP_FIELDS = ("address", "phone", "pincode", "city")


class ProvisionState(str, enum.Enum):
    CONFIRMED_INTENT = "confirmed_intent"
    PICKUP_REGISTERED = "pickup_registered"
    SHIPMENT_CREATED = "shipment_created"
    AWB_ASSIGNED = "awb_assigned"
    PICKUP_SCHEDULED = "pickup_scheduled"
    MANIFESTED = "manifested"


@dataclass
class PackageDimensions:
    length: float
    breadth: float
    height: float
    weight: float


@dataclass
class ProvisionContext:
    orders: List[Order]
    manufacturer: User
    retailer: Optional[User]
    products: Dict[str, Product]
    state: ProvisionState = ProvisionState.CONFIRMED_INTENT
    pickup_code: Optional[str] = None
    courier_order_id: Optional[str] = None
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def primary(self) -> Order:
        return self.orders[0]


@dataclass(frozen=True)
class Step:
    name: str
    fatal: bool
    run: Callable[[ProvisionContext], Awaitable[None]]
    reaches: Optional[ProvisionState] = None


def pickup_location_name(manufacturer: User) -> str:
    """Nickname for the manufacturer's pickup address.

    The suffix hashes the address, so an edited profile yields a new
    nickname and gets registered again.
    """
    raw = f"{manufacturer.address}|{manufacturer.city}|{manufacturer.state}|{manufacturer.pincode}|{manufacturer.phone}"
    normalized = "".join(raw.lower().split())
    address_hash = hashlib.md5(normalized.encode("utf-8")).hexdigest()[:6].upper()
    return f"MANUF_{manufacturer.id.split('-')[0][:8]}_{address_hash}"


def missing_pickup_fields(manufacturer: User) -> List[str]:
    return [name for name in REQUIRED_PICKUP_FIELDS if not (getattr(manufacturer, name) or "").strip()]


def compute_package(orders: List[Order], products: Dict[str, Product]) -> PackageDimensions:
    # Catalog weight and dimensions describe one MOQ set, not one unit
    total_weight = 0.0
    total_volume = 0.0
    max_length = DEFAULT_DIMENSION_CM
    max_breadth = DEFAULT_DIMENSION_CM

    for order in orders:
        product = products.get(order.product_id)
        moq = (product.moq if product else None) or 1
        sets = order.quantity / moq

        weight = (product.weight if product else None) or DEFAULT_WEIGHT_KG
        length = (product.length if product else None) or DEFAULT_DIMENSION_CM
        breadth = (product.breadth if product else None) or DEFAULT_DIMENSION_CM
        height = (product.height if product else None) or DEFAULT_DIMENSION_CM

        total_weight += weight * sets
        total_volume += length * breadth * height * sets
        max_length = max(max_length, length)
        max_breadth = max(max_breadth, breadth)

    height = math.ceil(total_volume / (max_length * max_breadth)) or DEFAULT_DIMENSION_CM
    return PackageDimensions(max_length, max_breadth, float(height), round(total_weight, 3))


def build_shipment_payload(ctx: ProvisionContext) -> dict:
    orders = ctx.orders
    primary = ctx.primary
    retailer = ctx.retailer

    total_pending = sum(float(o.pending_amount or 0) for o in orders)
    is_cod = total_pending > 0

    items = []
    for order in orders:
        selling_price = float(order.unit_price)
        if is_cod:
            # Fully paid items inside a COD shipment must not be collected twice
            pending = float(order.pending_amount or 0)
            selling_price = pending / order.quantity if pending > 0 else 0
        product = ctx.products.get(order.product_id)
        items.append({
            "name": product.name if product else order.product_id,
            "sku": order.product_id,
            "units": order.quantity,
            "selling_price": selling_price,
            "discount": "",
            "tax": "",
            "hsn": "",
        })

    sub_total = total_pending if is_cod else sum(float(o.unit_price) * o.quantity for o in orders)
    package = compute_package(orders, ctx.products)

    return {
        "order_id": primary.order_number,
        "order_date": primary.created_at.date().isoformat(),
        "pickup_location": ctx.pickup_code,
        "billing_customer_name": (retailer.business_name if retailer else None) or "Retailer",
        "billing_last_name": "Retailer",
        "billing_address": (retailer.address if retailer else None) or primary.shipping_address or "Not Provided",
        "billing_city": retailer.city if retailer else None,
        "billing_pincode": (retailer.pincode if retailer else None) or "110001",
        "billing_state": (retailer.state if retailer else None) or "Delhi",
        "billing_country": "India",
        "billing_email": (retailer.email if retailer else None) or "retailer@example.com",
        "billing_phone": retailer.phone if retailer else None,
        "shipping_is_billing": True,
        "order_items": items,
        "payment_method": "COD" if is_cod else "Prepaid",
        "sub_total": sub_total,
        "length": package.length,
        "breadth": package.breadth,
        "height": package.height,
        "weight": package.weight,
    }


class ShipmentProvisioner:
    def __init__(self, session: AsyncSession, client: CourierClient, publish=publish_event):
        self.session = session
        self.client = client
        self.publish = publish

    def steps(self) -> List[Step]:
        return [
            Step("authenticate", True, self._authenticate),
            Step("pickup_location", True, self._resolve_pickup_location, ProvisionState.PICKUP_REGISTERED),
            Step("create_shipment", True, self._create_shipment, ProvisionState.SHIPMENT_CREATED),
            Step("assign_awb", True, self._assign_awb, ProvisionState.AWB_ASSIGNED),
            Step("schedule_pickup", False, self._schedule_pickup, ProvisionState.PICKUP_SCHEDULED),
            Step("generate_manifest", False, self._generate_manifest, ProvisionState.MANIFESTED),
        ]

    async def provision(self, order_ids: List[str]) -> ShipmentResult:
        orders = await self._load_orders(order_ids)

        if all(o.awb_code for o in orders):
            primary = orders[0]
            logger.info("Orders already shipped", order_ids=order_ids, awb=primary.awb_code)
            return ShipmentResult(
                order_ids=[o.id for o in orders],
                shipment_id=primary.shipment_id or "",
                awb=primary.awb_code,
                courier=primary.courier_name,
                already_shipped=True,
            )
        if any(o.awb_code for o in orders):
            raise RejectionError("Some of these orders already have a shipment; ship the rest separately")

        for order in orders:
            if not can_transition(order.status, OrderStatus.CONFIRMED):
                raise RejectionError(f"Order {order.order_number} is {OrderStatus(order.status).value} and cannot be shipped")

        ctx = await self._build_context(orders)

        missing = missing_pickup_fields(ctx.manufacturer)
        if missing:
            raise ProvisioningError(
                f"Manufacturer profile is missing {', '.join(missing)}. Complete the profile before creating a shipment."
            )
        if not self.client.configured:
            raise ConfigurationError("Shiprocket credentials not configured")

        await self._run(ctx)
        await self._persist(ctx)

        return ShipmentResult(
            order_ids=[o.id for o in orders],
            shipment_id=ctx.shipment_id,
            awb=ctx.awb_code,
            courier=ctx.courier_name,
            warnings=ctx.warnings,
        )

    async def _run(self, ctx: ProvisionContext):
        for step in self.steps():
            try:
                await step.run(ctx)
            except (CourierError, ProvisioningError) as e:
                if step.fatal:
                    logger.error(
                        "Shipment step failed",
                        step=step.name,
                        order_number=ctx.primary.order_number,
                        state=ctx.state.value,
                        error=str(e),
                    )
                    if isinstance(e, ProvisioningError):
                        raise
                    code = status.HTTP_401_UNAUTHORIZED if step.name == "authenticate" else status.HTTP_400_BAD_REQUEST
                    raise ProvisioningError(str(e), status_code=code, details=e.payload) from e
                logger.warning("Best-effort shipment step failed", step=step.name, shipment_id=ctx.shipment_id, error=str(e))
                ctx.warnings.append(f"{step.name} failed: {e}")
                continue
            if step.reaches is not None:
                ctx.state = step.reaches

    async def _load_orders(self, order_ids: List[str]) -> List[Order]:
        if not order_ids:
            raise RejectionError("Order ID(s) required")
        result = await self.session.execute(select(Order).where(Order.id.in_(order_ids)))
        orders = list(result.scalars().all())
        if not orders:
            raise NotFoundError("Orders not found")
        found = {o.id for o in orders}
        missing = [i for i in order_ids if i not in found]
        if missing:
            raise NotFoundError(f"Orders not found: {', '.join(missing)}")

        first = orders[0]
        if any(o.manufacturer_id != first.manufacturer_id or o.retailer_id != first.retailer_id for o in orders):
            raise RejectionError("Cannot group orders from different manufacturers or to different retailers")
        # Keep the caller's ordering so the first id is the primary order
        by_id = {o.id: o for o in orders}
        return [by_id[i] for i in dict.fromkeys(order_ids)]

    async def _build_context(self, orders: List[Order]) -> ProvisionContext:
        primary = orders[0]
        manufacturer = await self.session.get(User, primary.manufacturer_id)
        if manufacturer is None:
            raise NotFoundError("Manufacturer profile not found")
        retailer = await self.session.get(User, primary.retailer_id)

        product_ids = {o.product_id for o in orders}
        result = await self.session.execute(select(Product).where(Product.id.in_(product_ids)))
        products = {p.id: p for p in result.scalars().all()}
        return ProvisionContext(orders=orders, manufacturer=manufacturer, retailer=retailer, products=products)

    async def _authenticate(self, ctx: ProvisionContext):
        await self.client.authenticate()

    async def _resolve_pickup_location(self, ctx: ProvisionContext):
        mfr = ctx.manufacturer
        nickname = pickup_location_name(mfr)
        cached = mfr.shiprocket_pickup_code

        if cached == nickname:
            ctx.pickup_code = cached
            return

        logger.info("Registering pickup location", manufacturer_id=mfr.id, pickup_location=nickname)
        address = mfr.address if len(mfr.address) > 10 else f"Shop 1, {mfr.address}"
        data = await self.client.register_pickup_location({
            "pickup_location": nickname,
            "name": mfr.business_name or "Wholesaler",
            "email": mfr.email,
            "phone": mfr.phone,
            "address": address,
            "city": mfr.city,
            "state": mfr.state or "Delhi",
            "country": "India",
            "pin_code": mfr.pincode,
        })

        message = str(data.get("message") or "")
        if data.get("success") or "already exists" in message.lower():
            mfr.shiprocket_pickup_code = nickname
            await self.session.commit()
            ctx.pickup_code = nickname
            return

        if cached:
            logger.warning(
                "Pickup registration failed, using previous pickup location",
                manufacturer_id=mfr.id,
                pickup_location=cached,
                response=data,
            )
            ctx.warnings.append("pickup location re-registration failed; previous pickup address used")
            ctx.pickup_code = cached
            return

        raise ProvisioningError(
            f"Failed to register pickup location: {data.get('errors') or message or 'unknown error'}",
            details=data,
        )

    async def _create_shipment(self, ctx: ProvisionContext):
        data = await self.client.create_shipment(build_shipment_payload(ctx))
        if not data.get("order_id") or not data.get("shipment_id"):
            raise ProvisioningError(
                f"Shiprocket Error: {data.get('message') or data.get('errors') or 'shipment was not created'}",
                details=data,
            )
        ctx.courier_order_id = str(data["order_id"])
        ctx.shipment_id = str(data["shipment_id"])

    async def _assign_awb(self, ctx: ProvisionContext):
        # A forced courier may not accept the combined weight of a grouped shipment
        courier_id = ctx.primary.courier_company_id if len(ctx.orders) == 1 else None
        data = await self.client.assign_awb(ctx.shipment_id, courier_id)
        assigned = (data.get("response") or {}).get("data") or {}
        awb_code = assigned.get("awb_code")
        if not awb_code:
            reason = data.get("message") or assigned.get("awb_assign_error") or "AWB assignment failed"
            raise ProvisioningError(reason, details=data)
        ctx.awb_code = str(awb_code)
        ctx.courier_name = assigned.get("courier_name")

    async def _schedule_pickup(self, ctx: ProvisionContext):
        await self.client.schedule_pickup(ctx.shipment_id)

    async def _generate_manifest(self, ctx: ProvisionContext):
        await self.client.generate_manifest(ctx.shipment_id)

    async def _persist(self, ctx: ProvisionContext):
        for order in ctx.orders:
            order.shipment_id = ctx.shipment_id
            order.awb_code = ctx.awb_code
            order.courier_name = ctx.courier_name
            order.status = OrderStatus.CONFIRMED
        await self.session.commit()

        logger.info(
            "Shipment provisioned",
            order_ids=[o.id for o in ctx.orders],
            shipment_id=ctx.shipment_id,
            awb=ctx.awb_code,
            courier=ctx.courier_name,
            state=ctx.state.value,
        )
        await self.publish("shipment.created", build_event(
            "ShipmentCreated",
            order_ids=[o.id for o in ctx.orders],
            order_number=ctx.primary.order_number,
            shipment_id=ctx.shipment_id,
            awb=ctx.awb_code,
            courier=ctx.courier_name,
        ))

    async def generate_label(self, order_id: str) -> LabelResult:
        order = await self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if not order.shipment_id:
            raise RejectionError("Order has no shipment to label")
        if not self.client.configured:
            raise ConfigurationError("Shiprocket credentials not configured")

        try:
            await self.client.authenticate()
        except CourierError as e:
            raise ProvisioningError("Shiprocket authentication failed", status_code=status.HTTP_401_UNAUTHORIZED) from e
        try:
            data = await self.client.generate_label(order.shipment_id)
        except CourierError as e:
            raise ProvisioningError(f"Failed to generate label: {e}") from e

        label_url = data.get("label_url")
        if not label_url:
            raise ProvisioningError("Failed to generate label", details=data)

        result = await self.session.execute(select(Order).where(Order.shipment_id == order.shipment_id))
        for shipped in result.scalars().all():
            shipped.shipping_label_url = label_url
        await self.session.commit()
        return LabelResult(order_id=order_id, label_url=label_url)
