import re
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from order_pipeline.errors import ConfigurationError, CourierError, NotFoundError, ProvisioningError, RejectionError
from order_pipeline.models import Order, Product, User
from order_pipeline.provisioner import (
    ProvisionState,
    ShipmentProvisioner,
    compute_package,
    missing_pickup_fields,
    pickup_location_name,
)
from order_pipeline.status import OrderStatus
from conftest import seed_order, seed_profiles


def provisioner(session, client, publish=None):
    return ShipmentProvisioner(session, client, publish=publish or AsyncMock())


async def stored_orders(session_factory):
    async with session_factory() as session:
        return {o.id: o for o in (await session.execute(select(Order))).scalars().all()}


def test_pickup_location_name_tracks_address():
    mfr = User(id="7f3c2a1b-4d5e", address="Plot 44", city="Kota", state="Rajasthan", pincode="324005", phone="98")
    name = pickup_location_name(mfr)
    assert re.fullmatch(r"MANUF_7f3c2a1b_[0-9A-F]{6}", name)

    mfr.address = "  PLOT   44 "
    assert pickup_location_name(mfr) == name

    mfr.address = "Plot 45"
    assert pickup_location_name(mfr) != name


def test_missing_pickup_fields():
    mfr = User(id="m", address="Plot 44", city=" ", phone=None, pincode="324005")
    assert missing_pickup_fields(mfr) == ["phone", "city"]


def test_compute_package_uses_moq_sets():
    product = Product(id="p", name="Saree", moq=10, weight=2.0, length=30, breadth=20, height=10)
    package = compute_package([Order(product_id="p", quantity=20)], {"p": product})

    assert package.weight == 4.0
    assert (package.length, package.breadth, package.height) == (30, 20, 20.0)


def test_compute_package_defaults_without_catalog_data():
    package = compute_package([Order(product_id="unknown", quantity=3)], {})

    assert package.weight == 1.5
    assert (package.length, package.breadth, package.height) == (10.0, 10.0, 30.0)


@pytest.mark.asyncio
async def test_provision_happy_path(db_session, session_factory, courier_client):
    manufacturer, _, _ = await seed_profiles(db_session)
    order = await seed_order(db_session)
    publish = AsyncMock()

    result = await provisioner(db_session, courier_client, publish).provision([order.id])

    assert result.success
    assert result.shipment_id == "7771"
    assert result.awb == "AWB123456"
    assert result.courier == "Delhivery Surface"
    assert result.warnings == []
    assert not result.already_shipped

    payload = courier_client.create_shipment.call_args.args[0]
    assert payload["order_id"] == "D2B-TEST-001"
    assert payload["pickup_location"] == pickup_location_name(manufacturer)
    assert payload["payment_method"] == "Prepaid"
    assert payload["sub_total"] == 2000.0
    assert payload["weight"] == 4.0
    assert payload["billing_customer_name"] == "Sharma Stores"
    courier_client.assign_awb.assert_awaited_once_with("7771", None)
    courier_client.schedule_pickup.assert_awaited_once_with("7771")
    courier_client.generate_manifest.assert_awaited_once_with("7771")

    stored = (await stored_orders(session_factory))[order.id]
    assert OrderStatus(stored.status) is OrderStatus.CONFIRMED
    assert stored.awb_code == "AWB123456"
    assert stored.shipment_id == "7771"
    async with session_factory() as session:
        mfr = await session.get(User, manufacturer.id)
    assert mfr.shiprocket_pickup_code == pickup_location_name(manufacturer)

    routing_key, event = publish.call_args.args
    assert routing_key == "shipment.created"
    assert event["awb"] == "AWB123456"


@pytest.mark.asyncio
async def test_cached_pickup_location_is_reused(db_session, courier_client):
    manufacturer, _, _ = await seed_profiles(db_session)
    manufacturer.shiprocket_pickup_code = pickup_location_name(manufacturer)
    await db_session.commit()
    order = await seed_order(db_session)

    await provisioner(db_session, courier_client).provision([order.id])

    courier_client.register_pickup_location.assert_not_called()


@pytest.mark.asyncio
async def test_existing_pickup_nickname_counts_as_registered(db_session, courier_client):
    manufacturer, _, _ = await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.register_pickup_location.return_value = {"message": "Address nick name already exists"}

    result = await provisioner(db_session, courier_client).provision([order.id])

    assert result.awb == "AWB123456"
    assert manufacturer.shiprocket_pickup_code == pickup_location_name(manufacturer)


@pytest.mark.asyncio
async def test_failed_reregistration_falls_back_to_previous_pickup(db_session, courier_client):
    await seed_profiles(db_session, {"shiprocket_pickup_code": "MANUF_OLD"})
    order = await seed_order(db_session)
    courier_client.register_pickup_location.return_value = {"message": "Invalid pincode"}

    result = await provisioner(db_session, courier_client).provision([order.id])

    assert courier_client.create_shipment.call_args.args[0]["pickup_location"] == "MANUF_OLD"
    assert len(result.warnings) == 1


@pytest.mark.asyncio
async def test_failed_registration_without_fallback(db_session, session_factory, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.register_pickup_location.return_value = {"message": "Invalid pincode"}

    with pytest.raises(ProvisioningError, match="Failed to register pickup location"):
        await provisioner(db_session, courier_client).provision([order.id])

    courier_client.create_shipment.assert_not_called()
    assert OrderStatus((await stored_orders(session_factory))[order.id].status) is OrderStatus.PAID


@pytest.mark.asyncio
async def test_incomplete_manufacturer_profile(db_session, courier_client):
    await seed_profiles(db_session, {"phone": "", "pincode": None})
    order = await seed_order(db_session)

    with pytest.raises(ProvisioningError, match="phone, pincode"):
        await provisioner(db_session, courier_client).provision([order.id])

    courier_client.authenticate.assert_not_called()


@pytest.mark.asyncio
async def test_authentication_failure_is_401(db_session, session_factory, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.authenticate.side_effect = CourierError("Shiprocket authentication failed", payload={"message": "bad"})

    with pytest.raises(ProvisioningError) as exc_info:
        await provisioner(db_session, courier_client).provision([order.id])

    assert exc_info.value.status_code == 401
    assert exc_info.value.details == {"message": "bad"}
    assert OrderStatus((await stored_orders(session_factory))[order.id].status) is OrderStatus.PAID


@pytest.mark.asyncio
async def test_shipment_rejected_by_aggregator(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.create_shipment.return_value = {"message": "Wrong pickup location entered"}

    with pytest.raises(ProvisioningError, match="Shiprocket Error: Wrong pickup location entered"):
        await provisioner(db_session, courier_client).provision([order.id])

    courier_client.assign_awb.assert_not_called()


@pytest.mark.asyncio
async def test_no_awb_leaves_orders_untouched(db_session, session_factory, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.assign_awb.return_value = {
        "awb_assign_status": 0,
        "response": {"data": {"awb_assign_error": "Courier not serviceable"}},
    }

    with pytest.raises(ProvisioningError, match="Courier not serviceable"):
        await provisioner(db_session, courier_client).provision([order.id])

    stored = (await stored_orders(session_factory))[order.id]
    assert stored.awb_code is None
    assert OrderStatus(stored.status) is OrderStatus.PAID


@pytest.mark.asyncio
async def test_best_effort_failures_become_warnings(db_session, session_factory, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.schedule_pickup.side_effect = CourierError("pickup slot unavailable")
    courier_client.generate_manifest.side_effect = CourierError("manifest queue busy")

    result = await provisioner(db_session, courier_client).provision([order.id])

    assert result.warnings == [
        "schedule_pickup failed: pickup slot unavailable",
        "generate_manifest failed: manifest queue busy",
    ]
    assert OrderStatus((await stored_orders(session_factory))[order.id].status) is OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_already_shipped_is_idempotent(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session, status=OrderStatus.CONFIRMED, shipment_id="7771", awb_code="AWB1",
                             courier_name="Delhivery")

    result = await provisioner(db_session, courier_client).provision([order.id])

    assert result.already_shipped
    assert result.awb == "AWB1"
    courier_client.authenticate.assert_not_called()
    courier_client.create_shipment.assert_not_called()


@pytest.mark.asyncio
async def test_partially_shipped_group_is_rejected(db_session, courier_client):
    await seed_profiles(db_session)
    shipped = await seed_order(db_session, status=OrderStatus.CONFIRMED, shipment_id="7771", awb_code="AWB1")
    fresh = await seed_order(db_session, product_id="prod-2")

    with pytest.raises(RejectionError):
        await provisioner(db_session, courier_client).provision([shipped.id, fresh.id])


@pytest.mark.asyncio
async def test_mixed_manufacturers_are_rejected(db_session, courier_client):
    await seed_profiles(db_session)
    first = await seed_order(db_session)
    other = await seed_order(db_session, manufacturer_id="mfr-other")

    with pytest.raises(RejectionError, match="different manufacturers"):
        await provisioner(db_session, courier_client).provision([first.id, other.id])


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)

    with pytest.raises(NotFoundError, match="missing-id"):
        await provisioner(db_session, courier_client).provision([order.id, "missing-id"])


@pytest.mark.asyncio
async def test_cancelled_order_cannot_ship(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session, status=OrderStatus.CANCELLED)

    with pytest.raises(RejectionError, match="cannot be shipped"):
        await provisioner(db_session, courier_client).provision([order.id])


@pytest.mark.asyncio
async def test_unconfigured_client(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.configured = False

    with pytest.raises(ConfigurationError):
        await provisioner(db_session, courier_client).provision([order.id])


@pytest.mark.asyncio
async def test_courier_preference_only_for_single_order(db_session, courier_client):
    await seed_profiles(db_session)
    single = await seed_order(db_session, courier_company_id=42)

    await provisioner(db_session, courier_client).provision([single.id])
    courier_client.assign_awb.assert_awaited_once_with("7771", 42)


@pytest.mark.asyncio
async def test_grouped_cod_shipment(db_session, session_factory, courier_client):
    await seed_profiles(db_session)
    advance = await seed_order(db_session, courier_company_id=42, paid_amount=Decimal("800.00"),
                               pending_amount=Decimal("1200.00"))
    prepaid = await seed_order(db_session, product_id="prod-2")

    result = await provisioner(db_session, courier_client).provision([advance.id, prepaid.id])

    courier_client.assign_awb.assert_awaited_once_with("7771", None)
    payload = courier_client.create_shipment.call_args.args[0]
    assert payload["payment_method"] == "COD"
    assert payload["sub_total"] == 1200.0
    assert [i["selling_price"] for i in payload["order_items"]] == [60.0, 0]
    assert result.order_ids == [advance.id, prepaid.id]

    stored = await stored_orders(session_factory)
    assert {stored[i].awb_code for i in result.order_ids} == {"AWB123456"}


@pytest.mark.asyncio
async def test_steps_advance_provision_state(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    prov = provisioner(db_session, courier_client)
    ctx = await prov._build_context([order])

    await prov._run(ctx)

    assert ctx.state is ProvisionState.MANIFESTED
    assert ctx.courier_order_id == "5551"


@pytest.mark.asyncio
async def test_failed_manifest_stops_at_pickup_scheduled(db_session, courier_client):
    await seed_profiles(db_session)
    order = await seed_order(db_session)
    courier_client.generate_manifest.side_effect = CourierError("manifest queue busy")
    prov = provisioner(db_session, courier_client)
    ctx = await prov._build_context([order])

    await prov._run(ctx)

    assert ctx.state is ProvisionState.PICKUP_SCHEDULED


@pytest.mark.asyncio
async def test_generate_label_updates_whole_shipment(db_session, session_factory, courier_client):
    first = await seed_order(db_session, status=OrderStatus.CONFIRMED, shipment_id="7771", awb_code="AWB1")
    second = await seed_order(db_session, product_id="prod-2", status=OrderStatus.CONFIRMED, shipment_id="7771",
                              awb_code="AWB1")
    courier_client.generate_label.return_value = {"label_created": 1, "label_url": "https://labels.test/7771.pdf"}

    result = await provisioner(db_session, courier_client).generate_label(first.id)

    assert result.label_url == "https://labels.test/7771.pdf"
    courier_client.generate_label.assert_awaited_once_with("7771")
    stored = await stored_orders(session_factory)
    assert stored[second.id].shipping_label_url == "https://labels.test/7771.pdf"


@pytest.mark.asyncio
async def test_generate_label_requires_shipment(db_session, courier_client):
    order = await seed_order(db_session)

    with pytest.raises(RejectionError):
        await provisioner(db_session, courier_client).generate_label(order.id)


@pytest.mark.asyncio
async def test_generate_label_without_url(db_session, courier_client):
    order = await seed_order(db_session, status=OrderStatus.CONFIRMED, shipment_id="7771", awb_code="AWB1")
    courier_client.generate_label.return_value = {"label_created": 0}

    with pytest.raises(ProvisioningError, match="Failed to generate label"):
        await provisioner(db_session, courier_client).generate_label(order.id)
