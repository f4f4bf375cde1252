"""
Tests for checkout sessions: loading, coupons and placing orders.
"""

import asyncio

import pytest

from conftest import World, context, shipping_form, signed_payload
from errors import (
    CatalogUnavailable,
    GatewayError,
    InvalidStateTransition,
    NotFound,
    PaymentCancelled,
    PersistenceError,
    ValidationError,
    VerificationFailure,
)
from payments import AuthorizationOutcome, PaymentAttempt, PaymentState
from schemas import Coupon, DiscountType, Order, OrderStatus, PaymentMethod, PaymentStatus, Product


@pytest.fixture
def coupons(world):
    world.coupon_store.coupons.update({
        "SAVE100": Coupon(code="SAVE100", discount_value=100, minimum_order_amount=500),
        "SHIPFREE": Coupon(code="SHIPFREE", discount_type=DiscountType.FREE_SHIPPING),
    })
    return world.coupon_store


async def cart_session(world):
    world.catalog.products["p2"] = world.catalog.products["p2"].model_copy(update={"price": 250})
    await world.add_to_cart("p1", 1)
    await world.add_to_cart("p2", 2, embedded=Product(product_id="p2", product_name="Brass Lamp", price=0))
    return await world.checkout.start("cust1")


async def settle(world, session, outcome):
    return await world.checkout.handle_callback(session.attempt.gateway_order_id, outcome)


@pytest.mark.asyncio
class TestStart:

    async def test_cart_mode(self, world):
        session = await cart_session(world)
        assert session.mode.value == "cart"
        assert session.totals.subtotal == 800
        assert session.totals.final_amount == 944
        assert world.checkout.get(session.session_id) is session

    async def test_buy_now_mode(self, world):
        session = await world.checkout.start("cust1", buy_now_product_id="p3", quantity=2)
        assert session.mode.value == "buyNow"
        assert session.totals.subtotal == 160
        assert session.totals.shipping_cost == 50

    async def test_catalog_down_keeps_cart_visible(self, world):
        await world.add_to_cart("p1", 2)
        world.catalog.fail = True
        session = await world.checkout.start("cust1")
        assert session.load_error
        assert [(i.product_id, i.quantity) for i in session.line_items] == [("p1", 2)]
        with pytest.raises(CatalogUnavailable):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        assert world.orders.orders == {}

    async def test_unknown_session(self, world):
        with pytest.raises(NotFound):
            world.checkout.get("nope")


@pytest.mark.asyncio
class TestCoupons:

    async def test_apply_and_remove(self, world, coupons):
        session = await cart_session(world)
        validation = await world.checkout.apply_coupon(session.session_id, "save100")
        assert validation.discount_amount == 100
        assert session.totals.final_amount == 844

        totals = world.checkout.remove_coupon(session.session_id)
        assert totals.discount_amount == 0
        assert totals.final_amount == 944
        assert session.coupon is None

    async def test_invalid_coupon_changes_nothing(self, world, coupons):
        session = await cart_session(world)
        await world.checkout.apply_coupon(session.session_id, "SAVE100")
        before = session.totals
        with pytest.raises(ValidationError, match="Invalid coupon code"):
            await world.checkout.apply_coupon(session.session_id, "BOGUS")
        assert session.totals == before
        assert session.coupon.code == "SAVE100"

    async def test_free_shipping_discount_is_shipping_cost(self, world, coupons):
        session = await world.checkout.start("cust1", buy_now_product_id="p1")
        await world.checkout.apply_coupon(session.session_id, "SHIPFREE")
        assert session.totals.discount_amount == 50
        assert session.totals.final_amount == 300 + 54

    async def test_coupon_locked_while_paying(self, world, coupons):
        session = await cart_session(world)
        await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        with pytest.raises(ValidationError):
            await world.checkout.apply_coupon(session.session_id, "SAVE100")
        with pytest.raises(ValidationError):
            world.checkout.remove_coupon(session.session_id)
        world.checkout.discard(session.session_id)

    async def test_coupon_editable_after_cancel_and_new_intent_uses_new_total(self, world, coupons):
        session = await cart_session(world)
        await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        with pytest.raises(PaymentCancelled):
            await settle(world, session, AuthorizationOutcome.dismissed())

        await world.checkout.apply_coupon(session.session_id, "SAVE100")
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert attempt.intent.amount == 844
        assert [c["amount"] for c in world.gateway.created] == [944, 844]
        world.checkout.discard(session.session_id)

    async def test_coupon_revalidated_at_place_time(self, world, coupons):
        session = await cart_session(world)
        await world.checkout.apply_coupon(session.session_id, "SAVE100")
        coupons.coupons["SAVE100"] = coupons.coupons["SAVE100"].model_copy(update={"is_active": False})

        with pytest.raises(ValidationError):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        assert session.coupon is None
        assert session.totals.final_amount == 944
        assert world.orders.orders == {}


@pytest.mark.asyncio
class TestPlaceCod:

    async def test_cod_creates_order_directly(self, world):
        session = await cart_session(world)
        order = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        assert isinstance(order, Order)
        assert order.order_status == OrderStatus.PLACED
        assert order.payment_status == PaymentStatus.PENDING
        assert order.final_amount == 944
        assert world.gateway.created == []

        await world.outbox.drain()
        assert world.carts.entries == {}

    async def test_place_twice(self, world):
        session = await cart_session(world)
        await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        with pytest.raises(InvalidStateTransition):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        assert len(world.orders.orders) == 1

    async def test_empty_cart(self, world):
        session = await world.checkout.start("cust1")
        with pytest.raises(ValidationError):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)

    async def test_order_store_down_keeps_session(self, world):
        session = await cart_session(world)
        world.orders.fail_create = True
        with pytest.raises(PersistenceError):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        world.orders.fail_create = False
        order = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        assert order.final_amount == 944


@pytest.mark.asyncio
class TestPlaceOnline:

    async def test_verified_payment_creates_order(self, world):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert isinstance(attempt, PaymentAttempt)
        assert attempt.intent.amount == 944
        await asyncio.sleep(0)
        assert world.orders.orders == {}

        order = await settle(world, session, AuthorizationOutcome.success(signed_payload(attempt.gateway_order_id)))

        assert order.order_status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.PAID
        assert attempt.state == PaymentState.VERIFIED
        assert session.order is order
        assert len(world.orders.orders) == 1

    async def test_dismissal_leaves_cart_untouched(self, world):
        session = await cart_session(world)
        before = dict(world.carts.entries)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)

        with pytest.raises(PaymentCancelled):
            await settle(world, session, AuthorizationOutcome.dismissed())
        await world.outbox.drain()

        assert attempt.state == PaymentState.CANCELLED
        assert world.orders.orders == {}
        assert world.carts.entries == before
        assert session.error == "Payment cancelled"

    async def test_gateway_failure(self, world):
        session = await cart_session(world)
        await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        with pytest.raises(GatewayError):
            await settle(world, session, AuthorizationOutcome.failure("Card declined"))
        assert world.orders.orders == {}
        assert session.error == "Card declined"

    async def test_forged_signature(self, world):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        forged = signed_payload(attempt.gateway_order_id, secret="wrong")
        with pytest.raises(VerificationFailure):
            await settle(world, session, AuthorizationOutcome.success(forged))
        assert attempt.state == PaymentState.FAILED
        assert world.orders.orders == {}

    async def test_stale_intent_rejected(self, world):
        session = await cart_session(world)
        stale = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        with pytest.raises(PaymentCancelled):
            await settle(world, session, AuthorizationOutcome.dismissed())

        fresh = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert fresh.gateway_order_id != stale.gateway_order_id
        with pytest.raises(NotFound):
            # the session now tracks only the fresh intent
            await world.checkout.handle_callback(
                stale.gateway_order_id, AuthorizationOutcome.success(signed_payload(stale.gateway_order_id)),
            )

        order = await settle(world, session, AuthorizationOutcome.success(signed_payload(fresh.gateway_order_id)))
        assert order.payment_transaction_id == "pay_1"
        assert len(world.orders.orders) == 1

    async def test_callback_after_settlement(self, world):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        payload = signed_payload(attempt.gateway_order_id)
        await settle(world, session, AuthorizationOutcome.success(payload))
        with pytest.raises(InvalidStateTransition):
            await settle(world, session, AuthorizationOutcome.success(payload))
        assert len(world.orders.orders) == 1

    async def test_second_place_while_paying(self, world):
        session = await cart_session(world)
        await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        with pytest.raises(ValidationError):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert len(world.gateway.created) == 1
        world.checkout.discard(session.session_id)

    async def test_intent_creation_failure_keeps_session(self, world):
        session = await cart_session(world)
        world.gateway.fail_create = True
        with pytest.raises(GatewayError):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert session.attempt is None
        assert not session.payment_in_flight

        world.gateway.fail_create = False
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert attempt.state == PaymentState.CREATED
        world.checkout.discard(session.session_id)


@pytest.mark.asyncio
async def test_scripted_launcher_settles_without_callback():
    from conftest import ScriptedLauncher

    launcher = ScriptedLauncher()
    world = World(launcher=launcher)
    session = await cart_session(world)
    launcher.outcomes.append(AuthorizationOutcome.success(signed_payload("order_1")))

    await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
    order = await world.checkout.wait_for_payment(session.session_id)

    assert launcher.opened == ["order_1"]
    assert order.customer_id == context().customer_id


@pytest.mark.asyncio
class TestSessionLifetime:

    async def test_cod_order_releases_session(self, world):
        session = await cart_session(world)
        order = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        await world.outbox.drain()

        assert session.session_id not in world.checkout.sessions
        assert world.checkout.describe(session.session_id)["order_id"] == order.order_id
        with pytest.raises(InvalidStateTransition):
            await world.checkout.apply_coupon(session.session_id, "SAVE100")

    async def test_online_order_releases_session(self, world):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        order = await settle(world, session, AuthorizationOutcome.success(signed_payload(attempt.gateway_order_id)))

        assert world.checkout.sessions == {}
        state = world.checkout.describe(session.session_id)
        assert state["payment_state"] == "Verified"
        assert state["order_id"] == order.order_id
        assert await world.checkout.wait_for_payment(session.session_id) is order

    async def test_settled_record_expires(self, world, clock):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        payload = signed_payload(attempt.gateway_order_id)
        await settle(world, session, AuthorizationOutcome.success(payload))

        clock.advance(minutes=16)
        with pytest.raises(NotFound):
            world.checkout.describe(session.session_id)
        with pytest.raises(NotFound):
            await settle(world, session, AuthorizationOutcome.success(payload))
        assert world.checkout.settled == {}

    async def test_idle_session_expires(self, world, clock):
        idle = await cart_session(world)
        clock.advance(minutes=20)
        active = await world.checkout.start("cust1", buy_now_product_id="p1")
        clock.advance(minutes=11)

        assert world.checkout.get(active.session_id) is active
        with pytest.raises(NotFound):
            world.checkout.get(idle.session_id)

    async def test_expiry_cancels_pending_payment(self, world, clock):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        await asyncio.sleep(0)
        assert attempt.state == PaymentState.AUTHORIZATION_PENDING

        clock.advance(minutes=31)
        world.checkout.evict_expired()
        with pytest.raises(asyncio.CancelledError):
            await session.payment_task

        assert attempt.state == PaymentState.CANCELLED
        assert not world.launcher.is_pending(attempt.gateway_order_id)
        with pytest.raises(NotFound):
            world.checkout.find_by_gateway_order(attempt.gateway_order_id)
        assert world.orders.orders == {}

    async def test_callback_before_settle_task_runs(self, world):
        session = await cart_session(world)
        attempt = await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.ONLINE)
        assert attempt.state == PaymentState.CREATED

        order = await settle(world, session, AuthorizationOutcome.success(signed_payload(attempt.gateway_order_id)))
        assert order.payment_transaction_id == "pay_1"
        assert attempt.state == PaymentState.VERIFIED

    async def test_delisted_snapshot_blocks_checkout(self, world):
        await world.add_to_cart("delisted", embedded=Product(product_id="delisted", product_name="Old Shawl",
                                                              price=10))
        session = await world.checkout.start("cust1")
        assert session.totals.subtotal == 0

        with pytest.raises(ValidationError, match="no longer available"):
            await world.checkout.place_order(session.session_id, shipping_form(), PaymentMethod.COD)
        assert world.orders.orders == {}
