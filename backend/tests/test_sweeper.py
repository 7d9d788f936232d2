"""
Tests for the reservation sweep and its scheduler.
"""
import asyncio
from datetime import timedelta

import pytest

from hockeystore.db.models import utcnow
from hockeystore.exceptions import InsufficientStockError
from hockeystore.mocks.mpesa_gateway import build_callback_payload
from hockeystore.services import inventory_service, order_service, payment_service
from hockeystore.services.reservation_sweeper import sweep_stale_payments
from hockeystore.services import scheduler as scheduler_module
from hockeystore.services.scheduler import SWEEP_JOB_ID, build_scheduler

from conftest import checkout_request, stock_of


async def reserve_only(database, product_id: str = "ball", quantity: int = 2):
    """Phase 1 of a checkout that never hears back from the gateway."""
    async with database.transaction() as db:
        request = checkout_request([{"_id": product_id, "quantity": quantity}])
        lines = await inventory_service.load_cart_products(db, request.cart)
        order = await order_service.create_order(db, "user_001", request, lines)
        for line, product in lines:
            await inventory_service.reserve_stock(db, product.id, line.quantity)
        payment = await payment_service.create_payment(db, order.id, order.total_cents, request.phone_number)
    return order.id, payment.id


class TestSweep:

    @pytest.mark.asyncio
    async def test_fresh_reservations_are_left_alone(self, database, test_settings):
        await reserve_only(database)

        result = await sweep_stale_payments(database, test_settings)

        assert result.total == 0
        assert await stock_of(database, "ball") == 8

    @pytest.mark.asyncio
    async def test_stale_reservation_is_failed_and_stock_restored(self, database, test_settings):
        order_id, payment_id = await reserve_only(database)
        later = utcnow() + timedelta(seconds=test_settings.reservation_timeout_seconds + 1)

        result = await sweep_stale_payments(database, test_settings, now=later)

        assert result.expired_reservations == [payment_id]
        assert result.expired_pending == []
        assert await stock_of(database, "ball") == 10
        async with database.session() as db:
            payment = await payment_service.get_payment(db, payment_id)
            order = await order_service.get_order(db, order_id)
        assert payment.status == "failed"
        assert payment.result_description == "reservation expired before gateway confirmation"
        assert order.status == "payment_failed"

    @pytest.mark.asyncio
    async def test_sweep_twice_restores_once(self, database, test_settings):
        await reserve_only(database)
        later = utcnow() + timedelta(hours=2)

        first = await sweep_stale_payments(database, test_settings, now=later)
        second = await sweep_stale_payments(database, test_settings, now=later)

        assert first.total == 1
        assert second.total == 0
        assert await stock_of(database, "ball") == 10

    @pytest.mark.asyncio
    async def test_stale_pending_payment_is_failed(self, orchestrator, database, test_settings):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))

        not_yet = utcnow() + timedelta(seconds=test_settings.reservation_timeout_seconds + 1)
        assert (await sweep_stale_payments(database, test_settings, now=not_yet)).total == 0

        later = utcnow() + timedelta(seconds=test_settings.pending_payment_timeout_seconds + 1)
        swept = await sweep_stale_payments(database, test_settings, now=later)

        assert swept.expired_pending == [result.payment_id]
        assert await stock_of(database, "ball") == 10
        async with database.session() as db:
            payment = await payment_service.get_payment(db, result.payment_id)
        assert payment.result_description == "no payment callback received before timeout"

    @pytest.mark.asyncio
    async def test_pending_timeout_can_be_disabled(self, orchestrator, database, test_settings):
        await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))
        settings = test_settings.model_copy(update={"pending_payment_timeout_seconds": None})

        result = await sweep_stale_payments(database, settings, now=utcnow() + timedelta(days=7))

        assert result.total == 0
        assert await stock_of(database, "ball") == 7

    @pytest.mark.asyncio
    async def test_late_success_callback_recovers_swept_order(
        self, orchestrator, reconciler, database, test_settings
    ):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))
        await sweep_stale_payments(database, test_settings, now=utcnow() + timedelta(days=1))
        assert await stock_of(database, "ball") == 10

        changed = await reconciler.handle_callback(
            build_callback_payload(result.correlation_id, result_code=0, phone_number="254711222333")
        )

        assert changed is True
        assert await stock_of(database, "ball") == 7
        async with database.session() as db:
            payment = await payment_service.get_payment(db, result.payment_id)
            order = await order_service.get_order(db, result.order_id)
        assert payment.status == "completed"
        assert payment.callback_payload.result_code == 0
        assert order.status == "paid"
        assert order.payment_status == "completed"
        assert order.customer.phone == "254711222333"

    @pytest.mark.asyncio
    async def test_late_success_replay_recovers_once(self, orchestrator, reconciler, database, test_settings):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))
        await sweep_stale_payments(database, test_settings, now=utcnow() + timedelta(days=1))
        body = build_callback_payload(result.correlation_id, result_code=0)

        assert await reconciler.handle_callback(body) is True
        assert await reconciler.handle_callback(body) is False

        assert await stock_of(database, "ball") == 7

    @pytest.mark.asyncio
    async def test_late_failure_callback_after_sweep_is_a_no_op(
        self, orchestrator, reconciler, database, test_settings
    ):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))
        await sweep_stale_payments(database, test_settings, now=utcnow() + timedelta(days=1))

        changed = await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=1))

        assert changed is False
        assert await stock_of(database, "ball") == 10
        async with database.session() as db:
            order = await order_service.get_order(db, result.order_id)
        assert order.status == "payment_failed"

    @pytest.mark.asyncio
    async def test_late_success_without_stock_is_kept_for_operator(
        self, orchestrator, reconciler, database, test_settings
    ):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "gloves", "quantity": 1}]))
        await sweep_stale_payments(database, test_settings, now=utcnow() + timedelta(days=1))
        await orchestrator.checkout("user_002", checkout_request([{"_id": "gloves", "quantity": 1}]))
        assert await stock_of(database, "gloves") == 0

        changed = await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=0))

        assert changed is True
        assert await stock_of(database, "gloves") == 0
        async with database.session() as db:
            payment = await payment_service.get_payment(db, result.payment_id)
            order = await order_service.get_order(db, result.order_id)
        assert payment.status == "failed"
        assert payment.callback_payload.succeeded is True
        assert order.status == "payment_failed"

        with pytest.raises(InsufficientStockError):
            await reconciler.reconcile_manually(result.payment_id, succeeded=True, reason="customer paid")

    @pytest.mark.asyncio
    async def test_operator_can_correct_swept_payment(self, orchestrator, reconciler, database, test_settings):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))
        await sweep_stale_payments(database, test_settings, now=utcnow() + timedelta(days=1))

        snapshot = await reconciler.reconcile_manually(
            result.payment_id, succeeded=True, reason="receipt NLJ7RT61SV confirmed"
        )

        assert snapshot.status == "completed"
        assert await stock_of(database, "ball") == 7
        async with database.session() as db:
            order = await order_service.get_order(db, result.order_id)
        assert order.status == "paid"

    @pytest.mark.asyncio
    async def test_terminal_payments_are_never_swept(self, orchestrator, reconciler, database, test_settings):
        result = await orchestrator.checkout("user_001", checkout_request([{"_id": "ball", "quantity": 3}]))
        await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=0))

        swept = await sweep_stale_payments(database, test_settings, now=utcnow() + timedelta(days=1))

        assert swept.total == 0
        assert await stock_of(database, "ball") == 7


class TestScheduler:

    def test_disabled_when_interval_is_zero(self, database, test_settings):
        assert build_scheduler(database, test_settings) is None

    @pytest.mark.asyncio
    async def test_start_registers_sweep_job(self, database, test_settings):
        settings = test_settings.model_copy(update={"sweep_interval_seconds": 30})
        scheduler = build_scheduler(database, settings)

        scheduler.start()
        try:
            assert scheduler.running
            job = scheduler.get_job(SWEEP_JOB_ID)
            assert job is not None
            assert job.trigger.interval == timedelta(seconds=30)
        finally:
            await scheduler.shutdown(wait=False)

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_sweep(self, database, test_settings, monkeypatch):
        started = asyncio.Event()
        finished = []

        async def slow_sweep(database, settings):
            started.set()
            await asyncio.sleep(0.05)
            finished.append(True)

        monkeypatch.setattr(scheduler_module, "sweep_stale_payments", slow_sweep)
        settings = test_settings.model_copy(update={"sweep_interval_seconds": 30})
        scheduler = build_scheduler(database, settings)
        scheduler.start()

        sweep = asyncio.create_task(scheduler._run_sweep())
        await started.wait()
        await scheduler.shutdown(wait=True)

        assert finished == [True]
        assert sweep.done()
        assert not scheduler.running
