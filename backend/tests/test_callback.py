"""
Callback reconciliation tests.

Tests success/failure outcomes, replay idempotency, unknown and malformed
callbacks and the operator path.
"""
import asyncio

import pytest

from hockeystore.db.models import PaymentModel
from hockeystore.exceptions import (
    MalformedCallbackError,
    OrderStateError,
    PaymentNotFoundError,
    UnknownPaymentError
)
from hockeystore.mocks.mpesa_gateway import build_callback_payload
from hockeystore.services import order_service, payment_service
from hockeystore.services.callback_service import apply_payment_outcome, parse_callback

from conftest import checkout_request, stock_of


async def checkout_stick(orchestrator, quantity: int = 1):
    return await orchestrator.checkout("user_001", checkout_request([{"_id": "stick", "quantity": quantity}]))


async def load(database, result):
    async with database.session() as db:
        payment = await payment_service.get_payment(db, result.payment_id)
        order = await order_service.get_order(db, result.order_id)
    return payment, order


class TestCallbackOutcomes:

    @pytest.mark.asyncio
    async def test_success_marks_order_paid_and_keeps_stock_reserved(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)

        changed = await reconciler.handle_callback(
            build_callback_payload(result.correlation_id, result_code=0, amount=12000, phone_number="254711222333")
        )

        assert changed is True
        payment, order = await load(database, result)
        assert payment.status == "completed"
        assert payment.callback_payload.result_code == 0
        assert payment.callback_payload.metadata["Amount"] == 12000
        assert order.status == "paid"
        assert order.payment_status == "completed"
        assert order.payment_completed_at is not None
        assert order.customer.phone == "254711222333"
        assert await stock_of(database, "stick") == 4

    @pytest.mark.asyncio
    async def test_failure_marks_order_failed_and_restores_stock(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator, quantity=2)
        assert await stock_of(database, "stick") == 3

        changed = await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=1032))

        assert changed is True
        payment, order = await load(database, result)
        assert payment.status == "failed"
        assert payment.result_description == "Request cancelled by user"
        assert order.status == "payment_failed"
        assert order.payment_status == "failed"
        assert order.payment_completed_at is None
        assert order.customer.phone == "254708374149"
        assert await stock_of(database, "stick") == 5


class TestCallbackIdempotency:

    @pytest.mark.asyncio
    async def test_replayed_failure_does_not_restore_stock_twice(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)
        body = build_callback_payload(result.correlation_id, result_code=1)

        assert await reconciler.handle_callback(body) is True
        first_payment, first_order = await load(database, result)

        assert await reconciler.handle_callback(body) is False

        payment, order = await load(database, result)
        assert payment.updated_at == first_payment.updated_at
        assert order.updated_at == first_order.updated_at
        assert await stock_of(database, "stick") == 5

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_failures_restore_stock_once(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator, quantity=2)
        body = build_callback_payload(result.correlation_id, result_code=1)

        outcomes = await asyncio.gather(*(reconciler.handle_callback(body) for _ in range(5)))

        assert sorted(outcomes) == [False, False, False, False, True]
        assert await stock_of(database, "stick") == 5
        payment, order = await load(database, result)
        assert payment.status == "failed"
        assert order.status == "payment_failed"

    @pytest.mark.asyncio
    async def test_late_failure_after_success_is_ignored(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)

        await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=0))
        changed = await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=1))

        assert changed is False
        payment, order = await load(database, result)
        assert payment.status == "completed"
        assert order.status == "paid"
        assert await stock_of(database, "stick") == 4

    @pytest.mark.asyncio
    async def test_apply_outcome_reports_already_terminal(self, orchestrator, database):
        result = await checkout_stick(orchestrator)

        async with database.transaction() as db:
            row = await payment_service.get_payment_row(db, result.payment_id)
            assert await apply_payment_outcome(db, row, succeeded=False) is True

        async with database.transaction() as db:
            row = await payment_service.get_payment_row(db, result.payment_id)
            assert await apply_payment_outcome(db, row, succeeded=True) is False

        assert await stock_of(database, "stick") == 5

    @pytest.mark.asyncio
    async def test_order_transition_requires_pending_order(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)
        await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=0))

        with pytest.raises(OrderStateError):
            async with database.transaction() as db:
                await order_service.mark_payment_failed(db, result.order_id)


class TestRejectedCallbacks:

    @pytest.mark.asyncio
    async def test_unknown_checkout_request_id_writes_nothing(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)
        before, _ = await load(database, result)

        with pytest.raises(UnknownPaymentError) as exc_info:
            await reconciler.handle_callback(build_callback_payload("ws_CO_does_not_exist", result_code=1))

        assert exc_info.value.status_code == 404
        after, _ = await load(database, result)
        assert after.status == "pending"
        assert after.updated_at == before.updated_at
        assert await stock_of(database, "stick") == 4

    @pytest.mark.parametrize("body", [
        None,
        [],
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": "zero"}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "", "ResultCode": 0}}},
    ])
    def test_malformed_bodies_are_rejected(self, body):
        with pytest.raises(MalformedCallbackError) as exc_info:
            parse_callback(body)
        assert exc_info.value.status_code == 400

    def test_metadata_items_are_flattened(self):
        payload = parse_callback(
            build_callback_payload("ws_CO_1", amount=1001, phone_number="254708374149", receipt_number="NLJ7RT61SV")
        )

        assert payload.succeeded is True
        assert payload.metadata["Amount"] == 1001
        assert payload.metadata["MpesaReceiptNumber"] == "NLJ7RT61SV"
        assert payload.metadata["PhoneNumber"] == 254708374149

    def test_failed_callback_has_no_metadata(self):
        payload = parse_callback(build_callback_payload("ws_CO_1", result_code=1037))

        assert payload.succeeded is False
        assert payload.metadata == {}
        assert payload.result_desc == "DS timeout user cannot be reached"


class TestManualReconciliation:

    @pytest.mark.asyncio
    async def test_operator_can_fail_a_pending_payment(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)

        snapshot = await reconciler.reconcile_manually(result.payment_id, succeeded=False, reason="customer called")

        assert snapshot.status == "failed"
        payment, order = await load(database, result)
        assert payment.result_description == "manual: customer called"
        assert order.status == "payment_failed"
        assert await stock_of(database, "stick") == 5

    @pytest.mark.asyncio
    async def test_operator_cannot_override_terminal_payment(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)
        await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=0))

        snapshot = await reconciler.reconcile_manually(result.payment_id, succeeded=False, reason="mistake")

        assert snapshot.status == "completed"
        assert await stock_of(database, "stick") == 4

    @pytest.mark.asyncio
    async def test_operator_cannot_override_gateway_failure(self, orchestrator, reconciler, database):
        result = await checkout_stick(orchestrator)
        await reconciler.handle_callback(build_callback_payload(result.correlation_id, result_code=1032))

        snapshot = await reconciler.reconcile_manually(result.payment_id, succeeded=True, reason="says they paid")

        assert snapshot.status == "failed"
        assert await stock_of(database, "stick") == 5

    @pytest.mark.asyncio
    async def test_unknown_payment(self, reconciler, database):
        with pytest.raises(PaymentNotFoundError):
            await reconciler.reconcile_manually("pay_missing", succeeded=True, reason="x")

        async with database.session() as db:
            assert await db.get(PaymentModel, "pay_missing") is None
