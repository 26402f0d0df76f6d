import json
import unittest
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import IntegrityError

from core.billing_service import (
    apply_provider_status,
    create_payment,
    create_settled_order,
    get_order,
    handle_webhook,
    reconcile_stale_orders,
    verify_payment,
)
from core.db import DB
from core.errors import (
    GatewayRejected,
    GatewayUnavailable,
    InsufficientStockError,
    NotFoundError,
    SignatureError,
    ValidationError,
)
from core.models.order import Order, ORDER_STATUS_COMPLETED, ORDER_STATUS_FAILED, ORDER_STATUS_PENDING
from core.models.product import Product
from core.models.subscription import Subscription
from core.payment_gateway import GatewayConfig, XtraGatewayClient, sign_payload
from tests.fakes import FakeGateway, seed_plan


class BillingFlowTestCase(unittest.TestCase):
    def setUp(self):
        DB.create_tables()
        self.session = DB.get_session()
        self.product, self.plan = seed_plan(self.session, price="500.00", stock=10)
        self.gateway = FakeGateway()

    def tearDown(self):
        self.session.close()

    def _create(self, quantity=1, **overrides):
        gateway = overrides.pop("gateway", self.gateway)
        kwargs = {
            "plan_id": self.plan.id,
            "quantity": quantity,
            "guest_email": "buyer@example.com",
            "phone_number": "+91 98765-43210",
            "success_url": "https://shop.example.test/checkout/success",
            "cancel_url": "https://shop.example.test/checkout/cancel",
        }
        kwargs.update(overrides)
        return create_payment(self.session, gateway, **kwargs)

    def _subscription_count(self):
        return self.session.query(Subscription).filter(Subscription.plan_id == self.plan.id).count()

    def _order_count(self):
        return self.session.query(Order).filter(Order.plan_id == self.plan.id).count()

    def _stock(self):
        self.session.expire_all()
        return self.session.query(Product).filter(Product.id == self.product.id).first().stock_quantity

    def test_create_payment_persists_pending_order(self):
        result = self._create(quantity=2)
        order = get_order(self.session, result["order_id"])
        self.assertEqual(order.status, ORDER_STATUS_PENDING)
        self.assertEqual(order.amount, Decimal("1000.00"))
        self.assertEqual(order.currency, "INR")
        self.assertEqual(order.phone_number, "919876543210")
        self.assertEqual(order.payment_provider_id, result["payment_id"])
        self.assertTrue(result["payment_url"].endswith(order.id))
        self.assertEqual(self.gateway.initiated[0]["phone_number"], "919876543210")
        self.assertEqual(self._stock(), 10)

    def test_repeated_completion_fires_side_effects_once(self):
        order = get_order(self.session, self._create(quantity=3)["order_id"])
        first = apply_provider_status(self.session, order, "PAID")
        self.assertTrue(first.fulfilled)
        for _ in range(4):
            again = apply_provider_status(self.session, order, "completed")
            self.assertFalse(again.fulfilled)
            self.assertEqual(again.status, ORDER_STATUS_COMPLETED)
        self.assertEqual(self._subscription_count(), 1)
        self.assertEqual(self._stock(), 7)
        self.session.refresh(order)
        self.assertEqual(order.subscription_id, first.subscription.id)

    def test_completed_order_is_not_downgraded(self):
        order = get_order(self.session, self._create()["order_id"])
        apply_provider_status(self.session, order, "success")
        result = apply_provider_status(self.session, order, "FAILED")
        self.assertEqual(result.status, ORDER_STATUS_COMPLETED)
        result = apply_provider_status(self.session, order, "SOMETHING_NEW")
        self.assertEqual(result.status, ORDER_STATUS_COMPLETED)

    def test_failed_order_can_still_complete(self):
        order = get_order(self.session, self._create()["order_id"])
        self.assertEqual(apply_provider_status(self.session, order, "cancelled").status, ORDER_STATUS_FAILED)
        self.assertEqual(apply_provider_status(self.session, order, "Processing").status, ORDER_STATUS_PENDING)
        self.assertEqual(apply_provider_status(self.session, order, "weird").status, ORDER_STATUS_PENDING)
        apply_provider_status(self.session, order, "error")
        result = apply_provider_status(self.session, order, "paid")
        self.assertTrue(result.fulfilled)
        self.assertEqual(self._subscription_count(), 1)

    def test_subscription_period_follows_plan_interval(self):
        order = get_order(self.session, self._create()["order_id"])
        result = apply_provider_status(self.session, order, "completed")
        sub = result.subscription
        self.assertEqual(sub.guest_email, "buyer@example.com")
        self.assertIsNone(sub.user_id)
        self.assertEqual(sub.status, "active")
        self.assertGreater(sub.current_period_end, sub.current_period_start + timedelta(days=27))
        self.assertLess(sub.current_period_end, sub.current_period_start + timedelta(days=32))

    def test_authenticated_purchaser_does_not_need_email(self):
        result = self._create(guest_email=None, user_id="user-1")
        order = get_order(self.session, result["order_id"])
        self.assertEqual(order.user_id, "user-1")
        self.assertIsNone(order.guest_email)

    def test_guest_without_email_is_rejected(self):
        before = self._order_count()
        with self.assertRaises(ValidationError) as ctx:
            self._create(guest_email=None)
        self.assertIn("guest_email", ctx.exception.errors)
        self.assertEqual(self._order_count(), before)

    def test_quantity_bounds(self):
        for quantity in (0, 101, "2", 1.5, True):
            with self.assertRaises(ValidationError) as ctx:
                self._create(quantity=quantity)
            self.assertIn("quantity", ctx.exception.errors)
        self._create(quantity=None)
        self._create(quantity=1)
        self._create(quantity=10)

    def test_invalid_fields_are_reported_per_field(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(plan_id="not-a-uuid", phone_number="123", success_url="", guest_email="nope")
        self.assertEqual(
            set(ctx.exception.errors),
            {"plan_id", "phone_number", "success_url", "guest_email"},
        )

    def test_inactive_plan_is_not_found(self):
        _, inactive = seed_plan(self.session, plan_active=False)
        with self.assertRaises(NotFoundError):
            self._create(plan_id=inactive.id)
        with self.assertRaises(NotFoundError):
            self._create(plan_id=str(uuid.uuid4()))

    def test_insufficient_stock_at_creation(self):
        before = self._order_count()
        with self.assertRaises(InsufficientStockError) as ctx:
            self._create(quantity=11)
        self.assertEqual(ctx.exception.details, {"available": 10, "requested": 11})
        self.assertEqual(self._order_count(), before)

    def test_gateway_rejection_marks_order_failed(self):
        gateway = FakeGateway(initiate_error=GatewayRejected("amount too low"))
        with self.assertRaises(GatewayRejected):
            self._create(gateway=gateway)
        order = self.session.query(Order).filter(Order.plan_id == self.plan.id).one()
        self.assertEqual(order.status, ORDER_STATUS_FAILED)
        self.assertIsNone(order.payment_provider_id)

    def test_gateway_unavailable_at_creation_marks_order_failed(self):
        gateway = FakeGateway(initiate_error=GatewayUnavailable("timeout"))
        with self.assertRaises(GatewayUnavailable):
            self._create(gateway=gateway)
        order = self.session.query(Order).filter(Order.plan_id == self.plan.id).one()
        self.assertEqual(order.status, ORDER_STATUS_FAILED)

    def test_non_canonical_plan_id_is_rejected(self):
        plan_uuid = uuid.UUID(self.plan.id)
        for variant in ("{%s}" % plan_uuid, plan_uuid.urn, plan_uuid.hex):
            with self.assertRaises(ValidationError) as ctx:
                self._create(plan_id=variant)
            self.assertIn("plan_id", ctx.exception.errors)
        self.assertEqual(self._order_count(), 0)

    def test_duplicate_provider_id_marks_order_failed(self):
        gateway = FakeGateway(provider_order_id=f"gw_dup_{uuid.uuid4().hex[:8]}")
        first = self._create(gateway=gateway)
        with self.assertRaises(IntegrityError):
            self._create(gateway=gateway)
        self.session.expire_all()
        orders = self.session.query(Order).filter(Order.plan_id == self.plan.id).all()
        self.assertEqual(len(orders), 2)
        failed = [o for o in orders if o.id != first["order_id"]][0]
        self.assertEqual(failed.status, ORDER_STATUS_FAILED)
        self.assertIsNone(failed.payment_provider_id)
        self.assertEqual(get_order(self.session, first["order_id"]).status, ORDER_STATUS_PENDING)

    def test_unconfigured_gateway_creates_nothing(self):
        with self.assertRaises(GatewayUnavailable):
            self._create(gateway=FakeGateway(configured=False))
        self.assertEqual(self._order_count(), 0)

    def test_verify_payment_applies_provider_status(self):
        result = self._create()
        self.gateway.status = "SUCCESS"
        outcome = verify_payment(self.session, self.gateway, order_id=result["order_id"])
        self.assertEqual(outcome["status"], ORDER_STATUS_COMPLETED)
        self.assertEqual(outcome["provider_status"], "SUCCESS")
        self.assertTrue(outcome["verified"])
        self.assertEqual(self.gateway.checked, [result["payment_id"]])

        outcome = verify_payment(self.session, self.gateway, payment_id=result["payment_id"])
        self.assertEqual(outcome["order_id"], result["order_id"])
        self.assertEqual(self._subscription_count(), 1)

    def test_verify_payment_gateway_error_leaves_status(self):
        result = self._create()
        gateway = FakeGateway(check_error=GatewayUnavailable("down"))
        with self.assertRaises(GatewayUnavailable):
            verify_payment(self.session, gateway, order_id=result["order_id"])
        self.session.expire_all()
        self.assertEqual(get_order(self.session, result["order_id"]).status, ORDER_STATUS_PENDING)

    def test_verify_payment_bad_status_response_keeps_failed(self):
        gateway = XtraGatewayClient(GatewayConfig(api_key="key", site_url="https://gw.example.test"))
        result = self._create()
        order = get_order(self.session, result["order_id"])
        apply_provider_status(self.session, order, "cancelled")
        with patch("core.payment_gateway.requests.post", return_value=MagicMock(ok=False, status_code=503)):
            outcome = verify_payment(self.session, gateway, order_id=result["order_id"])
        self.assertEqual(outcome["status"], ORDER_STATUS_FAILED)
        self.assertEqual(outcome["provider_status"], "UNKNOWN")
        self.session.expire_all()
        order = get_order(self.session, result["order_id"])
        self.assertEqual(order.status, ORDER_STATUS_FAILED)
        self.assertEqual(order.provider_status, "cancelled")

    def test_unknown_status_sentinel_keeps_rejected_order(self):
        with self.assertRaises(GatewayRejected):
            self._create(gateway=FakeGateway(initiate_error=GatewayRejected("declined")))
        order = self.session.query(Order).filter(Order.plan_id == self.plan.id).one()
        result = apply_provider_status(self.session, order, "UNKNOWN")
        self.assertEqual(result.status, ORDER_STATUS_FAILED)
        self.assertFalse(result.fulfilled)

    def test_verify_payment_requires_identifier(self):
        with self.assertRaises(ValidationError):
            verify_payment(self.session, self.gateway)
        with self.assertRaises(NotFoundError):
            verify_payment(self.session, self.gateway, order_id=str(uuid.uuid4()))

    def test_webhook_completes_order_by_provider_id(self):
        result = self._create(quantity=2)
        body = json.dumps({"event": "payment.updated", "data": {"payment_id": result["payment_id"], "status": "paid"}})
        outcome = handle_webhook(self.session, self.gateway, raw_body=body.encode("utf-8"))
        self.assertEqual(
            outcome,
            {
                "success": True,
                "order_id": result["order_id"],
                "status": ORDER_STATUS_COMPLETED,
                "payment_id": result["payment_id"],
                "provider_order_id": None,
            },
        )
        self.assertEqual(self._stock(), 8)

    def test_webhook_unknown_payment_id(self):
        result = self._create()
        body = json.dumps({"payment_id": "gw_missing", "status": "paid"}).encode("utf-8")
        with self.assertRaises(NotFoundError):
            handle_webhook(self.session, self.gateway, raw_body=body)
        self.session.expire_all()
        order = get_order(self.session, result["order_id"])
        self.assertEqual(order.status, ORDER_STATUS_PENDING)
        self.assertEqual(self._subscription_count(), 0)

    def test_webhook_invalid_payload(self):
        with self.assertRaises(ValidationError):
            handle_webhook(self.session, self.gateway, raw_body=b"{not json")
        with self.assertRaises(ValidationError):
            handle_webhook(self.session, self.gateway, raw_body=b'{"status": "paid"}')
        with self.assertRaises(ValidationError):
            handle_webhook(self.session, self.gateway, raw_body=b"[1, 2]")

    def test_webhook_signature_checked_when_secret_configured(self):
        result = self._create()
        gateway = FakeGateway(secret="whsec")
        body = json.dumps({"payment_id": result["payment_id"], "status": "paid"}).encode("utf-8")
        with self.assertRaises(SignatureError):
            handle_webhook(self.session, gateway, raw_body=body, signature="bad")
        outcome = handle_webhook(self.session, gateway, raw_body=body, signature=sign_payload(body, "whsec"))
        self.assertEqual(outcome["status"], ORDER_STATUS_COMPLETED)

    def test_webhook_query_params(self):
        result = self._create()
        outcome = handle_webhook(
            self.session,
            self.gateway,
            params={"transaction_id": result["payment_id"], "payment_status": "failed"},
        )
        self.assertEqual(outcome["status"], ORDER_STATUS_FAILED)

    def test_settled_order_completes_immediately(self):
        outcome = create_settled_order(self.session, plan_id=self.plan.id, quantity=2, user_id="user-9")
        self.assertEqual(outcome["order"]["status"], ORDER_STATUS_COMPLETED)
        self.assertEqual(outcome["order"]["amount"], "1000.00")
        self.assertEqual(outcome["subscription"]["user_id"], "user-9")
        self.assertEqual(outcome["order"]["subscription_id"], outcome["subscription"]["id"])
        self.assertEqual(outcome["stock_remaining"], 8)

    def test_unmetered_product_is_not_decremented(self):
        product, plan = seed_plan(self.session, stock=None)
        outcome = create_settled_order(self.session, plan_id=plan.id, quantity=100, guest_email="g@example.com")
        self.assertIsNone(outcome["stock_remaining"])
        self.assertEqual(outcome["warnings"], [])
        self.session.expire_all()
        self.assertIsNone(self.session.query(Product).filter(Product.id == product.id).first().stock_quantity)

    def test_initiate_then_check_status_round_trip(self):
        gateway = XtraGatewayClient(GatewayConfig(api_key="key", site_url="https://gw.example.test"))
        create_resp = MagicMock(ok=True, status_code=200)
        create_resp.json.return_value = {
            "status": True,
            "result": {"orderId": f"xg_{uuid.uuid4().hex[:10]}", "payment_url": "https://gw.example.test/pay/1"},
        }
        check_resp = MagicMock(ok=True, status_code=200)
        check_resp.json.return_value = {"status": "COMPLETED", "result": {"txnStatus": "paid"}}
        with patch("core.payment_gateway.requests.post", side_effect=[create_resp, check_resp]) as post:
            result = self._create(gateway=gateway)
            outcome = verify_payment(self.session, gateway, order_id=result["order_id"])
        self.assertEqual(post.call_count, 2)
        self.assertEqual(post.call_args_list[1].kwargs["data"]["order_id"], result["payment_id"])
        self.assertEqual(outcome["status"], ORDER_STATUS_COMPLETED)
        self.assertEqual(outcome["provider_status"], "paid")

    def test_reconcile_stale_orders(self):
        result = self._create()
        self.session.query(Order).filter(Order.id == result["order_id"]).update(
            {"created_at": datetime.now() - timedelta(hours=1)}
        )
        self.session.commit()
        self.gateway.status = "COMPLETED"
        summary = reconcile_stale_orders(self.session, self.gateway, min_age_seconds=600, limit=1000)
        self.assertGreaterEqual(summary["completed"], 1)
        self.assertIn(result["payment_id"], self.gateway.checked)
        self.session.expire_all()
        self.assertEqual(get_order(self.session, result["order_id"]).status, ORDER_STATUS_COMPLETED)

    def test_reconcile_skips_gateway_errors(self):
        result = self._create()
        self.session.query(Order).filter(Order.id == result["order_id"]).update(
            {"created_at": datetime.now() - timedelta(hours=1)}
        )
        self.session.commit()
        gateway = FakeGateway(check_error=GatewayUnavailable("down"))
        summary = reconcile_stale_orders(self.session, gateway, min_age_seconds=600, limit=1000)
        self.assertGreaterEqual(summary["errors"], 1)
        self.session.expire_all()
        self.assertEqual(get_order(self.session, result["order_id"]).status, ORDER_STATUS_PENDING)


if __name__ == "__main__":
    unittest.main()
