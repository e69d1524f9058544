import json
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

import db_fixtures
from db_fixtures import USER, add_permission, add_package, add_subscription
from models.subscription import Subscription
from models.subscription_log import SubscriptionLog
from models.webhook_event import WebhookEvent
from utils.errors import ValidationError, SignatureError
from utils.paystack_client import compute_signature
from utils.webhook_reconciler import handle_webhook, apply_event, event_key, RetryableWebhookError

SECRET = "sk_test_webhook_secret"
NOW = datetime(2024, 1, 5, 9, 0, 0)


def signed(payload):
    raw = json.dumps(payload).encode("utf-8")
    return raw, compute_signature(raw, SECRET)


class WebhookTestCase(unittest.TestCase):
    def setUp(self):
        self.db = db_fixtures.make_session_factory()()
        self.permission = add_permission(self.db, "PSIRA", psira_access=True)
        self.monthly = add_package(self.db, self.permission, slug="psira-monthly", plan_code="PLN_monthly")
        self.yearly = add_package(self.db, self.permission, slug="psira-yearly", type="yearly", plan_code="PLN_yearly")

        secret_patch = patch("utils.paystack_client.PAYSTACK_SECRET_KEY", SECRET)
        secret_patch.start()
        self.addCleanup(secret_patch.stop)

        disable_patch = patch("utils.paystack_client.disable_subscription", return_value={"success": True})
        self.mock_disable = disable_patch.start()
        self.addCleanup(disable_patch.stop)

    def tearDown(self):
        self.db.close()

    def rows(self, **criteria):
        self.db.expire_all()
        return self.db.query(Subscription).filter_by(**criteria).all()

    def charge_success(self, reference, metadata=None, plan_code=None, paid_at="2024-01-05T09:00:00.000Z"):
        data = {
            "id": 302961,
            "reference": reference,
            "status": "success",
            "paid_at": paid_at,
            "customer": {"customer_code": "CUS_1", "email": USER.email},
        }
        if metadata is not None:
            data["metadata"] = metadata
        if plan_code:
            data["plan"] = {"plan_code": plan_code, "interval": "monthly"}
        return data


class TestSignature(WebhookTestCase):
    def test_missing_signature(self):
        raw, _ = signed({"event": "charge.success", "data": {}})
        with self.assertRaises(ValidationError):
            handle_webhook(self.db, raw, None)

    def test_bad_signature_is_rejected_before_parsing(self):
        with self.assertRaises(SignatureError) as ctx:
            handle_webhook(self.db, b"{not json", "deadbeef")
        self.assertEqual(ctx.exception.status_code, 401)

    def test_signature_from_another_secret(self):
        raw = json.dumps({"event": "charge.success", "data": {}}).encode()
        with self.assertRaises(SignatureError):
            handle_webhook(self.db, raw, compute_signature(raw, "sk_other"))

    def test_non_ascii_signature_is_rejected(self):
        raw, sig = signed({"event": "charge.success", "data": {}})
        with self.assertRaises(SignatureError):
            handle_webhook(self.db, raw, "é" + sig[1:])

    def test_malformed_body_with_valid_signature(self):
        raw = b"{not json"
        with self.assertRaises(ValidationError):
            handle_webhook(self.db, raw, compute_signature(raw, SECRET))

    def test_unknown_event_is_acknowledged(self):
        raw, sig = signed({"event": "invoice.create", "data": {"id": 1}})
        self.assertEqual(handle_webhook(self.db, raw, sig), {"received": True})
        self.assertEqual(self.db.query(WebhookEvent).count(), 0)


class TestEventKey(unittest.TestCase):
    def test_keys(self):
        self.assertEqual(event_key("charge.success", {"reference": "ref-1", "id": 9}), "charge.success:ref-1")
        self.assertEqual(event_key("subscription.create", {"subscription_code": "SUB_1"}), "subscription.create:SUB_1")
        self.assertEqual(event_key("refund.processed", {"id": 77}), "refund.processed:77")
        self.assertIsNone(event_key("charge.success", {}))


class TestCheckoutConfirmation(WebhookTestCase):
    def initialize_metadata(self, package):
        return {"action": "initialize", "profile_id": USER.profile_id, "package_id": package.id}

    def test_creates_active_subscription(self):
        raw, sig = signed({"event": "charge.success", "data": self.charge_success("ref-1", self.initialize_metadata(self.monthly))})

        self.assertEqual(handle_webhook(self.db, raw, sig), {"received": True})

        [sub] = self.rows()
        self.assertEqual(sub.status, "active")
        self.assertEqual(sub.profile_id, USER.profile_id)
        self.assertEqual(sub.transaction_reference, "ref-1")
        self.assertEqual(sub.customer_code, "CUS_1")
        self.assertEqual(sub.customer_email, USER.email)
        self.assertEqual(sub.start_date, NOW)
        self.assertEqual(sub.end_date, NOW + timedelta(days=30))

    def test_yearly_package_runs_a_year(self):
        apply_event(self.db, "charge.success", self.charge_success("ref-1", self.initialize_metadata(self.yearly)))
        [sub] = self.rows()
        self.assertEqual(sub.end_date, NOW + timedelta(days=365))

    def test_metadata_sent_as_json_string(self):
        metadata = json.dumps(self.initialize_metadata(self.monthly))
        apply_event(self.db, "charge.success", self.charge_success("ref-1", metadata))
        self.assertEqual(len(self.rows()), 1)

    def test_duplicate_delivery_creates_one_row(self):
        raw, sig = signed({"event": "charge.success", "data": self.charge_success("ref-1", self.initialize_metadata(self.monthly))})

        handle_webhook(self.db, raw, sig)
        second = handle_webhook(self.db, raw, sig)

        self.assertEqual(second, {"received": True, "duplicate": True})
        self.assertEqual(len(self.rows()), 1)
        self.assertEqual(self.db.query(SubscriptionLog).filter_by(action="ACTIVATE").count(), 1)
        self.assertEqual(self.db.query(WebhookEvent).count(), 1)

    def test_unknown_package_is_acknowledged_without_row(self):
        metadata = {"action": "initialize", "profile_id": USER.profile_id, "package_id": "missing"}
        self.assertEqual(apply_event(self.db, "charge.success", self.charge_success("ref-1", metadata)), {"received": True})
        self.assertEqual(self.rows(), [])

    def test_change_plan_replaces_old_subscription(self):
        old = add_subscription(
            self.db,
            USER.profile_id,
            self.monthly,
            start_date=NOW - timedelta(days=10),
            subscription_code="SUB_old",
            email_token="tok_old",
            customer_code="CUS_1",
        )
        metadata = {
            "action": "change-plan",
            "subscription_id": old.id,
            "profile_id": USER.profile_id,
            "package_id": self.yearly.id,
        }

        apply_event(self.db, "charge.success", self.charge_success("ref-2", metadata, plan_code="PLN_yearly"))

        self.assertEqual(self.rows(id=old.id)[0].status, "cancelled")
        [new] = self.rows(package_id=self.yearly.id)
        self.assertEqual(new.status, "active")
        self.assertEqual(new.transaction_reference, "ref-2")
        self.mock_disable.assert_called_once_with("SUB_old", "tok_old")

    def test_change_plan_leaves_terminal_old_row_alone(self):
        old = add_subscription(self.db, USER.profile_id, self.monthly, status="refunded")
        metadata = {
            "action": "change-plan",
            "subscription_id": old.id,
            "profile_id": USER.profile_id,
            "package_id": self.yearly.id,
        }

        apply_event(self.db, "charge.success", self.charge_success("ref-2", metadata))

        self.assertEqual(self.rows(id=old.id)[0].status, "refunded")
        self.assertEqual(len(self.rows(package_id=self.yearly.id)), 1)
        self.mock_disable.assert_not_called()


class TestRenewal(WebhookTestCase):
    def setUp(self):
        super().setUp()
        self.sub = add_subscription(
            self.db,
            USER.profile_id,
            self.monthly,
            start_date=datetime(2024, 1, 1),
            end_date=datetime(2024, 1, 31),
            transaction_reference="ref-first",
            customer_code="CUS_1",
            subscription_code="SUB_1",
        )

    def test_renewal_extends_by_one_period(self):
        data = self.charge_success("ref-renew-1", plan_code="PLN_monthly", paid_at="2024-01-31T00:05:00Z")

        apply_event(self.db, "charge.success", data)

        row = self.rows(id=self.sub.id)[0]
        expected = datetime(2024, 1, 31, 0, 5) + timedelta(days=30)
        self.assertEqual(row.end_date, expected)
        self.assertEqual(row.current_period_end, expected)

    def test_replayed_renewal_extends_once(self):
        data = self.charge_success("ref-renew-1", plan_code="PLN_monthly", paid_at="2024-01-20T00:00:00Z")

        apply_event(self.db, "charge.success", data)
        result = apply_event(self.db, "charge.success", data)

        self.assertTrue(result["duplicate"])
        self.assertEqual(self.rows(id=self.sub.id)[0].end_date, datetime(2024, 1, 31) + timedelta(days=30))
        self.assertEqual(self.db.query(SubscriptionLog).filter_by(action="RENEW").count(), 1)

    def test_renewal_does_not_revive_cancelled_row(self):
        self.sub.status = "cancelled"
        self.db.commit()

        apply_event(self.db, "charge.success", self.charge_success("ref-renew-1", plan_code="PLN_monthly"))

        row = self.rows(id=self.sub.id)[0]
        self.assertEqual(row.status, "cancelled")
        self.assertEqual(row.end_date, datetime(2024, 1, 31))

    def test_renewal_for_unknown_customer_is_ignored(self):
        data = self.charge_success("ref-renew-1", plan_code="PLN_unknown")
        self.assertEqual(apply_event(self.db, "charge.success", data), {"received": True})
        self.assertEqual(self.rows(id=self.sub.id)[0].end_date, datetime(2024, 1, 31))


class TestSubscriptionEvents(WebhookTestCase):
    def create_data(self, code="SUB_1"):
        return {
            "subscription_code": code,
            "email_token": "tok_1",
            "next_payment_date": "2024-02-04T09:00:00.000Z",
            "customer": {"customer_code": "CUS_1"},
            "plan": {"plan_code": "PLN_monthly"},
        }

    def test_create_links_gateway_codes(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, start_date=NOW, customer_code="CUS_1")

        apply_event(self.db, "subscription.create", self.create_data(), now=NOW)

        row = self.rows(id=sub.id)[0]
        self.assertEqual(row.subscription_code, "SUB_1")
        self.assertEqual(row.email_token, "tok_1")
        self.assertEqual(row.current_period_end, datetime(2024, 2, 4, 9, 0))
        self.mock_disable.assert_not_called()

    def test_create_before_charge_is_retried(self):
        with self.assertRaises(RetryableWebhookError):
            apply_event(self.db, "subscription.create", self.create_data(), now=NOW)
        # No marker is kept, so the redelivery is processed
        self.assertEqual(self.db.query(WebhookEvent).count(), 0)

        sub = add_subscription(self.db, USER.profile_id, self.monthly, start_date=NOW, customer_code="CUS_1")
        self.assertEqual(apply_event(self.db, "subscription.create", self.create_data(), now=NOW), {"received": True})
        self.assertEqual(self.rows(id=sub.id)[0].subscription_code, "SUB_1")

    def test_create_for_locally_cancelled_row_disables_renewals(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, start_date=NOW, customer_code="CUS_1", status="cancelled")

        apply_event(self.db, "subscription.create", self.create_data(), now=NOW)

        self.assertEqual(self.rows(id=sub.id)[0].status, "cancelled")
        self.mock_disable.assert_called_once_with("SUB_1", "tok_1")

    def test_disable_cancels_active_row(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, subscription_code="SUB_1")

        apply_event(self.db, "subscription.disable", {"subscription_code": "SUB_1", "status": "complete"}, now=NOW)

        self.assertEqual(self.rows(id=sub.id)[0].status, "cancelled")
        log = self.db.query(SubscriptionLog).filter_by(action="CANCEL").one()
        self.assertEqual(log.actor, "paystack")

    def test_disable_keeps_refunded_row(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, subscription_code="SUB_1", status="refunded")
        apply_event(self.db, "subscription.disable", {"subscription_code": "SUB_1"}, now=NOW)
        self.assertEqual(self.rows(id=sub.id)[0].status, "refunded")

    def test_disable_before_create_still_cancels(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, start_date=NOW, customer_code="CUS_1")
        disable = {
            "subscription_code": "SUB_1",
            "email_token": "tok_1",
            "customer": {"customer_code": "CUS_1"},
            "plan": {"plan_code": "PLN_monthly"},
        }

        apply_event(self.db, "subscription.disable", disable, now=NOW)
        apply_event(self.db, "subscription.create", self.create_data(), now=NOW)
        redelivered = apply_event(self.db, "subscription.disable", disable, now=NOW)

        self.assertTrue(redelivered["duplicate"])
        row = self.rows(id=sub.id)[0]
        self.assertEqual(row.status, "cancelled")
        self.assertEqual(row.subscription_code, "SUB_1")

    def test_disable_without_any_matching_row_is_retried(self):
        with self.assertRaises(RetryableWebhookError):
            apply_event(self.db, "subscription.disable", {"subscription_code": "SUB_404"}, now=NOW)
        self.assertEqual(self.db.query(WebhookEvent).count(), 0)


class TestRefundProcessed(WebhookTestCase):
    def test_marks_active_row_refunded(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, transaction_reference="ref-1")

        apply_event(self.db, "refund.processed", {"id": 1001, "transaction_reference": "ref-1"}, now=NOW)

        row = self.rows(id=sub.id)[0]
        self.assertEqual(row.status, "refunded")
        self.assertEqual(row.refunded_at, NOW)

    def test_nested_transaction_reference(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, transaction_reference="ref-1")
        apply_event(self.db, "refund.processed", {"id": 1001, "transaction": {"reference": "ref-1"}}, now=NOW)
        self.assertEqual(self.rows(id=sub.id)[0].status, "refunded")

    def test_already_cancelled_row_is_left_alone(self):
        sub = add_subscription(self.db, USER.profile_id, self.monthly, transaction_reference="ref-1", status="cancelled")
        apply_event(self.db, "refund.processed", {"id": 1001, "transaction_reference": "ref-1"}, now=NOW)
        self.assertEqual(self.rows(id=sub.id)[0].status, "cancelled")


if __name__ == "__main__":
    unittest.main()
