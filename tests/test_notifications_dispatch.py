from __future__ import annotations

import os
import unittest
import uuid
from unittest.mock import Mock, patch

from sameday import create_app
from sameday.extensions import db
from sameday.integrations.messaging.base import international_number
from sameday.integrations.messaging.mock_provider import MockMessagingProvider
from sameday.integrations.messaging.termii_provider import TermiiMessagingProvider
from sameday.jobs.notification_dispatcher import dispatch_queued_notifications
from sameday.models import JobRun, Notification, User
from sameday.services import notification_service
from sameday.utils.transactions import unit_of_work


class NotificationDispatchTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev = {k: os.getenv(k) for k in ("SQLALCHEMY_DATABASE_URI", "DATABASE_URL", "MESSAGING_PROVIDER", "NOTIFICATION_MAX_ATTEMPTS")}
        db_uri = "sqlite:///:memory:"
        os.environ["SQLALCHEMY_DATABASE_URI"] = db_uri
        os.environ["DATABASE_URL"] = db_uri
        os.environ["NOTIFICATION_MAX_ATTEMPTS"] = "2"
        os.environ.pop("MESSAGING_PROVIDER", None)
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        for key, value in cls._prev.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def setUp(self):
        with self.app.app_context():
            Notification.query.delete()
            db.session.commit()

    def _queue_sms(self, message: str) -> int:
        user = User(name="Sms User", email=f"sms-{uuid.uuid4().hex[:10]}@sameday.test", phone="08034445555")
        user.set_password("Passw0rd!")
        db.session.add(user)
        db.session.flush()
        row = Notification(user_id=int(user.id), event_type="payment_refunded", channel="sms", message=message, to_address=user.phone, status="queued")
        db.session.add(row)
        db.session.commit()
        return int(row.id)

    def test_mock_provider_sends_and_retries(self):
        with self.app.app_context():
            ok_id = self._queue_sms("Your payment has been refunded.")
            flaky_id = self._queue_sms("[fail] provider outage")
            provider = MockMessagingProvider()

            first = dispatch_queued_notifications(provider=provider)
            self.assertEqual((first["processed"], first["sent"], first["retried"], first["failed"]), (2, 1, 1, 0))
            self.assertEqual(provider.outbox[0]["to"], "08034445555")
            sent = db.session.get(Notification, ok_id)
            self.assertEqual((sent.status, sent.provider, sent.attempts), ("sent", "mock", 1))
            self.assertEqual(sent.provider_ref, f"mock-notif-{ok_id}")
            flaky = db.session.get(Notification, flaky_id)
            self.assertEqual((flaky.status, flaky.attempts), ("queued", 1))
            self.assertTrue(flaky.last_error.startswith("PROVIDER_DOWN"))

            second = dispatch_queued_notifications(provider=provider)
            self.assertEqual((second["processed"], second["failed"]), (1, 1))
            self.assertEqual(db.session.get(Notification, flaky_id).status, "failed")
            self.assertEqual(dispatch_queued_notifications(provider=provider)["processed"], 0)

    def test_disabled_messaging_skips(self):
        with self.app.app_context():
            self._queue_sms("hello")
            result = dispatch_queued_notifications()
            self.assertEqual(result, {"ok": True, "skipped": True, "reason": "messaging_disabled", "processed": 0})
            self.assertEqual(Notification.query.filter_by(status="queued").count(), 1)
            self.assertTrue(JobRun.query.filter_by(job_name="notification_dispatcher").count() >= 1)

    def test_provider_selected_from_environment(self):
        with self.app.app_context():
            self._queue_sms("hello")
            os.environ["MESSAGING_PROVIDER"] = "mock"
            try:
                result = dispatch_queued_notifications()
            finally:
                os.environ.pop("MESSAGING_PROVIDER", None)
            self.assertEqual((result["provider"], result["sent"]), ("mock", 1))

    def test_termii_without_credentials_is_reported(self):
        with self.app.app_context():
            self._queue_sms("hello")
            env = {"MESSAGING_PROVIDER": "termii", "TERMII_API_KEY": "", "TERMII_SENDER_ID": ""}
            with patch.dict(os.environ, env, clear=False):
                result = dispatch_queued_notifications()
            self.assertEqual((result["ok"], result["reason"]), (False, "messaging_misconfigured"))
            self.assertEqual(result["detail"], "missing TERMII_API_KEY, TERMII_SENDER_ID")
            self.assertEqual(Notification.query.filter_by(status="queued").count(), 1)

    def test_termii_sends_international_numbers(self):
        reply = Mock(status_code=200, content=b"{}")
        reply.json.return_value = {"message_id": "tm-991"}
        provider = TermiiMessagingProvider(api_key="key", sender_id="SameDay")
        with patch("sameday.integrations.messaging.termii_provider.requests.post", return_value=reply) as post:
            res = provider.send_sms(to="0803 444 5555", message="Your order is on its way", reference="notif-7")
        self.assertTrue(res.ok)
        self.assertEqual(res.provider_ref, "tm-991")
        self.assertEqual(post.call_args.kwargs["json"]["to"], "2348034445555")
        self.assertEqual(international_number("+234 803 444 5555"), "2348034445555")

    def test_termii_rejection_is_not_retried(self):
        reply = Mock(status_code=401, content=b"{}")
        reply.json.return_value = {"message": "Invalid api key"}
        provider = TermiiMessagingProvider(api_key="bad", sender_id="SameDay")
        with patch("sameday.integrations.messaging.termii_provider.requests.post", return_value=reply):
            res = provider.send_sms(to="08034445555", message="hi")
        self.assertFalse(res.retryable)
        self.assertEqual(res.failure_text(), "AUTH_FAILED:Invalid api key")

    def test_notify_waits_for_commit(self):
        with self.app.app_context():
            with self.assertRaises(RuntimeError):
                with unit_of_work():
                    notification_service.notify("low_stock_alert", {"seller_id": 1, "product_name": "Salt"})
                    raise RuntimeError("abort")
            self.assertEqual(Notification.query.count(), 0)
            notification_service.notify("not_a_real_event", {"order_id": 1})
            self.assertEqual(Notification.query.count(), 0)


if __name__ == "__main__":
    unittest.main()
