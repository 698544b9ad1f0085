from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask, g

from sameday.utils.observability import _before_send_scrub, init_sentry, request_entities
from sameday.utils.principal import Principal


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False):
            init_sentry(app)

    def test_auth_headers_are_scrubbed(self):
        event = {"request": {"headers": {"Authorization": "Bearer secret", "Accept": "application/json"}}}
        out = _before_send_scrub(event, None)
        self.assertEqual(out["request"]["headers"]["Authorization"], "[REDACTED]")
        self.assertEqual(out["request"]["headers"]["Accept"], "application/json")
        self.assertNotIn("tags", out)

    def test_events_are_tagged_with_order_and_caller(self):
        app = Flask(__name__)
        app.add_url_rule("/api/orders/<int:order_id>/cancel", "cancel", lambda order_id: "", methods=["POST"])
        with app.test_request_context("/api/orders/12/cancel", method="POST"):
            g.request_id = "trace-cancel-12"
            g.principal = Principal(user_id=3, roles=frozenset({"seller", "buyer"}))
            self.assertEqual(request_entities(), {"order_id": 12})
            event = {"request": {"headers": {"Idempotency-Key": "k1"}, "data": {"password": "x", "reason": "Out of stock"}}}
            out = _before_send_scrub(event, None)
        self.assertEqual(out["request"]["headers"]["Idempotency-Key"], "[REDACTED]")
        self.assertEqual(out["request"]["data"], {"password": "[REDACTED]", "reason": "Out of stock"})
        self.assertEqual(out["tags"], {"request_id": "trace-cancel-12", "order_id": "12", "roles": "buyer,seller"})


if __name__ == "__main__":
    unittest.main()
