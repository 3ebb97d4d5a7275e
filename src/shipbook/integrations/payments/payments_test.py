#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Tests for the payment gateways."""

import asyncio
import base64
import json
import time
import urllib.parse

from absl.testing import absltest
import httpx
from shipbook import testing
from shipbook.config import Settings
from shipbook.enums import WebhookEventType
from shipbook.exceptions import ProviderBadResponseError
from shipbook.exceptions import ProviderNotConfiguredError
from shipbook.exceptions import ValidationError
from shipbook.integrations.payments.fallback import FallbackPaymentGateway
from shipbook.integrations.payments.mock import MockPaymentGateway
from shipbook.integrations.payments.moyasar import MoyasarGateway
from shipbook.integrations.payments.registry import build_payment_gateway
from shipbook.integrations.payments.stripe_gateway import StripeGateway
from shipbook.integrations.signing import hmac_sha256_hex
from shipbook.services.integration_logger import IntegrationLogger


class MoyasarGatewayTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.requests = []

  def _gateway(self, handler, **kwargs) -> MoyasarGateway:
    def record(request: httpx.Request) -> httpx.Response:
      self.requests.append(request)
      return handler(request)

    return MoyasarGateway(
        "sk_test_123",
        IntegrationLogger(),
        transport=httpx.MockTransport(record),
        sleep=testing.no_sleep,
        **kwargs,
    )

  def test_create_payment(self) -> None:
    gateway = self._gateway(
        lambda request: httpx.Response(
            201,
            json={
                "id": "pay_1",
                "status": "initiated",
                "source": {"transaction_url": "https://pay.example/3ds"},
            },
        )
    )
    result = asyncio.run(
        gateway.create_payment(
            3359,
            "SAR",
            "Shipment EZH1",
            "https://ship.example/payments/moyasar/callback",
            {"shipment_id": "shp_1"},
        )
    )
    self.assertEqual(result.payment_id, "pay_1")
    self.assertEqual(result.transaction_url, "https://pay.example/3ds")

    request = self.requests[0]
    expected_auth = base64.b64encode(b"sk_test_123:").decode("ascii")
    self.assertEqual(request.headers["Authorization"], f"Basic {expected_auth}")
    body = json.loads(request.content)
    self.assertEqual(body["amount"], 3359)
    self.assertEqual(body["metadata"], {"shipment_id": "shp_1"})
    self.assertEqual(body["source"], {"type": "creditcard", "3ds": True})

  def test_verify_unknown_payment(self) -> None:
    gateway = self._gateway(lambda request: httpx.Response(404))
    self.assertEqual(asyncio.run(gateway.verify_payment("pay_x")), "unknown")

  def test_verify_paid_payment(self) -> None:
    gateway = self._gateway(
        lambda request: httpx.Response(
            200,
            json={"id": "pay_1", "status": "paid", "amount": 3359},
        )
    )
    self.assertEqual(asyncio.run(gateway.verify_payment("pay_1")), "paid")

  def test_malformed_payment_is_a_bad_response(self) -> None:
    gateway = self._gateway(
        lambda request: httpx.Response(200, json={"status": "paid"})
    )
    with self.assertRaises(ProviderBadResponseError) as cm:
      asyncio.run(gateway.verify_payment("pay_1"))
    self.assertEqual(cm.exception.code, "PROVIDER_BAD_RESPONSE")
    self.assertEqual(cm.exception.service, "moyasar")

    gateway = self._gateway(lambda request: httpx.Response(201, text="ok"))
    with self.assertRaises(ProviderBadResponseError):
      asyncio.run(gateway.create_payment(100, "SAR", "t", "cb", {}))

  def test_refund_rejected(self) -> None:
    gateway = self._gateway(lambda request: httpx.Response(400))
    self.assertFalse(asyncio.run(gateway.refund_payment("pay_1")))

  def test_webhook_signature(self) -> None:
    gateway = self._gateway(None, webhook_secret="whsec")
    body = b'{"id": "evt_1", "data": {"id": "pay_1", "status": "paid"}}'
    signature = hmac_sha256_hex("whsec", body)
    self.assertTrue(gateway.validate_webhook_signature(body, signature))
    self.assertTrue(
        gateway.validate_webhook_signature(body, signature.upper())
    )
    self.assertFalse(gateway.validate_webhook_signature(body + b" ", signature))
    self.assertFalse(gateway.validate_webhook_signature(body, None))
    self.assertFalse(gateway.validate_webhook_signature(body, "not-hex"))

  def test_parse_webhook(self) -> None:
    gateway = self._gateway(None)
    parsed = gateway.parse_webhook({
        "id": "evt_1",
        "type": "payment_paid",
        "data": {
            "id": "pay_1",
            "status": "paid",
            "metadata": {"shipment_id": "shp_1"},
        },
    })
    self.assertEqual(parsed.delivery_id, "evt_1")
    self.assertEqual(parsed.event_type, WebhookEventType.PAYMENT_SUCCEEDED)
    self.assertEqual(parsed.payment_id, "pay_1")
    self.assertEqual(parsed.shipment_id, "shp_1")


class StripeGatewayTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.requests = []
    self.now = int(time.time())

  def _gateway(self, handler=None, **kwargs) -> StripeGateway:
    def record(request: httpx.Request) -> httpx.Response:
      self.requests.append(request)
      return handler(request)

    return StripeGateway(
        "sk_test_stripe",
        IntegrationLogger(),
        transport=httpx.MockTransport(record),
        sleep=testing.no_sleep,
        **kwargs,
    )

  def _header(self, body: bytes, timestamp: int, secret: str = "whsec") -> str:
    signed = f"{timestamp}.".encode("utf-8") + body
    return f"t={timestamp},v1={hmac_sha256_hex(secret, signed)}"

  def test_create_payment_intent(self) -> None:
    gateway = self._gateway(
        lambda request: httpx.Response(
            200, json={"id": "pi_1", "status": "requires_payment_method"}
        )
    )
    result = asyncio.run(
        gateway.create_payment(
            3359, "SAR", "Shipment EZH1", "unused", {"shipment_id": "shp_1"}
        )
    )
    self.assertEqual(result.payment_id, "pi_1")
    request = self.requests[0]
    self.assertEqual(request.url.path, "/v1/payment_intents")
    self.assertEqual(request.headers["Authorization"], "Bearer sk_test_stripe")
    form = urllib.parse.parse_qs(request.content.decode("ascii"))
    self.assertEqual(form["amount"], ["3359"])
    self.assertEqual(form["currency"], ["sar"])
    self.assertEqual(form["metadata[shipment_id]"], ["shp_1"])

  def test_malformed_intent_is_a_bad_response(self) -> None:
    for body in ({"status": "succeeded"}, {"id": "pi_1"}, ["pi_1"]):
      gateway = self._gateway(
          lambda request, b=body: httpx.Response(200, json=b)
      )
      with self.assertRaises(ProviderBadResponseError) as cm:
        asyncio.run(gateway.create_payment(100, "SAR", "t", "unused", {}))
      self.assertEqual(cm.exception.code, "PROVIDER_BAD_RESPONSE")
    gateway = self._gateway(lambda request: httpx.Response(200, json=[]))
    with self.assertRaises(ProviderBadResponseError):
      asyncio.run(gateway.get_payment("pi_1"))

  def test_signature_scheme(self) -> None:
    gateway = self._gateway(webhook_secret="whsec")
    body = b'{"id": "evt_1"}'
    self.assertTrue(
        gateway.validate_webhook_signature(body, self._header(body, self.now))
    )
    self.assertTrue(
        gateway.validate_webhook_signature(
            body, self._header(body, self.now - 290)
        )
    )

  def test_signature_rejections(self) -> None:
    gateway = self._gateway(webhook_secret="whsec")
    body = b'{"id": "evt_1"}'
    stale = self._header(body, self.now - 301)
    wrong_secret = self._header(body, self.now, secret="other")
    for header in (
        stale,
        wrong_secret,
        "v1=abc",
        f"t={self.now}",
        "t=x,v1=y",
        None,
    ):
      self.assertFalse(gateway.validate_webhook_signature(body, header), header)
    self.assertFalse(
        gateway.validate_webhook_signature(b"{}", self._header(body, self.now))
    )
    self.assertFalse(
        gateway.validate_webhook_signature(
            b"\xff", self._header(b"\xff", self.now)
        )
    )

  def test_any_v1_signature_may_match(self) -> None:
    gateway = self._gateway(webhook_secret="whsec")
    body = b'{"id": "evt_1"}'
    valid = self._header(body, self.now)
    rolled = f"t={self.now},v1=deadbeef," + valid.split(",", 1)[1]
    self.assertTrue(gateway.validate_webhook_signature(body, rolled))

  def test_parse_webhook(self) -> None:
    gateway = self._gateway()
    parsed = gateway.parse_webhook({
        "id": "evt_9",
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "id": "pi_1",
                "status": "requires_payment_method",
                "metadata": {"shipment_id": "shp_1"},
            }
        },
    })
    self.assertEqual(parsed.delivery_id, "evt_9")
    self.assertEqual(parsed.event_type, WebhookEventType.PAYMENT_FAILED)
    self.assertEqual(parsed.payment_id, "pi_1")
    self.assertEqual(parsed.shipment_id, "shp_1")


class MockAndFallbackTest(absltest.TestCase):

  def test_mock_payment_lifecycle(self) -> None:
    gateway = MockPaymentGateway()

    async def scenario():
      result = await gateway.create_payment(
          100, "SAR", "test", "https://ship.example/cb", {}
      )
      before = await gateway.verify_payment(result.payment_id)
      gateway.set_status(result.payment_id, "failed")
      after = await gateway.verify_payment(result.payment_id)
      unknown = await gateway.verify_payment("mpy_mock_restart")
      foreign = await gateway.verify_payment("pay_live")
      return result, before, after, unknown, foreign

    result, before, after, unknown, foreign = asyncio.run(scenario())
    self.assertTrue(result.payment_id.startswith("mpy_mock_"))
    self.assertIn(f"id={result.payment_id}", result.transaction_url)
    self.assertEqual(before, "paid")
    self.assertEqual(after, "failed")
    self.assertEqual(unknown, "paid")
    self.assertEqual(foreign, "unknown")

  def test_fallback_requires_permission(self) -> None:
    live = MoyasarGateway(None, IntegrationLogger(), webhook_secret="whsec")
    strict = FallbackPaymentGateway(live)
    with self.assertRaises(ProviderNotConfiguredError):
      asyncio.run(strict.create_payment(100, "SAR", "t", "cb", {}))

    mock = MockPaymentGateway()
    lenient = FallbackPaymentGateway(live, mock, allow_mock_fallback=True)
    result = asyncio.run(lenient.create_payment(100, "SAR", "t", "cb", {}))
    self.assertIn(result.payment_id, mock.payments)
    self.assertEqual(lenient.webhook_secret, "whsec")
    self.assertEqual(lenient.name, "moyasar")

  def test_registry(self) -> None:
    logger = IntegrationLogger()
    stripe = build_payment_gateway(
        Settings(payment_provider="stripe", stripe_secret_key="sk"), logger
    )
    self.assertEqual(stripe.name, "stripe")
    self.assertTrue(stripe.is_configured())
    self.assertEqual(stripe.signature_header, "stripe-signature")

    moyasar = build_payment_gateway(Settings(), logger)
    self.assertEqual(moyasar.name, "moyasar")
    self.assertFalse(moyasar.is_configured())

    with self.assertRaises(ValidationError):
      build_payment_gateway(Settings(payment_provider="paypal"), logger)


if __name__ == "__main__":
  absltest.main()
