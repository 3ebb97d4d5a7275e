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

"""Tests for the checkout state machine and carrier confirmation."""

import asyncio
from decimal import Decimal
import os
import shutil
import tempfile
from typing import Any, Dict, List

from absl.testing import absltest
from shipbook import db
from shipbook import testing
from shipbook.config import Settings
from shipbook.exceptions import AlreadyConsumedError
from shipbook.exceptions import BookingFailedError
from shipbook.exceptions import CheckoutNotModifiableError
from shipbook.exceptions import ConfirmationInProgressError
from shipbook.exceptions import ExpiredReservationError
from shipbook.exceptions import IdempotencyConflictError
from shipbook.exceptions import PaymentFailedError
from shipbook.exceptions import ResourceNotFoundError
from shipbook.exceptions import ValidationError
from shipbook.integrations.accounting import AccountingSync
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.integrations.payments.fallback import FallbackPaymentGateway
from shipbook.integrations.payments.mock import MockPaymentGateway
from shipbook.integrations.payments.moyasar import MoyasarGateway
from shipbook.money import to_iso
from shipbook.services import checkout_service
from shipbook.services import maintenance
from shipbook.services.accounting_outbox import AccountingOutbox
from shipbook.services.checkout_service import CheckoutService
from shipbook.services.integration_logger import IntegrationLogger
from shipbook.services.pricing_service import PricingService
from shipbook.services.webhook_service import build_webhook_sources
from sqlalchemy import select

CLIENT = testing.CLIENT_ID


class RecordingSync(AccountingSync):
  name = "recording"

  def __init__(self):
    self.invoices: List[Dict[str, Any]] = []

  async def sync_invoice(self, invoice: Dict[str, Any]) -> None:
    self.invoices.append(invoice)


class BrokenSync(AccountingSync):
  name = "broken"

  async def sync_invoice(self, invoice: Dict[str, Any]) -> None:
    raise ConnectionError("books system offline")


class CheckoutServiceTest(absltest.TestCase):
  """Drives shipments from rate shopping to booking."""

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.db_path = os.path.join(self.test_dir, "checkout.db")
    self.clock = testing.FakeClock()
    self.carrier = testing.RecordingCarrier(clock=self.clock)
    self.carriers = CarrierRegistry([self.carrier], default_code="FEDEX")
    self.gateway = MockPaymentGateway()

  def tearDown(self) -> None:
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _run(self, scenario) -> None:
    async def run() -> None:
      async with testing.temp_database(self.db_path) as manager:
        self.factory = manager.session_factory
        async with self.factory() as session:
          await testing.add_client(session)
        await scenario()

    asyncio.run(run())

  def _service(self, session, **kwargs) -> CheckoutService:
    kwargs.setdefault("payment_gateway", self.gateway)
    kwargs.setdefault("sleep", testing.no_sleep)
    return CheckoutService(
        session,
        self.carriers,
        public_base_url="https://ship.example/",
        clock=self.clock,
        **kwargs,
    )

  async def _quote_id(self, service_type: str = "FEDEX_GROUND") -> str:
    async with self.factory() as session:
      rates = await self._service(session).request_rates(
          CLIENT, testing.shipment_request()
      )
    return next(
        q.quote_id for q in rates.quotes if q.service_type == service_type
    )

  async def _awaiting_payment(self):
    quote_id = await self._quote_id()
    async with self.factory() as session:
      return await self._service(session).checkout(quote_id, CLIENT)

  async def _confirm(self, shipment_id: str, **kwargs):
    async with self.factory() as session:
      return await self._service(session, **kwargs).confirm(shipment_id)

  async def _load(self, shipment_id: str):
    async with self.factory() as session:
      return (
          await db.get_shipment(session, shipment_id),
          await db.get_checkout_session(session, shipment_id),
          await db.get_invoice_for_shipment(session, shipment_id),
      )

  def test_rates_are_priced_and_reserved(self) -> None:
    async def scenario() -> None:
      async with self.factory() as session:
        rates = await self._service(session).request_rates(
            CLIENT, testing.shipment_request()
        )
      self.assertLen(rates.quotes, 4)
      ground = next(
          q for q in rates.quotes if q.service_type == "FEDEX_GROUND"
      )
      # 27.99 base plus the default 20% margin.
      self.assertEqual(ground.price, Decimal("33.59"))
      self.assertEqual(ground.expires_at, rates.expires_at)
      self.assertEqual(ground.expires_at, "2026-03-01T12:15:00.000000+00:00")
      self.assertNotIn("baseRate", rates.model_dump(by_alias=True)["quotes"][0])

    self._run(scenario)

  def test_rates_use_client_profile(self) -> None:
    async def scenario() -> None:
      async with self.factory() as session:
        await testing.add_client(session, "client-vip", profile="vip")
        await PricingService(session).upsert_rule(
            "vip", "VIP", Decimal("10")
        )
        rates = await self._service(session).request_rates(
            "client-vip", testing.shipment_request()
        )
      ground = next(
          q for q in rates.quotes if q.service_type == "FEDEX_GROUND"
      )
      # 27.99 + 2.799 rounded half-up.
      self.assertEqual(ground.price, Decimal("30.79"))

    self._run(scenario)

  def test_rates_for_unknown_client(self) -> None:
    async def scenario() -> None:
      async with self.factory() as session:
        with self.assertRaises(ResourceNotFoundError):
          await self._service(session).request_rates(
              "nobody", testing.shipment_request()
          )

    self._run(scenario)

  def test_checkout_awaits_payment(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      self.assertEqual(response.status, "awaiting_payment")
      self.assertEqual(response.amount, Decimal("33.59"))
      self.assertEqual(response.currency, "SAR")
      self.assertRegex(response.tracking_number, r"^EZH[0-9A-F]{12}$")
      self.assertTrue(response.payment_id.startswith("mpy_mock_"))
      self.assertTrue(
          response.transaction_url.startswith(
              "https://ship.example/payments/moyasar/callback?"
          )
      )
      payment = self.gateway.payments[response.payment_id]
      self.assertEqual(payment.amount, 3359)
      self.assertEqual(payment.metadata["shipment_id"], response.shipment_id)

      shipment, checkout, invoice = await self._load(response.shipment_id)
      self.assertEqual(shipment.status, "payment_pending")
      self.assertEqual(shipment.payment_id, response.payment_id)
      self.assertEqual(shipment.final_price, 3359)
      self.assertEqual(checkout.status, "awaiting_payment")
      self.assertEqual(invoice.status, "pending")
      self.assertRegex(invoice.invoice_number, r"^INV-2026-[0-9A-F]{6}$")
      self.assertEqual(invoice.due_date, "2026-03-31T12:00:00.000000+00:00")

    self._run(scenario)

  def test_quote_is_single_use(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      async with self.factory() as session:
        await self._service(session).checkout(quote_id, CLIENT)
      async with self.factory() as session:
        with self.assertRaises(AlreadyConsumedError):
          await self._service(session).checkout(quote_id, CLIENT)
        with self.assertRaises(ResourceNotFoundError):
          await self._service(session).checkout(quote_id, "someone-else")

    self._run(scenario)

  def test_expired_quote_is_rejected(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      self.clock.advance(900)
      async with self.factory() as session:
        with self.assertRaises(ExpiredReservationError):
          await self._service(session).checkout(quote_id, CLIENT)

    self._run(scenario)

  def test_idempotent_checkout_replays(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      other_quote_id = await self._quote_id("FEDEX_2_DAY")
      async with self.factory() as session:
        first = await self._service(session).checkout(
            quote_id, CLIENT, idempotency_key="key-1"
        )
      async with self.factory() as session:
        again = await self._service(session).checkout(
            quote_id, CLIENT, idempotency_key="key-1"
        )
        self.assertEqual(first, again)
        with self.assertRaises(IdempotencyConflictError):
          await self._service(session).checkout(
              other_quote_id, CLIENT, idempotency_key="key-1"
          )
      self.assertLen(self.gateway.payments, 1)

    self._run(scenario)

  def test_payment_creation_failure_fails_checkout(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      unconfigured = FallbackPaymentGateway(
          MoyasarGateway(None, IntegrationLogger())
      )
      async with self.factory() as session:
        service = self._service(session, payment_gateway=unconfigured)
        with self.assertRaises(PaymentFailedError) as cm:
          await service.checkout(quote_id, CLIENT)
      self.assertEqual(cm.exception.code, "PAYMENT_INIT_FAILED")
      self.assertEqual(cm.exception.status_code, 503)

      async with self.factory() as session:
        shipment = (
            await session.execute(
                select(db.Shipment).where(db.Shipment.quote_id == quote_id)
            )
        ).scalar_one()
      _, checkout, _ = await self._load(shipment.id)
      self.assertEqual(checkout.status, "failed")
      self.assertEqual(checkout.failure_code, "PAYMENT_INIT_FAILED")
      self.assertEqual(shipment.status, "payment_failed")

    self._run(scenario)

  def test_confirm_books_once(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      first = await self._confirm(response.shipment_id)
      second = await self._confirm(response.shipment_id)
      self.assertEqual(first, second)
      self.assertEqual(self.carrier.bookings, [response.tracking_number])
      self.assertTrue(first.carrier_tracking_number.startswith("7489"))

      shipment, checkout, invoice = await self._load(response.shipment_id)
      self.assertEqual(shipment.status, "created")
      self.assertEqual(shipment.payment_status, "paid")
      self.assertEqual(
          shipment.carrier_tracking_number, first.carrier_tracking_number
      )
      self.assertEqual(
          [h["status"] for h in shipment.status_history],
          ["payment_pending", "created"],
      )
      self.assertEqual(checkout.status, "confirmed")
      self.assertIsNone(checkout.confirmation_token)
      self.assertEqual(invoice.status, "paid")

    self._run(scenario)

  def test_concurrent_confirms_book_once(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      results = await asyncio.gather(
          self._confirm(response.shipment_id, sleep=asyncio.sleep),
          self._confirm(response.shipment_id, sleep=asyncio.sleep),
      )
      self.assertEqual(results[0], results[1])
      self.assertLen(self.carrier.bookings, 1)

    self._run(scenario)

  def test_confirm_checks_payment_and_owner(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      async with self.factory() as session:
        service = self._service(session)
        with self.assertRaises(ValidationError):
          await service.confirm(response.shipment_id, "mpy_mock_other")
        with self.assertRaises(ResourceNotFoundError):
          await service.confirm(response.shipment_id, None, "someone-else")
      self.assertEmpty(self.carrier.bookings)

    self._run(scenario)

  def test_unpaid_payment_fails_without_booking(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      self.gateway.set_status(response.payment_id, "failed")
      with self.assertRaises(PaymentFailedError) as cm:
        await self._confirm(response.shipment_id)
      self.assertEqual(cm.exception.code, "PAYMENT_NOT_CONFIRMED")
      with self.assertRaises(PaymentFailedError):
        await self._confirm(response.shipment_id)
      self.assertEmpty(self.carrier.bookings)

      shipment, checkout, invoice = await self._load(response.shipment_id)
      self.assertEqual(checkout.status, "failed")
      self.assertEqual(shipment.status, "payment_failed")
      self.assertEqual(shipment.payment_status, "failed")
      self.assertEqual(invoice.status, "pending")

    self._run(scenario)

  def test_booking_failure_keeps_payment(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      self.carrier.fail_bookings = True
      with self.assertRaises(BookingFailedError):
        await self._confirm(response.shipment_id)
      self.carrier.fail_bookings = False
      with self.assertRaises(BookingFailedError):
        await self._confirm(response.shipment_id)

      shipment, checkout, _ = await self._load(response.shipment_id)
      self.assertEqual(checkout.status, "failed")
      self.assertEqual(checkout.failure_code, "BOOKING_FAILED")
      self.assertEqual(shipment.status, "booking_failed")
      self.assertEqual(shipment.payment_status, "paid")
      self.assertEqual(shipment.payment_id, response.payment_id)
      self.assertEmpty(self.gateway.refunds)
      self.assertEmpty(self.carrier.bookings)

    self._run(scenario)

  def test_unexpected_booking_error_fails_confirmation(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      self.carrier.booking_error = RuntimeError("label renderer crashed")
      with self.assertLogs(checkout_service.logger, "ERROR"):
        with self.assertRaises(BookingFailedError):
          await self._confirm(response.shipment_id)
      self.carrier.booking_error = None
      with self.assertRaises(BookingFailedError):
        await self._confirm(response.shipment_id)
      self.assertEmpty(self.carrier.bookings)

      shipment, checkout, _ = await self._load(response.shipment_id)
      self.assertEqual(checkout.status, "failed")
      self.assertEqual(checkout.failure_code, "BOOKING_FAILED")
      self.assertIsNone(checkout.confirmation_token)
      self.assertIsNone(checkout.claimed_at)
      self.assertEqual(shipment.status, "booking_failed")
      self.assertEqual(shipment.payment_status, "paid")

    self._run(scenario)

  def test_abandoned_claim_is_failed_for_reconciliation(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      # A confirmation that claimed the session and never came back.
      async with self.factory() as session:
        self.assertTrue(
            await db.claim_confirmation(
                session, response.shipment_id, "lost", to_iso(self.clock())
            )
        )
        await session.commit()
      with self.assertRaises(ConfirmationInProgressError):
        await self._confirm(response.shipment_id)

      timeout = checkout_service.CONFIRM_CLAIM_TIMEOUT_SECONDS
      self.clock.advance(timeout - 1)
      async with self.factory() as session:
        self.assertEqual(
            await self._service(session).fail_stale_confirmations(), 0
        )
      self.clock.advance(1)
      async with self.factory() as session:
        with self.assertLogs(checkout_service.logger, "ERROR"):
          self.assertEqual(
              await self._service(session).fail_stale_confirmations(), 1
          )

      with self.assertRaises(BookingFailedError):
        await self._confirm(response.shipment_id)
      self.assertEmpty(self.carrier.bookings)
      shipment, checkout, _ = await self._load(response.shipment_id)
      self.assertEqual(checkout.status, "failed")
      self.assertEqual(checkout.failure_code, "BOOKING_UNKNOWN")
      self.assertIsNone(checkout.confirmation_token)
      self.assertEqual(shipment.status, "booking_failed")

    self._run(scenario)

  def test_expired_idempotency_key_starts_new_checkout(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      async with self.factory() as session:
        first = await self._service(session).checkout(
            quote_id, CLIENT, idempotency_key="key-1"
        )
      self.clock.advance(checkout_service.IDEMPOTENCY_TTL_SECONDS)
      fresh_quote_id = await self._quote_id()
      async with self.factory() as session:
        second = await self._service(session).checkout(
            fresh_quote_id, CLIENT, idempotency_key="key-1"
        )
      self.assertNotEqual(first.shipment_id, second.shipment_id)
      self.assertLen(self.gateway.payments, 2)
      async with self.factory() as session:
        record = await session.get(db.IdempotencyRecord, "key-1")
        self.assertEqual(
            record.response_body["shipment_id"], second.shipment_id
        )

    self._run(scenario)

  def test_sweep_purges_keys_and_fails_abandoned_claims(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      async with self.factory() as session:
        kept = await self._service(session).checkout(
            quote_id, CLIENT, idempotency_key="key-old"
        )
        self.assertTrue(
            await db.claim_confirmation(
                session, kept.shipment_id, "lost", to_iso(self.clock())
            )
        )
        await session.commit()
      self.clock.advance(checkout_service.IDEMPOTENCY_TTL_SECONDS)

      async with self.factory() as session:
        with self.assertLogs(checkout_service.logger, "ERROR"):
          result = await maintenance.sweep(
              session,
              Settings(),
              self.carriers,
              self.gateway,
              build_webhook_sources(self.carriers, self.gateway),
              clock=self.clock,
          )
      self.assertEqual(result.stale_confirmations, 1)
      self.assertEqual(result.purged_idempotency_records, 1)
      self.assertEqual(result.expired_quotes, 3)
      async with self.factory() as session:
        self.assertIsNone(await session.get(db.IdempotencyRecord, "key-old"))

    self._run(scenario)

  def test_issued_price_survives_rule_edits(self) -> None:
    async def scenario() -> None:
      async with self.factory() as session:
        await testing.add_client(session, "client-vip", profile="vip")
        # The 27.99 ground rate sits exactly on the tier minimum.
        await PricingService(session).upsert_rule(
            "vip", "VIP", Decimal("10"), [(Decimal("27.99"), Decimal("5"))]
        )
        rates = await self._service(session).request_rates(
            "client-vip", testing.shipment_request()
        )
      issued = next(
          q for q in rates.quotes if q.service_type == "FEDEX_GROUND"
      )
      self.assertEqual(issued.price, Decimal("29.39"))

      async with self.factory() as session:
        await PricingService(session).upsert_rule(
            "vip", "VIP", Decimal("10"), [(Decimal("27.99"), Decimal("50"))]
        )
        response = await self._service(session).checkout(
            issued.quote_id, "client-vip"
        )
      self.assertEqual(response.amount, issued.price)
      self.assertEqual(self.gateway.payments[response.payment_id].amount, 2939)

      confirmed = await self._confirm(response.shipment_id)
      self.assertEqual(confirmed.shipment.amount, issued.price)
      shipment, _, invoice = await self._load(response.shipment_id)
      self.assertEqual(shipment.final_price, 2939)
      self.assertEqual(invoice.amount, 2939)

      async with self.factory() as session:
        repriced = await self._service(session).request_rates(
            "client-vip", testing.shipment_request()
        )
      ground = next(
          q for q in repriced.quotes if q.service_type == "FEDEX_GROUND"
      )
      self.assertEqual(ground.price, Decimal("41.99"))

    self._run(scenario)

  def test_confirm_before_payment_started(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      async with self.factory() as session:
        checkout = await self._service(session).select_quote(quote_id, CLIENT)
        self.assertEqual(checkout.status, "checkout_initiated")
        with self.assertRaises(CheckoutNotModifiableError):
          await self._service(session).confirm(checkout.shipment_id)

    self._run(scenario)

  def test_initiate_payment_is_idempotent(self) -> None:
    async def scenario() -> None:
      quote_id = await self._quote_id()
      async with self.factory() as session:
        service = self._service(session)
        checkout = await service.select_quote(quote_id, CLIENT)
        first = await service.initiate_payment(checkout.shipment_id)
        payment_id = first.payment_id
        again = await service.initiate_payment(checkout.shipment_id)
      self.assertEqual(again.payment_id, payment_id)
      self.assertLen(self.gateway.payments, 1)

    self._run(scenario)

  def test_paid_invoice_reaches_accounting(self) -> None:
    async def scenario() -> None:
      sync = RecordingSync()
      outbox = AccountingOutbox(sync)
      response = await self._awaiting_payment()
      await self._confirm(response.shipment_id, outbox=outbox)
      await outbox.drain()
      self.assertLen(sync.invoices, 1)
      invoice = sync.invoices[0]
      self.assertEqual(invoice["shipment_id"], response.shipment_id)
      self.assertEqual(invoice["amount"], "33.59")
      self.assertEqual(invoice["status"], "paid")
      self.assertEqual(invoice["customer"]["email"], "ops@acme.example")

    self._run(scenario)

  def test_accounting_failure_does_not_affect_shipment(self) -> None:
    async def scenario() -> None:
      outbox = AccountingOutbox(BrokenSync())
      response = await self._awaiting_payment()
      with self.assertLogs("shipbook.services.accounting_outbox", "ERROR"):
        await self._confirm(response.shipment_id, outbox=outbox)
        await outbox.drain()
      shipment, _, _ = await self._load(response.shipment_id)
      self.assertEqual(shipment.status, "created")

    self._run(scenario)

  def test_payment_callback_verifies_with_provider(self) -> None:
    async def scenario() -> None:
      paid = await self._awaiting_payment()
      declined = await self._awaiting_payment()
      self.gateway.set_status(declined.payment_id, "failed")

      async with self.factory() as session:
        service = self._service(session)
        ok = await service.handle_payment_callback(paid.payment_id)
        bad = await service.handle_payment_callback(declined.payment_id)
        with self.assertRaises(ResourceNotFoundError):
          await service.handle_payment_callback("mpy_mock_unknown")
      self.assertEqual(ok.status, "created")
      self.assertEqual(ok.payment_status, "paid")
      self.assertIsNotNone(ok.carrier_tracking_number)
      self.assertEqual(bad.status, "payment_failed")
      self.assertLen(self.carrier.bookings, 1)

    self._run(scenario)

  def test_mark_payment_failed(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      async with self.factory() as session:
        service = self._service(session)
        self.assertTrue(
            await service.mark_payment_failed(response.shipment_id, "declined")
        )
        self.assertFalse(
            await service.mark_payment_failed(response.shipment_id, "again")
        )
      with self.assertRaises(PaymentFailedError):
        await self._confirm(response.shipment_id)
      self.assertEmpty(self.carrier.bookings)

    self._run(scenario)

  def test_track_and_cancel(self) -> None:
    async def scenario() -> None:
      response = await self._awaiting_payment()
      async with self.factory() as session:
        service = self._service(session)
        with self.assertRaises(CheckoutNotModifiableError):
          await service.track(response.shipment_id)
      confirmed = await self._confirm(response.shipment_id)

      async with self.factory() as session:
        service = self._service(session)
        tracking = await service.track(response.shipment_id, CLIENT)
        self.assertEqual(
            tracking.tracking_number, confirmed.carrier_tracking_number
        )
        cancelled = await service.cancel(response.shipment_id, CLIENT)
        self.assertTrue(cancelled.cancelled)
        self.assertEqual(cancelled.status, "cancelled")
        with self.assertRaises(CheckoutNotModifiableError):
          await service.cancel(response.shipment_id, CLIENT)
      self.assertEqual(
          self.carrier.cancellations, [confirmed.carrier_tracking_number]
      )
      self.assertEmpty(self.gateway.refunds)

    self._run(scenario)


if __name__ == "__main__":
  absltest.main()
