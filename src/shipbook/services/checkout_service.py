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

"""Checkout orchestration from rate shopping to a confirmed carrier booking.

This module provides the `CheckoutService` class, which drives a shipment
through its checkout session:

  quoted -> checkout_initiated -> awaiting_payment -> confirmed

with `failed` reachable from every non-terminal state. Every persisted status
change is a conditional UPDATE against the states the transition table allows
as its source.

Key responsibilities include:
- Shopping carrier rates, pricing them per client profile and reserving them.
- Consuming a quote into a shipment, an invoice stub and a checkout session.
- Creating the payment with the quote's snapshotted price.
- Confirming a shipment exactly once: a persisted claim admits one caller,
  which verifies the payment server-side before booking with the carrier.
- Queueing paid invoices for accounting after commit.
"""

import asyncio
import datetime
import hashlib
import json
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import uuid

from pydantic import BaseModel
from shipbook import db
from shipbook.enums import CHECKOUT_TRANSITIONS
from shipbook.enums import CheckoutStatus
from shipbook.enums import InvoiceStatus
from shipbook.enums import PAYMENT_FAILURE_STATUSES
from shipbook.enums import PAYMENT_SUCCESS_STATUSES
from shipbook.enums import PaymentStatus
from shipbook.enums import ShipmentStatus
from shipbook.exceptions import BookingFailedError
from shipbook.exceptions import CheckoutNotModifiableError
from shipbook.exceptions import ConfirmationInProgressError
from shipbook.exceptions import IdempotencyConflictError
from shipbook.exceptions import PaymentFailedError
from shipbook.exceptions import ProviderError
from shipbook.exceptions import ResourceNotFoundError
from shipbook.exceptions import ShipbookError
from shipbook.exceptions import ValidationError
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.models import CancelResponse
from shipbook.models import CheckoutResponse
from shipbook.models import ConfirmResponse
from shipbook.models import PaymentCallbackResponse
from shipbook.models import QuoteView
from shipbook.models import RateQuoteOption
from shipbook.models import RatesResponse
from shipbook.models import ShipmentRequest
from shipbook.models import ShipmentView
from shipbook.models import TrackingResult
from shipbook.money import from_minor_units
from shipbook.money import to_iso
from shipbook.money import utcnow
from shipbook.services.accounting_outbox import AccountingOutbox
from shipbook.services.pricing_service import PricingService
from shipbook.services.quote_store import DEFAULT_QUOTE_TTL_SECONDS
from shipbook.services.quote_store import QuoteStore
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

CONFIRM_POLL_ATTEMPTS = 5
CONFIRM_POLL_INTERVAL = 0.5
INVOICE_DUE_DAYS = 30
IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60
CONFIRM_CLAIM_TIMEOUT_SECONDS = 10 * 60

BOOKING_FAILURE_CODES = ("BOOKING_FAILED", "BOOKING_UNKNOWN")

CANCELLABLE_STATUSES = (
    ShipmentStatus.CREATED.value,
    ShipmentStatus.PROCESSING.value,
)


def _sources(target: CheckoutStatus) -> List[str]:
  """States from which the transition table allows moving to `target`."""
  return [
      source.value
      for source, targets in CHECKOUT_TRANSITIONS.items()
      if target in targets
  ]


def new_tracking_number() -> str:
  return "EZH" + secrets.token_hex(6).upper()


def new_invoice_number(now: datetime.datetime) -> str:
  return f"INV-{now.year}-{secrets.token_hex(3).upper()}"


def _append_history(
    shipment: db.Shipment, status: str, note: str, timestamp: str
) -> None:
  # Reassigned so the JSON column is flagged as changed.
  shipment.status_history = list(shipment.status_history or []) + [
      {"status": status, "note": note, "timestamp": timestamp}
  ]


def quote_view(quote: db.QuoteReservation) -> QuoteView:
  return QuoteView(
      quote_id=quote.id,
      carrier_code=quote.carrier_code,
      carrier_name=quote.carrier_name,
      service_type=quote.service_type,
      service_name=quote.service_name,
      currency=quote.currency,
      price=from_minor_units(quote.final_price),
      transit_days=quote.transit_days,
      estimated_delivery=quote.estimated_delivery,
      expires_at=quote.expires_at,
  )


def shipment_view(shipment: db.Shipment) -> ShipmentView:
  return ShipmentView(
      id=shipment.id,
      tracking_number=shipment.tracking_number,
      carrier_tracking_number=shipment.carrier_tracking_number,
      carrier_code=shipment.carrier_code,
      carrier_name=shipment.carrier_name,
      service_type=shipment.service_type,
      service_name=shipment.service_name,
      status=shipment.status,
      payment_status=shipment.payment_status,
      payment_id=shipment.payment_id,
      amount=from_minor_units(shipment.final_price),
      currency=shipment.currency,
      label_url=shipment.label_url,
      estimated_delivery=shipment.estimated_delivery,
      actual_delivery=shipment.actual_delivery,
      status_history=shipment.status_history or [],
      created_at=shipment.created_at,
  )


class CheckoutService:
  """Service for quoting, paying for and booking shipments."""

  def __init__(
      self,
      session: AsyncSession,
      carriers: CarrierRegistry,
      payment_gateway: PaymentGateway,
      public_base_url: str,
      quote_ttl_seconds: int = DEFAULT_QUOTE_TTL_SECONDS,
      outbox: Optional[AccountingOutbox] = None,
      clock: Callable[[], datetime.datetime] = utcnow,
      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
  ):
    self.session = session
    self.carriers = carriers
    self.payments = payment_gateway
    self.public_base_url = public_base_url.rstrip("/")
    self.outbox = outbox
    self.pricing = PricingService(session)
    self.quotes = QuoteStore(session, quote_ttl_seconds, clock)
    self._clock = clock
    self._sleep = sleep

  def _compute_hash(self, data: Any) -> str:
    """Computes SHA256 hash of the JSON-serialized data."""
    if isinstance(data, BaseModel):
      json_str = json.dumps(data.model_dump(mode="json"), sort_keys=True)
    else:
      json_str = json.dumps(data, sort_keys=True)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()

  def _now(self) -> str:
    return to_iso(self._clock())

  async def _client_account(self, client_account_id: str) -> db.ClientAccount:
    account = await db.get_client_account(self.session, client_account_id)
    if account is None:
      raise ResourceNotFoundError("Client account not found")
    return account

  async def _get_checkout(
      self, shipment_id: str, client_account_id: Optional[str] = None
  ) -> db.CheckoutSession:
    checkout = await db.get_checkout_session(
        self.session, shipment_id, refresh=True
    )
    if checkout is None or (
        client_account_id and checkout.client_account_id != client_account_id
    ):
      raise ResourceNotFoundError("Shipment not found")
    return checkout

  async def _get_shipment(
      self, shipment_id: str, client_account_id: Optional[str] = None
  ) -> db.Shipment:
    shipment = await db.get_shipment(self.session, shipment_id)
    if shipment is None or (
        client_account_id and shipment.client_account_id != client_account_id
    ):
      raise ResourceNotFoundError("Shipment not found")
    await self.session.refresh(shipment)
    return shipment

  # --- Rate shopping ---

  async def request_rates(
      self, client_account_id: str, request: ShipmentRequest
  ) -> RatesResponse:
    """Prices the carrier's rates for a client and reserves them as quotes."""
    account = await self._client_account(client_account_id)
    carrier = self.carriers.get(request.carrier_code)
    rates = await carrier.get_rates(
        request.shipper,
        request.recipient,
        request.packages,
        request.service_type,
    )
    options = []
    for rate in rates:
      price = await self.pricing.compute_final_price(
          account.profile, rate.base_rate
      )
      options.append(
          RateQuoteOption(
              **rate.model_dump(),
              margin_percentage=price.margin_percentage,
              margin_amount=price.margin_amount,
              final_price=price.final_price,
          )
      )
    if not options:
      logger.info("No rates from %s for %s", carrier.name, client_account_id)
      return RatesResponse(quotes=[])

    batch = await self.quotes.reserve_all(
        options, request, account.id, account.profile
    )
    return RatesResponse(
        quotes=[quote_view(q) for q in batch.reservations],
        expires_at=batch.expires_at,
    )

  # --- Checkout ---

  async def select_quote(
      self, quote_id: str, client_account_id: str
  ) -> db.CheckoutSession:
    """Consumes a quote into a shipment, invoice stub and checkout session."""
    quote = await self.quotes.consume(quote_id, client_account_id)
    now = self._clock()
    now_iso = to_iso(now)
    shipment_id = str(uuid.uuid4())

    shipment = db.Shipment(
        id=shipment_id,
        tracking_number=new_tracking_number(),
        client_account_id=quote.client_account_id,
        quote_id=quote.id,
        carrier_code=quote.carrier_code,
        carrier_name=quote.carrier_name,
        service_type=quote.service_type,
        service_name=quote.service_name,
        shipment_request=quote.shipment_request,
        currency=quote.currency,
        base_rate=quote.base_rate,
        margin_percentage=quote.margin_percentage,
        margin_amount=quote.margin_amount,
        final_price=quote.final_price,
        status=ShipmentStatus.PAYMENT_PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        estimated_delivery=quote.estimated_delivery,
        status_history=[],
        created_at=now_iso,
        updated_at=now_iso,
    )
    _append_history(
        shipment,
        ShipmentStatus.PAYMENT_PENDING.value,
        "Quote selected",
        now_iso,
    )
    invoice = db.Invoice(
        id=str(uuid.uuid4()),
        invoice_number=new_invoice_number(now),
        client_account_id=quote.client_account_id,
        shipment_id=shipment_id,
        amount=quote.final_price,
        currency=quote.currency,
        status=InvoiceStatus.PENDING.value,
        due_date=to_iso(now + datetime.timedelta(days=INVOICE_DUE_DAYS)),
        created_at=now_iso,
    )
    checkout = db.CheckoutSession(
        shipment_id=shipment_id,
        quote_id=quote.id,
        client_account_id=quote.client_account_id,
        amount=quote.final_price,
        currency=quote.currency,
        status=CheckoutStatus.QUOTED.value,
        created_at=now_iso,
        updated_at=now_iso,
    )
    self.session.add_all([shipment, invoice, checkout])
    await self.session.flush()
    await db.transition_checkout(
        self.session,
        shipment_id,
        _sources(CheckoutStatus.CHECKOUT_INITIATED),
        CheckoutStatus.CHECKOUT_INITIATED.value,
    )
    await self.session.commit()
    logger.info(
        "Quote %s selected: shipment %s (%s)",
        quote.id,
        shipment_id,
        shipment.tracking_number,
    )
    return await self._get_checkout(shipment_id)

  async def initiate_payment(
      self, shipment_id: str, client_account_id: Optional[str] = None
  ) -> db.CheckoutSession:
    """Creates the payment for a checkout session.

    A session already awaiting payment is returned as is, so no second
    payment is ever created for one shipment.

    Args:
      shipment_id: The shipment whose checkout to pay.
      client_account_id: When given, the shipment must belong to it.

    Returns:
      The checkout session, now awaiting payment.

    Raises:
      ResourceNotFoundError: No such shipment for this client.
      CheckoutNotModifiableError: The session is past the payment step.
      PaymentFailedError: The gateway could not create the payment; the
        session is failed with code PAYMENT_INIT_FAILED.
    """
    checkout = await self._get_checkout(shipment_id, client_account_id)
    if checkout.status == CheckoutStatus.AWAITING_PAYMENT.value:
      return checkout
    if checkout.status != CheckoutStatus.CHECKOUT_INITIATED.value:
      raise CheckoutNotModifiableError(
          f"Cannot initiate payment for a checkout that is {checkout.status}"
      )

    shipment = await self._get_shipment(shipment_id)
    try:
      payment = await self.payments.create_payment(
          amount=checkout.amount,
          currency=checkout.currency,
          description=f"Shipment {shipment.tracking_number}",
          callback_url=(
              f"{self.public_base_url}/payments/{self.payments.name}/callback"
          ),
          metadata={
              "shipment_id": shipment.id,
              "client_account_id": shipment.client_account_id,
          },
      )
    except ProviderError as e:
      logger.error(
          "Payment creation failed for shipment %s: %s", shipment_id, e.message
      )
      await db.transition_checkout(
          self.session,
          shipment_id,
          _sources(CheckoutStatus.FAILED),
          CheckoutStatus.FAILED.value,
          failure_code="PAYMENT_INIT_FAILED",
          failure_message=e.message,
      )
      shipment.status = ShipmentStatus.PAYMENT_FAILED.value
      shipment.payment_status = PaymentStatus.FAILED.value
      shipment.updated_at = self._now()
      _append_history(
          shipment,
          shipment.status,
          "Payment could not be created",
          shipment.updated_at,
      )
      await self.session.commit()
      raise PaymentFailedError(
          "Payment could not be initiated",
          code="PAYMENT_INIT_FAILED",
          status_code=e.status_code,
      ) from e

    moved = await db.transition_checkout(
        self.session,
        shipment_id,
        [CheckoutStatus.CHECKOUT_INITIATED.value],
        CheckoutStatus.AWAITING_PAYMENT.value,
        payment_id=payment.payment_id,
        transaction_url=payment.transaction_url,
    )
    if not moved:
      await self.session.rollback()
      logger.warning(
          "Checkout %s changed while creating payment %s; discarding it",
          shipment_id,
          payment.payment_id,
      )
      return await self._get_checkout(shipment_id)

    shipment.payment_id = payment.payment_id
    shipment.updated_at = self._now()
    await self.session.commit()
    logger.info(
        "Payment %s created for shipment %s", payment.payment_id, shipment_id
    )
    return await self._get_checkout(shipment_id)

  async def checkout(
      self,
      quote_id: str,
      client_account_id: str,
      idempotency_key: Optional[str] = None,
  ) -> CheckoutResponse:
    """Selects a quote and starts its payment."""
    request_hash = self._compute_hash(
        {"quote_id": quote_id, "client_account_id": client_account_id}
    )
    if idempotency_key:
      existing_record = await db.get_idempotency_record(
          self.session, idempotency_key, self._now()
      )
      if existing_record:
        if existing_record.request_hash != request_hash:
          raise IdempotencyConflictError(
              "Idempotency key reused with different parameters"
          )
        return CheckoutResponse.model_validate(existing_record.response_body)

    checkout = await self.select_quote(quote_id, client_account_id)
    checkout = await self.initiate_payment(checkout.shipment_id)
    shipment = await self._get_shipment(checkout.shipment_id)
    response = CheckoutResponse(
        shipment_id=shipment.id,
        tracking_number=shipment.tracking_number,
        status=checkout.status,
        payment_id=checkout.payment_id,
        transaction_url=checkout.transaction_url,
        amount=from_minor_units(checkout.amount),
        currency=checkout.currency,
    )

    if idempotency_key:
      await db.save_idempotency_record(
          self.session,
          idempotency_key,
          request_hash,
          200,
          response.model_dump(mode="json"),
          self._now(),
          to_iso(
              self._clock()
              + datetime.timedelta(seconds=IDEMPOTENCY_TTL_SECONDS)
          ),
      )
      await self.session.commit()
    return response

  # --- Confirmation ---

  def _failure(self, checkout: db.CheckoutSession) -> ShipbookError:
    if checkout.failure_code in BOOKING_FAILURE_CODES:
      return BookingFailedError()
    return PaymentFailedError(
        checkout.failure_message or "Payment was not completed",
        code=checkout.failure_code or "PAYMENT_NOT_CONFIRMED",
    )

  async def confirm(
      self,
      shipment_id: str,
      payment_id: Optional[str] = None,
      client_account_id: Optional[str] = None,
  ) -> ConfirmResponse:
    """Books a paid shipment with its carrier, at most once.

    Repeated and concurrent calls all observe one booking. The first caller
    to claim the session verifies the payment and books; everyone else gets
    the stored result once it is there.

    Args:
      shipment_id: The shipment to confirm.
      payment_id: The payment the caller believes pays for it, if known.
      client_account_id: When given, the shipment must belong to it.

    Returns:
      The booking result.

    Raises:
      ResourceNotFoundError: No such shipment for this client.
      ValidationError: `payment_id` is not this shipment's payment.
      CheckoutNotModifiableError: Payment has not been started.
      PaymentFailedError: The provider does not report the payment as paid.
      BookingFailedError: Payment succeeded but the carrier booking failed.
      ConfirmationInProgressError: Another caller is still confirming.
    """
    checkout = await self._get_checkout(shipment_id, client_account_id)
    if payment_id and checkout.payment_id and payment_id != checkout.payment_id:
      raise ValidationError("Payment does not belong to this shipment")
    if checkout.status == CheckoutStatus.CONFIRMED.value:
      return ConfirmResponse.model_validate(checkout.result)
    if checkout.status == CheckoutStatus.FAILED.value:
      raise self._failure(checkout)
    if checkout.status != CheckoutStatus.AWAITING_PAYMENT.value:
      raise CheckoutNotModifiableError(
          f"Cannot confirm a checkout that is {checkout.status}"
      )

    token = uuid.uuid4().hex
    claimed = await db.claim_confirmation(
        self.session, shipment_id, token, self._now()
    )
    await self.session.commit()
    if not claimed:
      return await self._await_confirmation(shipment_id)
    return await self._complete_confirmation(checkout, token)

  async def _await_confirmation(self, shipment_id: str) -> ConfirmResponse:
    for attempt in range(CONFIRM_POLL_ATTEMPTS):
      checkout = await self._get_checkout(shipment_id)
      if checkout.status == CheckoutStatus.CONFIRMED.value:
        return ConfirmResponse.model_validate(checkout.result)
      if checkout.status == CheckoutStatus.FAILED.value:
        raise self._failure(checkout)
      if attempt + 1 < CONFIRM_POLL_ATTEMPTS:
        await self._sleep(CONFIRM_POLL_INTERVAL)
    raise ConfirmationInProgressError()

  async def _fail_confirmation(
      self,
      shipment: db.Shipment,
      token: str,
      code: str,
      message: str,
      shipment_status: ShipmentStatus,
      payment_status: PaymentStatus,
  ) -> None:
    moved = await db.transition_checkout(
        self.session,
        shipment.id,
        [CheckoutStatus.AWAITING_PAYMENT.value],
        CheckoutStatus.FAILED.value,
        claimed_by=token,
        failure_code=code,
        failure_message=message,
        confirmation_token=None,
        claimed_at=None,
    )
    if not moved:
      # The claim expired and was failed by the maintenance sweep.
      logger.warning(
          "Confirmation claim on shipment %s was lost before failing it",
          shipment.id,
      )
      await self.session.rollback()
      return
    shipment.status = shipment_status.value
    shipment.payment_status = payment_status.value
    shipment.updated_at = self._now()
    _append_history(shipment, shipment.status, message, shipment.updated_at)
    await self.session.commit()

  async def _complete_confirmation(
      self, checkout: db.CheckoutSession, token: str
  ) -> ConfirmResponse:
    shipment = await self._get_shipment(checkout.shipment_id)

    try:
      payment_status = await self.payments.verify_payment(checkout.payment_id)
    except Exception:
      await self.session.rollback()
      await db.release_confirmation(self.session, shipment.id, token)
      await self.session.commit()
      raise

    if payment_status not in PAYMENT_SUCCESS_STATUSES:
      logger.warning(
          "Payment %s for shipment %s is %s; not booking",
          checkout.payment_id,
          shipment.id,
          payment_status,
      )
      message = f"Payment not completed (status: {payment_status})"
      await self._fail_confirmation(
          shipment,
          token,
          "PAYMENT_NOT_CONFIRMED",
          message,
          ShipmentStatus.PAYMENT_FAILED,
          PaymentStatus.FAILED,
      )
      raise PaymentFailedError(message)

    booking = None
    try:
      request = ShipmentRequest.model_validate(shipment.shipment_request)
      carrier = self.carriers.get(shipment.carrier_code)
      booking = await carrier.create_shipment(
          request.shipper,
          request.recipient,
          request.packages,
          shipment.service_type,
          reference=shipment.tracking_number,
      )
      response, invoice = await self._record_booking(shipment, booking, token)
    except Exception as e:  # pylint: disable=broad-exception-caught
      # Payment is kept; support settles it manually.
      if booking is None:
        message = "Carrier booking failed after payment"
      else:
        message = (
            f"Carrier booked {booking.carrier_tracking_number} but the "
            "booking could not be recorded"
        )
      logger.error(
          "Confirmation of shipment %s after payment %s failed: %s",
          shipment.id,
          checkout.payment_id,
          e,
          exc_info=not isinstance(e, ShipbookError),
      )
      await self.session.rollback()
      shipment = await self._get_shipment(checkout.shipment_id)
      await self._fail_confirmation(
          shipment,
          token,
          "BOOKING_FAILED",
          message,
          ShipmentStatus.BOOKING_FAILED,
          PaymentStatus.PAID,
      )
      raise BookingFailedError() from e

    logger.info(
        "Shipment %s confirmed: carrier tracking %s",
        shipment.id,
        booking.carrier_tracking_number,
    )
    if invoice is not None and self.outbox is not None:
      self.outbox.enqueue(await self._invoice_record(invoice))
    return response

  async def _record_booking(
      self, shipment: db.Shipment, booking: Any, token: str
  ) -> Tuple[ConfirmResponse, Optional[db.Invoice]]:
    """Persists a carrier booking and moves the checkout to confirmed."""
    now = self._now()
    shipment.status = ShipmentStatus.CREATED.value
    shipment.payment_status = PaymentStatus.PAID.value
    shipment.carrier_tracking_number = booking.carrier_tracking_number
    shipment.label_url = booking.label_url
    if booking.estimated_delivery:
      shipment.estimated_delivery = booking.estimated_delivery
    shipment.updated_at = now
    _append_history(
        shipment,
        shipment.status,
        f"Booked with {shipment.carrier_name}",
        now,
    )

    invoice = await db.get_invoice_for_shipment(self.session, shipment.id)
    if invoice is not None:
      invoice.status = InvoiceStatus.PAID.value
      invoice.paid_at = now

    response = ConfirmResponse(
        shipment=shipment_view(shipment),
        carrier_tracking_number=booking.carrier_tracking_number,
        label_url=booking.label_url,
        estimated_delivery=shipment.estimated_delivery,
    )
    moved = await db.transition_checkout(
        self.session,
        shipment.id,
        [CheckoutStatus.AWAITING_PAYMENT.value],
        CheckoutStatus.CONFIRMED.value,
        claimed_by=token,
        result=response.model_dump(mode="json"),
        confirmation_token=None,
        claimed_at=None,
    )
    if not moved:
      raise ConfirmationInProgressError(
          "Confirmation claim expired before the booking was recorded"
      )
    await self.session.commit()
    return response, invoice

  async def fail_stale_confirmations(
      self, max_age_seconds: float = CONFIRM_CLAIM_TIMEOUT_SECONDS
  ) -> int:
    """Fails confirmations whose claim has been held past `max_age_seconds`.

    The carrier may or may not have booked such a shipment, so the checkout
    is failed with BOOKING_UNKNOWN for manual reconciliation. It is never
    booked again.

    Returns:
      The number of checkouts failed.
    """
    cutoff = to_iso(
        self._clock() - datetime.timedelta(seconds=max_age_seconds)
    )
    failed = 0
    for checkout in await db.list_stale_claims(self.session, cutoff):
      moved = await db.transition_checkout(
          self.session,
          checkout.shipment_id,
          [CheckoutStatus.AWAITING_PAYMENT.value],
          CheckoutStatus.FAILED.value,
          claimed_by=checkout.confirmation_token,
          failure_code="BOOKING_UNKNOWN",
          failure_message="Confirmation interrupted; booking state unknown",
          confirmation_token=None,
          claimed_at=None,
      )
      if not moved:
        continue
      shipment = await self._get_shipment(checkout.shipment_id)
      shipment.status = ShipmentStatus.BOOKING_FAILED.value
      shipment.updated_at = self._now()
      _append_history(
          shipment,
          shipment.status,
          "Confirmation interrupted; needs manual reconciliation",
          shipment.updated_at,
      )
      logger.error(
          "Confirmation of shipment %s claimed at %s never finished; "
          "reconcile with carrier %s",
          checkout.shipment_id,
          checkout.claimed_at,
          shipment.carrier_code,
      )
      failed += 1
    await self.session.commit()
    return failed

  async def _invoice_record(self, invoice: db.Invoice) -> Dict[str, Any]:
    record = {
        "invoice_number": invoice.invoice_number,
        "shipment_id": invoice.shipment_id,
        "client_account_id": invoice.client_account_id,
        "amount": str(from_minor_units(invoice.amount)),
        "currency": invoice.currency,
        "status": invoice.status,
        "due_date": invoice.due_date,
        "paid_at": invoice.paid_at,
    }
    account = await db.get_client_account(
        self.session, invoice.client_account_id
    )
    if account is not None:
      record["customer"] = {
          "name": account.name,
          "email": account.email,
          "phone": account.phone,
          "country": account.country,
      }
    return record

  async def mark_payment_failed(self, shipment_id: str, reason: str) -> bool:
    """Fails an unconfirmed checkout whose payment the provider declined.

    Returns:
      True if the session moved to failed, False if it was already final.

    Raises:
      ResourceNotFoundError: No such shipment.
      ConfirmationInProgressError: A confirmation currently holds the claim.
    """
    checkout = await self._get_checkout(shipment_id)
    if checkout.status in (
        CheckoutStatus.CONFIRMED.value,
        CheckoutStatus.FAILED.value,
    ):
      logger.info(
          "Ignoring payment failure for %s checkout %s",
          checkout.status,
          shipment_id,
      )
      return False
    moved = await db.transition_checkout(
        self.session,
        shipment_id,
        _sources(CheckoutStatus.FAILED),
        CheckoutStatus.FAILED.value,
        require_unclaimed=True,
        failure_code="PAYMENT_NOT_CONFIRMED",
        failure_message=reason,
    )
    if not moved:
      await self.session.rollback()
      raise ConfirmationInProgressError()
    shipment = await self._get_shipment(shipment_id)
    shipment.status = ShipmentStatus.PAYMENT_FAILED.value
    shipment.payment_status = PaymentStatus.FAILED.value
    shipment.updated_at = self._now()
    _append_history(shipment, shipment.status, reason, shipment.updated_at)
    await self.session.commit()
    logger.info("Checkout %s failed: %s", shipment_id, reason)
    return True

  async def handle_payment_callback(
      self, payment_id: str
  ) -> PaymentCallbackResponse:
    """Reconciles a shipment after the customer returns from the gateway.

    The status in the redirect is not trusted; the payment is verified with
    the provider before anything changes.
    """
    shipment = await db.find_shipment_by_payment_id(self.session, payment_id)
    if shipment is None:
      logger.error("Payment callback for unknown payment %s", payment_id)
      raise ResourceNotFoundError("Shipment not found for payment")

    verified = await self.payments.verify_payment(payment_id)
    try:
      if verified in PAYMENT_SUCCESS_STATUSES:
        await self.confirm(shipment.id, payment_id)
      elif verified in PAYMENT_FAILURE_STATUSES:
        await self.mark_payment_failed(
            shipment.id, f"Payment {verified} at the provider"
        )
      else:
        logger.info("Payment %s still %s", payment_id, verified)
    except (
        PaymentFailedError,
        BookingFailedError,
        ConfirmationInProgressError,
    ) as e:
      logger.warning(
          "Payment callback for shipment %s: %s", shipment.id, e.message
      )

    shipment = await self._get_shipment(shipment.id)
    return PaymentCallbackResponse(
        shipment_id=shipment.id,
        status=shipment.status,
        payment_status=shipment.payment_status,
        carrier_tracking_number=shipment.carrier_tracking_number,
    )

  # --- Shipment follow-up ---

  async def get_shipment(
      self, shipment_id: str, client_account_id: Optional[str] = None
  ) -> ShipmentView:
    return shipment_view(
        await self._get_shipment(shipment_id, client_account_id)
    )

  async def track(
      self, shipment_id: str, client_account_id: Optional[str] = None
  ) -> TrackingResult:
    """Fetches carrier tracking for a booked shipment."""
    shipment = await self._get_shipment(shipment_id, client_account_id)
    if not shipment.carrier_tracking_number:
      raise CheckoutNotModifiableError(
          "Shipment has not been booked with the carrier yet"
      )
    carrier = self.carriers.get(shipment.carrier_code)
    return await carrier.track_shipment(shipment.carrier_tracking_number)

  async def cancel(
      self, shipment_id: str, client_account_id: Optional[str] = None
  ) -> CancelResponse:
    """Cancels a booked shipment that has not started moving.

    The payment is not refunded automatically.
    """
    shipment = await self._get_shipment(shipment_id, client_account_id)
    if shipment.status not in CANCELLABLE_STATUSES:
      raise CheckoutNotModifiableError(
          f"Cannot cancel a shipment that is {shipment.status}"
      )
    carrier = self.carriers.get(shipment.carrier_code)
    cancelled = await carrier.cancel_shipment(shipment.carrier_tracking_number)
    if cancelled:
      shipment.status = ShipmentStatus.CANCELLED.value
      shipment.updated_at = self._now()
      _append_history(
          shipment, shipment.status, "Cancelled by client", shipment.updated_at
      )
      await self.session.commit()
      logger.info("Shipment %s cancelled", shipment_id)
    else:
      logger.warning("%s refused to cancel %s", carrier.name, shipment_id)
    return CancelResponse(
        shipment_id=shipment.id, status=shipment.status, cancelled=cancelled
    )
