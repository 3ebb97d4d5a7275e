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

"""Signed, idempotent ingestion of carrier and payment webhooks.

Each delivery is verified, recorded and committed before it is acted on, so a
crash during processing leaves a pending event for the retry sweep. Events
that keep failing are flagged for review after `MAX_WEBHOOK_RETRIES`
attempts. A delivery whose event was already processed is acknowledged
without side effects.
"""

import datetime
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
import uuid

from shipbook import db
from shipbook.enums import ShipmentStatus
from shipbook.enums import WebhookEventType
from shipbook.exceptions import BookingFailedError
from shipbook.exceptions import PaymentFailedError
from shipbook.exceptions import ResourceNotFoundError
from shipbook.exceptions import SignatureInvalidError
from shipbook.exceptions import ValidationError
from shipbook.integrations.carriers.base import CarrierAdapter
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.integrations.payments.base import PaymentGateway
from shipbook.integrations.signing import payload_digest
from shipbook.models import RetrySweepResponse
from shipbook.models import WebhookPayload
from shipbook.models import WebhookReceipt
from shipbook.money import to_iso
from shipbook.money import utcnow
from shipbook.services.checkout_service import CheckoutService
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_WEBHOOK_RETRIES = 5
SIGNATURE_FAILED_EVENT = "signature_validation_failed"
UNPARSEABLE_EVENT = "unparseable"

# Carrier status codes mapped onto shipment statuses.
TRACKING_STATUS_MAP = {
    "PROCESSING": ShipmentStatus.PROCESSING.value,
    "PICKED_UP": ShipmentStatus.IN_TRANSIT.value,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT.value,
    "OUT_FOR_DELIVERY": ShipmentStatus.IN_TRANSIT.value,
    "DELIVERED": ShipmentStatus.DELIVERED.value,
}

WebhookSource = Union[CarrierAdapter, PaymentGateway]


def build_webhook_sources(
    carriers: CarrierRegistry, payment_gateway: PaymentGateway
) -> Dict[str, WebhookSource]:
  """Maps webhook source names (lower-case) to the adapter that signs them."""
  sources: Dict[str, WebhookSource] = {
      code.lower(): carriers.get(code) for code in carriers.supported()
  }
  sources[payment_gateway.name.lower()] = payment_gateway
  return sources


class WebhookService:
  """Records and reconciles provider webhooks."""

  def __init__(
      self,
      session: AsyncSession,
      sources: Mapping[str, WebhookSource],
      checkout_service: CheckoutService,
      clock: Callable[[], datetime.datetime] = utcnow,
  ):
    self.session = session
    self.sources = sources
    self.checkout_service = checkout_service
    self._clock = clock

  def _source(self, source: str) -> WebhookSource:
    adapter = self.sources.get(source.lower())
    if adapter is None:
      raise ResourceNotFoundError(f"Unknown webhook source: {source}")
    return adapter

  def signature_header(self, source: str) -> str:
    """Returns the request header carrying `source`'s signature."""
    return self._source(source).signature_header

  async def receive(
      self, source: str, signature: Optional[str], raw_body: bytes
  ) -> WebhookReceipt:
    """Verifies, records and processes one delivery.

    Args:
      source: The provider name from the webhook URL.
      signature: The value of the provider's signature header.
      raw_body: The exact request body the signature covers.

    Returns:
      The receipt. Processing failures do not fail the delivery once the
      event is recorded; they are retried by the sweep.

    Raises:
      ResourceNotFoundError: `source` is not a known provider.
      SignatureInvalidError: The signature is missing or wrong.
      ValidationError: The body is not a JSON object.
    """
    source = source.lower()
    adapter = self._source(source)
    body_text = raw_body.decode("utf-8", errors="replace")

    if not adapter.webhook_secret:
      logger.warning(
          "No webhook secret configured for %s; accepting unsigned delivery",
          source,
      )
    elif not adapter.validate_webhook_signature(raw_body, signature):
      logger.warning("Rejected %s webhook with an invalid signature", source)
      self.session.add(
          db.WebhookEvent(
              id=str(uuid.uuid4()),
              source=source,
              delivery_id=None,
              event_type=SIGNATURE_FAILED_EVENT,
              payload=body_text,
              signature=signature,
              processed=False,
              error_message="Invalid signature",
              retry_count=0,
              needs_review=False,
              created_at=to_iso(self._clock()),
          )
      )
      await self.session.commit()
      raise SignatureInvalidError()

    try:
      payload = json.loads(body_text)
    except ValueError as e:
      raise ValidationError("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
      raise ValidationError("Webhook body must be a JSON object")
    delivery_id, event_type = self._identify(source, adapter, payload)

    event = await db.find_webhook_event(self.session, source, delivery_id)
    if event is None:
      event = db.WebhookEvent(
          id=str(uuid.uuid4()),
          source=source,
          delivery_id=delivery_id,
          event_type=event_type,
          payload=body_text,
          signature=signature,
          processed=False,
          retry_count=0,
          needs_review=False,
          created_at=to_iso(self._clock()),
      )
      self.session.add(event)
      try:
        await self.session.commit()
      except IntegrityError:
        # A concurrent delivery of the same event won the insert.
        await self.session.rollback()
        event = await db.find_webhook_event(self.session, source, delivery_id)
        return WebhookReceipt(event_id=event.id, duplicate=True)
    elif event.processed or event.needs_review:
      logger.info("Duplicate %s delivery %s acknowledged", source, delivery_id)
      return WebhookReceipt(event_id=event.id, duplicate=True)

    event_id = event.id
    await self._process(event)
    return WebhookReceipt(event_id=event_id)

  def _identify(
      self, source: str, adapter: WebhookSource, payload: Dict[str, Any]
  ) -> Tuple[str, str]:
    """Returns the delivery id and provider event type to record.

    A body the adapter cannot parse is still recorded, keyed by its digest,
    and fails again when processed.
    """
    try:
      parsed = adapter.parse_webhook(payload)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.warning("Recording unparseable %s webhook: %s", source, e)
      return payload_digest(payload), UNPARSEABLE_EVENT
    return parsed.delivery_id, parsed.provider_event_type

  async def _process(self, event: db.WebhookEvent) -> bool:
    """Runs one recorded event, updating its processing state."""
    event_id, source = event.id, event.source
    try:
      parsed = self._source(source).parse_webhook(json.loads(event.payload))
      await self._dispatch(source, parsed)
    except (PaymentFailedError, BookingFailedError) as e:
      # The outcome is recorded on the checkout; nothing left to retry.
      await self.session.rollback()
      await self.session.refresh(event)
      event.error_message = e.message
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.exception("Failed to process %s webhook %s", source, event_id)
      await self.session.rollback()
      await self.session.refresh(event)
      event.retry_count = (event.retry_count or 0) + 1
      event.error_message = str(e) or type(e).__name__
      if event.retry_count >= MAX_WEBHOOK_RETRIES:
        event.needs_review = True
        logger.error(
            "Webhook %s from %s failed %d times; flagged for review",
            event_id,
            source,
            event.retry_count,
        )
      await self.session.commit()
      return False
    else:
      event.error_message = None

    event.processed = True
    event.processed_at = to_iso(self._clock())
    await self.session.commit()
    return True

  async def _shipment_id_for_payment(self, parsed: WebhookPayload) -> str:
    if parsed.shipment_id:
      return parsed.shipment_id
    if parsed.payment_id:
      shipment = await db.find_shipment_by_payment_id(
          self.session, parsed.payment_id
      )
      if shipment is not None:
        return shipment.id
    raise ResourceNotFoundError(
        f"No shipment for payment {parsed.payment_id}"
    )

  async def _dispatch(self, source: str, parsed: WebhookPayload) -> None:
    if parsed.event_type == WebhookEventType.PAYMENT_SUCCEEDED:
      shipment_id = await self._shipment_id_for_payment(parsed)
      await self.checkout_service.confirm(shipment_id, parsed.payment_id)
    elif parsed.event_type == WebhookEventType.PAYMENT_FAILED:
      shipment_id = await self._shipment_id_for_payment(parsed)
      await self.checkout_service.mark_payment_failed(
          shipment_id, f"Payment {parsed.status} reported by {source}"
      )
    elif parsed.event_type == WebhookEventType.TRACKING_UPDATE:
      await self.apply_tracking_update(parsed)
    else:
      logger.info(
          "Ignoring %s event %s", source, parsed.provider_event_type
      )

  async def apply_tracking_update(self, parsed: WebhookPayload) -> None:
    """Records a carrier status update on the shipment it names."""
    if not parsed.tracking_number:
      raise ValidationError("Tracking update without a tracking number")
    shipment = await db.find_shipment_by_tracking_number(
        self.session, parsed.tracking_number
    )
    if shipment is None:
      raise ResourceNotFoundError(
          f"No shipment with tracking number {parsed.tracking_number}"
      )

    raw_status = (parsed.status or "").upper()
    timestamp = parsed.occurred_at or to_iso(self._clock())
    if shipment.status == ShipmentStatus.CANCELLED.value:
      logger.warning(
          "Carrier update %s for cancelled shipment %s",
          raw_status,
          shipment.id,
      )
    else:
      shipment.status = TRACKING_STATUS_MAP.get(raw_status, shipment.status)
    if (
        shipment.status == ShipmentStatus.DELIVERED.value
        and not shipment.actual_delivery
    ):
      shipment.actual_delivery = timestamp
    shipment.status_history = list(shipment.status_history or []) + [{
        "status": shipment.status,
        "note": f"Carrier update: {raw_status or 'UNKNOWN'}",
        "timestamp": timestamp,
    }]
    shipment.updated_at = to_iso(self._clock())
    await self.session.commit()
    logger.info(
        "Shipment %s is %s after carrier update", shipment.id, shipment.status
    )

  async def retry_pending(self, limit: int = 100) -> RetrySweepResponse:
    """Reprocesses recorded events that have not succeeded yet."""
    events = await db.list_webhook_events(
        self.session, pending_only=True, needs_review=False, limit=limit
    )
    processed = flagged = 0
    for event in events:
      # An earlier failure may have rolled back and expired the batch.
      await self.session.refresh(event)
      if await self._process(event):
        processed += 1
      elif event.needs_review:
        flagged += 1
    if events:
      logger.info(
          "Webhook sweep: %d attempted, %d processed, %d flagged",
          len(events),
          processed,
          flagged,
      )
    return RetrySweepResponse(
        attempted=len(events), processed=processed, flagged_for_review=flagged
    )
