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

"""Database management and persistence layer for the shipment booking server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy
with SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Enables SQLite Write-Ahead Logging so the API server, the webhook
  sweeper and the maintenance scripts can share one database file.
- Declarative Models: Tables for quote reservations, pricing rules, shipments,
  invoices, checkout sessions, integration logs, webhook events and
  idempotency tracking.
- Compare-and-set helpers: single-statement conditional updates used for
  quote consumption, checkout transitions and the confirmation claim.

Timestamps are stored as UTC ISO-8601 strings with microseconds so that
string comparison in SQL matches time order.
"""

import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from shipbook.money import to_iso
from shipbook.money import utcnow
from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import delete
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import Numeric
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, db_path: str, **engine_kwargs: Any) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{db_path}"
    self.engine = create_async_engine(url, echo=False, **engine_kwargs)

    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()
    self.engine = None
    self.session_factory = None


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class QuoteReservation(Base):
  __tablename__ = "quote_reservations"

  id = Column(String, primary_key=True)
  rate_group_id = Column(String, index=True)
  client_account_id = Column(String, index=True)
  profile = Column(String)
  carrier_code = Column(String)
  carrier_name = Column(String)
  service_type = Column(String)
  service_name = Column(String)
  currency = Column(String)
  base_rate = Column(Integer)  # In minor units
  margin_percentage = Column(Numeric(5, 2))
  margin_amount = Column(Integer)  # In minor units
  final_price = Column(Integer)  # In minor units
  transit_days = Column(Integer, nullable=True)
  estimated_delivery = Column(String, nullable=True)
  shipment_request = Column(JSON)
  status = Column(String, index=True)
  created_at = Column(String)
  expires_at = Column(String, index=True)
  consumed_at = Column(String, nullable=True)


class PricingRule(Base):
  __tablename__ = "pricing_rules"

  id = Column(Integer, primary_key=True, autoincrement=True)
  profile = Column(String, unique=True)
  display_name = Column(String)
  margin_percentage = Column(Numeric(5, 2))  # Flat fallback margin
  is_active = Column(Boolean, default=True)
  updated_at = Column(String)

  tiers = relationship(
      "PricingTier",
      back_populates="rule",
      cascade="all, delete-orphan",
      order_by="PricingTier.min_amount",
      lazy="selectin",
  )


class PricingTier(Base):
  __tablename__ = "pricing_tiers"
  __table_args__ = (UniqueConstraint("rule_id", "min_amount"),)

  id = Column(Integer, primary_key=True, autoincrement=True)
  rule_id = Column(Integer, ForeignKey("pricing_rules.id"))
  min_amount = Column(Integer)  # In minor units
  margin_percentage = Column(Numeric(5, 2))

  rule = relationship("PricingRule", back_populates="tiers")


class ClientAccount(Base):
  __tablename__ = "client_accounts"

  id = Column(String, primary_key=True)
  name = Column(String)
  email = Column(String, index=True)
  phone = Column(String, nullable=True)
  country = Column(String, nullable=True)
  profile = Column(String, default="regular")


class Shipment(Base):
  __tablename__ = "shipments"

  id = Column(String, primary_key=True)
  tracking_number = Column(String, unique=True)
  client_account_id = Column(String, index=True)
  quote_id = Column(String, unique=True)
  carrier_code = Column(String)
  carrier_name = Column(String)
  service_type = Column(String)
  service_name = Column(String)
  shipment_request = Column(JSON)
  currency = Column(String)
  base_rate = Column(Integer)
  margin_percentage = Column(Numeric(5, 2))
  margin_amount = Column(Integer)
  final_price = Column(Integer)
  status = Column(String)
  payment_id = Column(String, nullable=True, index=True)
  payment_status = Column(String)
  carrier_tracking_number = Column(String, nullable=True, index=True)
  label_url = Column(String, nullable=True)
  estimated_delivery = Column(String, nullable=True)
  actual_delivery = Column(String, nullable=True)
  status_history = Column(JSON)
  created_at = Column(String)
  updated_at = Column(String)


class Invoice(Base):
  __tablename__ = "invoices"

  id = Column(String, primary_key=True)
  invoice_number = Column(String, unique=True)
  client_account_id = Column(String, index=True)
  shipment_id = Column(String, ForeignKey("shipments.id"), unique=True)
  amount = Column(Integer)
  currency = Column(String)
  status = Column(String)
  due_date = Column(String)
  paid_at = Column(String, nullable=True)
  created_at = Column(String)


class CheckoutSession(Base):
  __tablename__ = "checkout_sessions"

  shipment_id = Column(String, ForeignKey("shipments.id"), primary_key=True)
  quote_id = Column(String)
  client_account_id = Column(String, index=True)
  payment_id = Column(String, nullable=True, index=True)
  transaction_url = Column(String, nullable=True)
  amount = Column(Integer)
  currency = Column(String)
  status = Column(String)
  confirmation_token = Column(String, nullable=True)
  claimed_at = Column(String, nullable=True)
  result = Column(JSON, nullable=True)
  failure_code = Column(String, nullable=True)
  failure_message = Column(String, nullable=True)
  created_at = Column(String)
  updated_at = Column(String)


class IntegrationLog(Base):
  __tablename__ = "integration_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  service = Column(String, index=True)
  operation = Column(String)
  request_payload = Column(String, nullable=True)
  response_payload = Column(String, nullable=True)
  status_code = Column(Integer)  # 0 when no response was received
  duration_ms = Column(Integer)
  success = Column(Boolean)
  error_message = Column(String, nullable=True)
  timestamp = Column(String, index=True)


class WebhookEvent(Base):
  __tablename__ = "webhook_events"
  __table_args__ = (UniqueConstraint("source", "delivery_id"),)

  id = Column(String, primary_key=True)
  source = Column(String, index=True)
  # Null for rejected deliveries, which are recorded but never processed.
  delivery_id = Column(String, nullable=True)
  event_type = Column(String)
  payload = Column(String)
  signature = Column(String, nullable=True)
  processed = Column(Boolean, default=False)
  processed_at = Column(String, nullable=True)
  error_message = Column(String, nullable=True)
  retry_count = Column(Integer, default=0)
  needs_review = Column(Boolean, default=False)
  created_at = Column(String)


class IdempotencyRecord(Base):
  __tablename__ = "idempotency_records"

  key = Column(String, primary_key=True)
  request_hash = Column(String)
  response_status = Column(Integer)
  response_body = Column(JSON)
  created_at = Column(String)
  expires_at = Column(String, index=True)


# --- Data Access Helpers ---


async def get_client_account(
    session: AsyncSession, account_id: str
) -> Optional[ClientAccount]:
  """Retrieves a client account by ID."""
  return await session.get(ClientAccount, account_id)


async def get_pricing_rule(
    session: AsyncSession, profile: str, active_only: bool = True
) -> Optional[PricingRule]:
  """Retrieves the pricing rule for a profile, tiers included."""
  stmt = select(PricingRule).where(PricingRule.profile == profile)
  if active_only:
    stmt = stmt.where(PricingRule.is_active.is_(True))
  result = await session.execute(stmt)
  return result.scalar_one_or_none()


async def list_pricing_rules(session: AsyncSession) -> List[PricingRule]:
  """Lists all pricing rules ordered by profile."""
  result = await session.execute(
      select(PricingRule).order_by(PricingRule.profile)
  )
  return list(result.scalars().all())


async def get_quote(
    session: AsyncSession, quote_id: str
) -> Optional[QuoteReservation]:
  """Retrieves a quote reservation by ID."""
  return await session.get(QuoteReservation, quote_id)


async def consume_quote(
    session: AsyncSession, quote_id: str, now: str
) -> bool:
  """Atomically moves a live reservation from reserved to consumed.

  Args:
    session: The database session to use.
    quote_id: The reservation to consume.
    now: The current time as an ISO string.

  Returns:
    True if this call performed the transition. False if the reservation is
    missing, already consumed, or expired at `now`.
  """
  stmt = (
      update(QuoteReservation)
      .where(QuoteReservation.id == quote_id)
      .where(QuoteReservation.status == "reserved")
      .where(QuoteReservation.expires_at > now)
      .values(status="consumed", consumed_at=now)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def expire_quotes(session: AsyncSession, now: str) -> int:
  """Marks every reserved quote whose expiry has passed as expired."""
  stmt = (
      update(QuoteReservation)
      .where(QuoteReservation.status == "reserved")
      .where(QuoteReservation.expires_at <= now)
      .values(status="expired")
  )
  result = await session.execute(stmt)
  return result.rowcount


async def get_shipment(
    session: AsyncSession, shipment_id: str
) -> Optional[Shipment]:
  """Retrieves a shipment by ID."""
  return await session.get(Shipment, shipment_id)


async def find_shipment_by_tracking_number(
    session: AsyncSession, tracking_number: str
) -> Optional[Shipment]:
  """Finds a shipment by its carrier or local tracking number."""
  result = await session.execute(
      select(Shipment).where(
          (Shipment.carrier_tracking_number == tracking_number)
          | (Shipment.tracking_number == tracking_number)
      )
  )
  return result.scalars().first()


async def find_shipment_by_payment_id(
    session: AsyncSession, payment_id: str
) -> Optional[Shipment]:
  """Finds the shipment paid by a provider payment."""
  result = await session.execute(
      select(Shipment).where(Shipment.payment_id == payment_id)
  )
  return result.scalars().first()


async def get_invoice_for_shipment(
    session: AsyncSession, shipment_id: str
) -> Optional[Invoice]:
  """Retrieves the invoice of a shipment."""
  result = await session.execute(
      select(Invoice).where(Invoice.shipment_id == shipment_id)
  )
  return result.scalar_one_or_none()


async def get_checkout_session(
    session: AsyncSession, shipment_id: str, refresh: bool = False
) -> Optional[CheckoutSession]:
  """Retrieves a checkout session.

  Args:
    session: The database session to use.
    shipment_id: The shipment the session belongs to.
    refresh: Reload the row from the database even if it is already present
      in the session's identity map.

  Returns:
    The CheckoutSession if found, otherwise None.
  """
  if not refresh:
    return await session.get(CheckoutSession, shipment_id)
  result = await session.execute(
      select(CheckoutSession)
      .where(CheckoutSession.shipment_id == shipment_id)
      .execution_options(populate_existing=True)
  )
  return result.scalar_one_or_none()


async def transition_checkout(
    session: AsyncSession,
    shipment_id: str,
    from_statuses: Iterable[str],
    to_status: str,
    require_unclaimed: bool = False,
    claimed_by: Optional[str] = None,
    **values: Any,
) -> bool:
  """Moves a checkout session to `to_status` if it is in `from_statuses`.

  With `require_unclaimed`, sessions whose confirmation is claimed are left
  alone. With `claimed_by`, only the session holding that claim token moves.
  """
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.shipment_id == shipment_id)
      .where(CheckoutSession.status.in_(list(from_statuses)))
  )
  if require_unclaimed:
    stmt = stmt.where(CheckoutSession.confirmation_token.is_(None))
  if claimed_by is not None:
    stmt = stmt.where(CheckoutSession.confirmation_token == claimed_by)
  stmt = stmt.values(
      status=to_status, updated_at=to_iso(utcnow()), **values
  ).execution_options(synchronize_session=False)
  result = await session.execute(stmt)
  return result.rowcount > 0


async def claim_confirmation(
    session: AsyncSession, shipment_id: str, token: str, now: str
) -> bool:
  """Takes the confirmation claim of an awaiting-payment checkout."""
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.shipment_id == shipment_id)
      .where(CheckoutSession.status == "awaiting_payment")
      .where(CheckoutSession.confirmation_token.is_(None))
      .values(confirmation_token=token, claimed_at=now, updated_at=now)
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def release_confirmation(
    session: AsyncSession, shipment_id: str, token: str
) -> bool:
  """Gives back a confirmation claim so a later call can retry."""
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.shipment_id == shipment_id)
      .where(CheckoutSession.confirmation_token == token)
      .values(
          confirmation_token=None,
          claimed_at=None,
          updated_at=to_iso(utcnow()),
      )
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def list_stale_claims(
    session: AsyncSession, claimed_before: str
) -> List[CheckoutSession]:
  """Lists awaiting-payment checkouts claimed at or before `claimed_before`."""
  result = await session.execute(
      select(CheckoutSession)
      .where(CheckoutSession.status == "awaiting_payment")
      .where(CheckoutSession.confirmation_token.is_not(None))
      .where(CheckoutSession.claimed_at <= claimed_before)
      .order_by(CheckoutSession.claimed_at)
  )
  return list(result.scalars().all())


async def add_integration_log(
    session: AsyncSession,
    service: str,
    operation: str,
    request_payload: Optional[str],
    response_payload: Optional[str],
    status_code: int,
    duration_ms: int,
    success: bool,
    error_message: Optional[str] = None,
) -> None:
  """Appends an integration log entry."""
  session.add(
      IntegrationLog(
          service=service,
          operation=operation,
          request_payload=request_payload,
          response_payload=response_payload,
          status_code=status_code,
          duration_ms=duration_ms,
          success=success,
          error_message=error_message,
          timestamp=to_iso(utcnow()),
      )
  )


async def list_integration_logs(
    session: AsyncSession,
    service: Optional[str] = None,
    failures_only: bool = False,
    limit: int = 100,
) -> List[IntegrationLog]:
  """Lists integration log entries, newest first."""
  stmt = select(IntegrationLog)
  if service:
    stmt = stmt.where(IntegrationLog.service == service)
  if failures_only:
    stmt = stmt.where(IntegrationLog.success.is_(False))
  stmt = stmt.order_by(IntegrationLog.id.desc()).limit(limit)
  result = await session.execute(stmt)
  return list(result.scalars().all())


async def find_webhook_event(
    session: AsyncSession, source: str, delivery_id: str
) -> Optional[WebhookEvent]:
  """Finds a recorded delivery of a provider event."""
  result = await session.execute(
      select(WebhookEvent).where(
          WebhookEvent.source == source,
          WebhookEvent.delivery_id == delivery_id,
      )
  )
  return result.scalar_one_or_none()


async def list_webhook_events(
    session: AsyncSession,
    source: Optional[str] = None,
    pending_only: bool = False,
    needs_review: Optional[bool] = None,
    limit: int = 100,
) -> List[WebhookEvent]:
  """Lists webhook events, oldest first."""
  stmt = select(WebhookEvent)
  if source:
    stmt = stmt.where(WebhookEvent.source == source)
  if pending_only:
    stmt = stmt.where(
        WebhookEvent.processed.is_(False),
        WebhookEvent.delivery_id.is_not(None),
    )
  if needs_review is not None:
    stmt = stmt.where(WebhookEvent.needs_review.is_(needs_review))
  stmt = stmt.order_by(WebhookEvent.created_at).limit(limit)
  result = await session.execute(stmt)
  return list(result.scalars().all())


async def get_idempotency_record(
    session: AsyncSession, key: str, now: str
) -> Optional[IdempotencyRecord]:
  """Retrieves an unexpired idempotency record by key.

  An expired record is deleted so the key can be used again.
  """
  record = await session.get(IdempotencyRecord, key)
  if record is None:
    return None
  if record.expires_at and record.expires_at <= now:
    await session.delete(record)
    await session.flush()
    return None
  return record


async def save_idempotency_record(
    session: AsyncSession,
    key: str,
    request_hash: str,
    response_status: int,
    response_body: Dict[str, Any],
    created_at: str,
    expires_at: str,
) -> None:
  """Saves a new idempotency record."""
  record = IdempotencyRecord(
      key=key,
      request_hash=request_hash,
      response_status=response_status,
      response_body=response_body,
      created_at=created_at,
      expires_at=expires_at,
  )
  session.add(record)


async def purge_idempotency_records(session: AsyncSession, now: str) -> int:
  """Deletes idempotency records whose expiry has passed."""
  result = await session.execute(
      delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now)
  )
  return result.rowcount
