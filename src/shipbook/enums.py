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

"""Enumerations for the shipment booking server.

This module defines the states of quote reservations, checkout sessions,
shipments, invoices and payments used throughout the server application.
"""

import enum


class QuoteStatus(str, enum.Enum):
  RESERVED = "reserved"
  CONSUMED = "consumed"
  EXPIRED = "expired"


class CheckoutStatus(str, enum.Enum):
  QUOTED = "quoted"
  CHECKOUT_INITIATED = "checkout_initiated"
  AWAITING_PAYMENT = "awaiting_payment"
  CONFIRMED = "confirmed"
  FAILED = "failed"


# Allowed checkout transitions. FAILED is reachable from every non-terminal
# state; CONFIRMED and FAILED have no way out.
CHECKOUT_TRANSITIONS = {
    CheckoutStatus.QUOTED: {
        CheckoutStatus.CHECKOUT_INITIATED,
        CheckoutStatus.FAILED,
    },
    CheckoutStatus.CHECKOUT_INITIATED: {
        CheckoutStatus.AWAITING_PAYMENT,
        CheckoutStatus.FAILED,
    },
    CheckoutStatus.AWAITING_PAYMENT: {
        CheckoutStatus.CONFIRMED,
        CheckoutStatus.FAILED,
    },
    CheckoutStatus.CONFIRMED: set(),
    CheckoutStatus.FAILED: set(),
}


class ShipmentStatus(str, enum.Enum):
  PAYMENT_PENDING = "payment_pending"
  CREATED = "created"
  PROCESSING = "processing"
  IN_TRANSIT = "in_transit"
  DELIVERED = "delivered"
  CANCELLED = "cancelled"
  PAYMENT_FAILED = "payment_failed"
  BOOKING_FAILED = "booking_failed"


class PaymentStatus(str, enum.Enum):
  PENDING = "pending"
  PAID = "paid"
  FAILED = "failed"


class InvoiceStatus(str, enum.Enum):
  PENDING = "pending"
  PAID = "paid"


class WebhookEventType(str, enum.Enum):
  """Normalized webhook event kinds the reconciler dispatches on."""

  PAYMENT_SUCCEEDED = "payment_succeeded"
  PAYMENT_FAILED = "payment_failed"
  TRACKING_UPDATE = "tracking_update"
  UNKNOWN = "unknown"


# Provider payment statuses that allow a carrier booking to proceed.
PAYMENT_SUCCESS_STATUSES = frozenset({"paid", "captured", "succeeded"})

# Provider payment statuses that are final failures.
PAYMENT_FAILURE_STATUSES = frozenset(
    {"failed", "voided", "canceled", "cancelled"}
)
