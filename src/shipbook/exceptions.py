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

"""Custom exceptions for the shipment booking server."""


class ShipbookError(Exception):
  """Base class for all shipment booking exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ValidationError(ShipbookError):
  """Raised when the request is invalid (e.g. malformed input)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class ResourceNotFoundError(ShipbookError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class QuoteNotFoundError(ShipbookError):
  """Raised when a quote id does not name any reservation."""

  def __init__(self, message: str = "Quote not found"):
    super().__init__(message, code="QUOTE_NOT_FOUND", status_code=404)


class ExpiredReservationError(ShipbookError):
  """Raised when a quote is consumed at or after its expiry."""

  def __init__(self, message: str = "Quote expired, please request new rates"):
    super().__init__(message, code="QUOTE_EXPIRED", status_code=410)


class AlreadyConsumedError(ShipbookError):
  """Raised on a second attempt to consume the same quote."""

  def __init__(self, message: str = "Quote has already been used"):
    super().__init__(message, code="QUOTE_ALREADY_CONSUMED", status_code=409)


class SignatureInvalidError(ShipbookError):
  """Raised when a webhook signature is missing or does not verify."""

  def __init__(self, message: str = "Invalid webhook signature"):
    super().__init__(message, code="SIGNATURE_INVALID", status_code=401)


class IdempotencyConflictError(ShipbookError):
  """Raised when an idempotency key is reused with different parameters."""

  def __init__(self, message: str):
    super().__init__(message, code="IDEMPOTENCY_CONFLICT", status_code=409)


class CheckoutNotModifiableError(ShipbookError):
  """Raised when a checkout step is attempted from the wrong state."""

  def __init__(self, message: str):
    super().__init__(message, code="CHECKOUT_NOT_MODIFIABLE", status_code=409)


class ConfirmationInProgressError(ShipbookError):
  """Raised when another caller holds the confirmation of a shipment."""

  def __init__(
      self, message: str = "Shipment confirmation is already in progress"
  ):
    super().__init__(message, code="CONFIRMATION_IN_PROGRESS", status_code=409)


class PaymentFailedError(ShipbookError):
  """Raised when payment processing fails."""

  def __init__(
      self,
      message: str,
      code: str = "PAYMENT_NOT_CONFIRMED",
      status_code: int = 402,
  ):
    super().__init__(message, code=code, status_code=status_code)


class BookingFailedError(ShipbookError):
  """Raised when the carrier booking fails after a successful payment."""

  def __init__(
      self,
      message: str = (
          "Payment received but the carrier booking failed. Support has been"
          " notified."
      ),
  ):
    super().__init__(message, code="BOOKING_FAILED", status_code=502)


class ProviderError(ShipbookError):
  """Base class for classified external provider failures."""

  def __init__(
      self,
      message: str,
      service: str,
      code: str = "PROVIDER_ERROR",
      status_code: int = 502,
      provider_status: int = 0,
  ):
    self.service = service
    self.provider_status = provider_status
    super().__init__(message, code=code, status_code=status_code)


class ProviderRequestError(ProviderError):
  """A provider rejected the request with a 4xx. Never retried."""

  def __init__(self, service: str, provider_status: int):
    super().__init__(
        f"{service} rejected the request",
        service,
        code="PROVIDER_REJECTED",
        status_code=502,
        provider_status=provider_status,
    )


class TransientProviderError(ProviderError):
  """A single attempt failed with a 5xx, timeout or connection error."""

  def __init__(self, service: str, provider_status: int = 0):
    super().__init__(
        f"{service} is temporarily unavailable",
        service,
        code="PROVIDER_UNAVAILABLE",
        status_code=503,
        provider_status=provider_status,
    )


class ProviderUnavailableError(TransientProviderError):
  """All retry attempts against a provider were exhausted."""


class ProviderNotConfiguredError(ProviderError):
  """A money-moving call reached a provider with no credentials."""

  def __init__(self, service: str):
    super().__init__(
        f"{service} is not configured",
        service,
        code="PROVIDER_NOT_CONFIGURED",
        status_code=503,
    )


class ProviderBadResponseError(ProviderError):
  """A provider answered successfully with a body we cannot use."""

  def __init__(self, service: str, operation: str):
    super().__init__(
        f"{service} returned an unexpected response to {operation}",
        service,
        code="PROVIDER_BAD_RESPONSE",
    )
