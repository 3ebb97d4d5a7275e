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

"""Rate shopping, checkout and shipment routes."""

from typing import List, Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from shipbook import dependencies
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.models import AvailabilityRequest
from shipbook.models import CancelResponse
from shipbook.models import CheckoutRequest
from shipbook.models import CheckoutResponse
from shipbook.models import ConfirmRequest
from shipbook.models import ConfirmResponse
from shipbook.models import RatesResponse
from shipbook.models import ServiceAvailability
from shipbook.models import ShipmentRequest
from shipbook.models import ShipmentView
from shipbook.models import TrackingResult
from shipbook.services.checkout_service import CheckoutService

router = APIRouter(prefix="/shipments", tags=["shipments"])


@router.post(
    "/rates",
    response_model=RatesResponse,
    operation_id="request_rates",
)
async def request_rates(
    shipment_request: ShipmentRequest = Body(...),
    client_account_id: str = Depends(dependencies.client_account_id),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> RatesResponse:
  """Quote every service of the carrier; each quote can be checked out once."""
  return await checkout_service.request_rates(
      client_account_id, shipment_request
  )


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    operation_id="checkout",
)
async def checkout(
    checkout_request: CheckoutRequest = Body(...),
    client_account_id: str = Depends(dependencies.client_account_id),
    idempotency_key: Optional[str] = Depends(
        dependencies.idempotency_header
    ),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutResponse:
  """Select a quote and create its payment."""
  return await checkout_service.checkout(
      checkout_request.quote_id, client_account_id, idempotency_key
  )


@router.post(
    "/confirm",
    response_model=ConfirmResponse,
    operation_id="confirm_shipment",
)
async def confirm(
    confirm_request: ConfirmRequest = Body(...),
    client_account_id: str = Depends(dependencies.client_account_id),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> ConfirmResponse:
  """Book a paid shipment with the carrier."""
  return await checkout_service.confirm(
      confirm_request.shipment_id,
      confirm_request.payment_intent_id,
      client_account_id,
  )


@router.post(
    "/availability",
    response_model=List[ServiceAvailability],
    operation_id="check_service_availability",
)
async def check_availability(
    availability_request: AvailabilityRequest = Body(...),
    client_account_id: str = Depends(dependencies.client_account_id),
    carriers: CarrierRegistry = Depends(dependencies.get_carriers),
) -> List[ServiceAvailability]:
  """List the services offered between two addresses."""
  del client_account_id  # Unused.
  carrier = carriers.get(availability_request.carrier_code)
  return await carrier.check_service_availability(
      availability_request.origin,
      availability_request.destination,
      availability_request.ship_date,
  )


@router.get(
    "/{id}",
    response_model=ShipmentView,
    operation_id="get_shipment",
)
async def get_shipment(
    shipment_id: str = Path(..., alias="id"),
    client_account_id: str = Depends(dependencies.client_account_id),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> ShipmentView:
  return await checkout_service.get_shipment(shipment_id, client_account_id)


@router.get(
    "/{id}/tracking",
    response_model=TrackingResult,
    operation_id="track_shipment",
)
async def track_shipment(
    shipment_id: str = Path(..., alias="id"),
    client_account_id: str = Depends(dependencies.client_account_id),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> TrackingResult:
  return await checkout_service.track(shipment_id, client_account_id)


@router.post(
    "/{id}/cancel",
    response_model=CancelResponse,
    operation_id="cancel_shipment",
)
async def cancel_shipment(
    shipment_id: str = Path(..., alias="id"),
    client_account_id: str = Depends(dependencies.client_account_id),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CancelResponse:
  """Cancel a booked shipment that is not yet in transit. No refund is made."""
  return await checkout_service.cancel(shipment_id, client_account_id)
