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

"""Payment gateway redirect callbacks."""

import logging
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from fastapi import Request
from shipbook import dependencies
from shipbook.exceptions import ResourceNotFoundError
from shipbook.models import PaymentCallbackResponse
from shipbook.services.checkout_service import CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get(
    "/{provider}/callback",
    response_model=PaymentCallbackResponse,
    operation_id="payment_callback",
)
async def payment_callback(
    request: Request,
    provider: str = Path(...),
    payment_id: str = Query(..., alias="id", min_length=1),
    status: Optional[str] = Query(None),
    message: Optional[str] = Query(None),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> PaymentCallbackResponse:
  """Reconcile a shipment after the customer returns from the gateway.

  `status` and `message` come from the customer's browser and are only
  logged; the payment is verified with the provider.
  """
  if provider.lower() != request.app.state.payment_gateway.name:
    raise ResourceNotFoundError(f"Unknown payment provider: {provider}")
  logger.info(
      "Payment callback for %s: reported %s (%s)", payment_id, status, message
  )
  return await checkout_service.handle_payment_callback(payment_id)
