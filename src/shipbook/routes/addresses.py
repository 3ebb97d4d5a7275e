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

"""Address and postal code validation routes."""

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from shipbook import dependencies
from shipbook.integrations.carriers.registry import CarrierRegistry
from shipbook.models import AddressValidation
from shipbook.models import AddressValidationRequest
from shipbook.models import PostalCodeRequest
from shipbook.models import PostalCodeValidation

router = APIRouter(prefix="/addresses", tags=["addresses"])


@router.post(
    "/validate",
    response_model=AddressValidation,
    operation_id="validate_address",
)
async def validate_address(
    validation_request: AddressValidationRequest = Body(...),
    client_account_id: str = Depends(dependencies.client_account_id),
    carriers: CarrierRegistry = Depends(dependencies.get_carriers),
) -> AddressValidation:
  del client_account_id  # Unused.
  carrier = carriers.get(validation_request.carrier_code)
  return await carrier.validate_address(validation_request.address)


@router.post(
    "/postal-code",
    response_model=PostalCodeValidation,
    operation_id="validate_postal_code",
)
async def validate_postal_code(
    postal_code_request: PostalCodeRequest = Body(...),
    client_account_id: str = Depends(dependencies.client_account_id),
    carriers: CarrierRegistry = Depends(dependencies.get_carriers),
) -> PostalCodeValidation:
  del client_account_id  # Unused.
  carrier = carriers.get(postal_code_request.carrier_code)
  return await carrier.validate_postal_code(
      postal_code_request.postal_code,
      postal_code_request.country_code.upper(),
      postal_code_request.state_or_province,
  )
