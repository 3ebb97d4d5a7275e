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

"""FedEx REST API carrier adapter.

Talks to the FedEx OAuth, address, postal code, availability, rate, ship and
track APIs. All calls go through `IntegrationTransport`, so they are retried
and logged. This adapter never substitutes mock data; see
`FallbackCarrierAdapter` for that.
"""

import asyncio
import datetime
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from shipbook.exceptions import ProviderBadResponseError
from shipbook.exceptions import ProviderError
from shipbook.exceptions import ProviderNotConfiguredError
from shipbook.exceptions import ProviderRequestError
from shipbook.integrations.carriers.base import CarrierAdapter
from shipbook.integrations.carriers.base import parse_shipment_status_event
from shipbook.integrations.token_cache import TokenCache
from shipbook.integrations.transport import IntegrationTransport
from shipbook.models import AddressValidation
from shipbook.models import CarrierBooking
from shipbook.models import CarrierRate
from shipbook.models import PackageDetails
from shipbook.models import PostalCodeValidation
from shipbook.models import ServiceAvailability
from shipbook.models import ShippingAddress
from shipbook.models import TrackingEvent
from shipbook.models import TrackingResult
from shipbook.models import WebhookPayload
from shipbook.money import quantize
from shipbook.services.integration_logger import IntegrationLogger

logger = logging.getLogger(__name__)

SERVICE_NAME = "fedex"

_TRANSIT_WORDS = {
    "ONE_DAY": 1,
    "TWO_DAYS": 2,
    "THREE_DAYS": 3,
    "FOUR_DAYS": 4,
    "FIVE_DAYS": 5,
    "SIX_DAYS": 6,
    "SEVEN_DAYS": 7,
}


def _transit_days(value: Any) -> Optional[int]:
  if isinstance(value, int):
    return value
  if isinstance(value, str):
    if value.isdigit():
      return int(value)
    return _TRANSIT_WORDS.get(value.upper())
  return None


def _address(address: ShippingAddress) -> Dict[str, Any]:
  return {
      "streetLines": list(address.street_lines),
      "city": address.city,
      "stateOrProvinceCode": address.state_or_province,
      "postalCode": address.postal_code,
      "countryCode": address.country_code,
  }


def _party(address: ShippingAddress) -> Dict[str, Any]:
  return {
      "contact": {"personName": address.name, "phoneNumber": address.phone},
      "address": _address(address),
  }


def _package_items(packages: List[PackageDetails]) -> List[Dict[str, Any]]:
  items = []
  for index, package in enumerate(packages):
    item = {
        "sequenceNumber": index + 1,
        "groupPackageCount": package.count,
        "weight": {
            "value": float(package.weight),
            "units": package.weight_unit,
        },
    }
    if package.dimensions:
      dims = package.dimensions
      item["dimensions"] = {
          "length": float(dims.length),
          "width": float(dims.width),
          "height": float(dims.height),
          "units": dims.unit,
      }
    items.append(item)
  return items


class FedExAdapter(CarrierAdapter):
  """Live FedEx carrier."""

  name = "FedEx"
  carrier_code = "FEDEX"
  signature_header = "x-fedex-signature"

  def __init__(
      self,
      client_id: Optional[str],
      client_secret: Optional[str],
      account_number: Optional[str],
      integration_logger: IntegrationLogger,
      base_url: str = "https://apis-sandbox.fedex.com",
      webhook_secret: Optional[str] = None,
      timeout: float = 30.0,
      base_delay: float = 1.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      sleep: Optional[Callable[[float], Awaitable[None]]] = None,
  ):
    self._client_id = client_id
    self._client_secret = client_secret
    self._account_number = account_number
    self._webhook_secret = webhook_secret
    self._http = IntegrationTransport(
        SERVICE_NAME,
        base_url,
        integration_logger,
        timeout=timeout,
        base_delay=base_delay,
        transport=transport,
        sleep=sleep or asyncio.sleep,
    )
    self.tokens = TokenCache(self._fetch_token)

  @property
  def webhook_secret(self) -> Optional[str]:
    return self._webhook_secret

  def is_configured(self) -> bool:
    return bool(
        self._client_id and self._client_secret and self._account_number
    )

  async def _fetch_token(self) -> Tuple[str, int]:
    response = await self._http.request(
        "POST",
        "/oauth/token",
        data={
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        },
    )
    try:
      data = response.json()
      return data["access_token"], int(data.get("expires_in", 3600))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
      raise self._bad_response("/oauth/token") from e

  async def _call(
      self, method: str, path: str, body: Dict[str, Any]
  ) -> Dict[str, Any]:
    """Sends an authenticated API call and returns the decoded body."""
    if not self.is_configured():
      raise ProviderNotConfiguredError(SERVICE_NAME)
    for attempt in range(2):
      token = await self.tokens.get()
      try:
        response = await self._http.request(
            method,
            path,
            json=body,
            headers={"Authorization": f"Bearer {token}", "X-locale": "en_US"},
        )
      except ProviderRequestError as e:
        # A revoked token is refreshed once.
        if e.provider_status == 401 and attempt == 0:
          self.tokens.invalidate()
          continue
        raise
      try:
        return response.json()
      except ValueError as e:
        raise self._bad_response(path) from e
    raise ProviderRequestError(SERVICE_NAME, 401)

  def _bad_response(self, path: str) -> ProviderError:
    logger.error("Unexpected FedEx response from %s", path)
    return ProviderBadResponseError(SERVICE_NAME, path)

  async def validate_address(
      self, address: ShippingAddress
  ) -> AddressValidation:
    path = "/address/v1/addresses/resolve"
    data = await self._call(
        "POST", path, {"addressesToValidate": [{"address": _address(address)}]}
    )
    output = data.get("output") or {}
    resolved = output.get("resolvedAddresses") or []
    return AddressValidation(
        valid=bool(resolved) and resolved[0].get("classification") != "UNKNOWN",
        resolved_addresses=[
            {
                "streetLines": addr.get("streetLinesToken") or [],
                "city": addr.get("city"),
                "stateOrProvince": addr.get("stateOrProvinceCode"),
                "postalCode": addr.get("postalCode"),
                "countryCode": addr.get("countryCode"),
                "residential": addr.get("classification") == "RESIDENTIAL",
            }
            for addr in resolved
        ],
        messages=[a.get("message", "") for a in output.get("alerts") or []],
    )

  async def validate_postal_code(
      self,
      postal_code: str,
      country_code: str,
      state_or_province: Optional[str] = None,
  ) -> PostalCodeValidation:
    data = await self._call(
        "POST",
        "/country/v1/postal/validate",
        {
            "carrierCode": "FDXE",
            "countryCode": country_code,
            "stateOrProvinceCode": state_or_province,
            "postalCode": postal_code,
            "shipDate": datetime.date.today().isoformat(),
        },
    )
    output = data.get("output") or {}
    return PostalCodeValidation(
        valid="cleanedPostalCode" in output,
        location_description=output.get("locationDescription"),
        state_or_province=output.get("stateOrProvinceCode"),
    )

  async def check_service_availability(
      self,
      origin: ShippingAddress,
      destination: ShippingAddress,
      ship_date: Optional[datetime.date] = None,
  ) -> List[ServiceAvailability]:
    requested = {
        "shipper": {"address": _address(origin)},
        "recipients": [{"address": _address(destination)}],
    }
    if ship_date:
      requested["shipDateStamp"] = ship_date.isoformat()
    data = await self._call(
        "POST",
        "/availability/v1/packageandserviceoptions",
        {"requestedShipment": requested},
    )
    options = (data.get("output") or {}).get("packageOptions") or []
    return [
        ServiceAvailability(
            service_type=option.get("serviceType", ""),
            service_name=option.get("serviceDescription")
            or option.get("serviceType", ""),
            transit_days=_transit_days(
                (option.get("transitTime") or {}).get("minimumTransitTime")
            ),
        )
        for option in options
    ]

  async def get_rates(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: Optional[str] = None,
  ) -> List[CarrierRate]:
    requested = {
        "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
        "rateRequestType": ["LIST", "ACCOUNT"],
        "shipper": {"address": _address(shipper)},
        "recipient": {"address": _address(recipient)},
        "requestedPackageLineItems": _package_items(packages),
        "packagingType": packages[0].package_type,
        "totalPackageCount": sum(p.count for p in packages),
    }
    if service_type:
      requested["serviceType"] = service_type
    path = "/rate/v1/rates/quotes"
    data = await self._call(
        "POST",
        path,
        {
            "accountNumber": {"value": self._account_number},
            "requestedShipment": requested,
        },
    )
    try:
      details = data["output"]["rateReplyDetails"]
      rates = []
      for detail in details:
        rated = detail["ratedShipmentDetails"][0]
        operational = detail.get("operationalDetail") or {}
        rates.append(
            CarrierRate(
                carrier_code=self.carrier_code,
                carrier_name=self.name,
                service_type=detail["serviceType"],
                service_name=detail.get("serviceName") or detail["serviceType"],
                currency=rated["currency"],
                base_rate=quantize(rated["totalNetCharge"]),
                transit_days=_transit_days(operational.get("transitTime")),
                estimated_delivery=operational.get("deliveryDate"),
            )
        )
    except (KeyError, IndexError, TypeError) as e:
      raise self._bad_response(path) from e
    return rates

  async def create_shipment(
      self,
      shipper: ShippingAddress,
      recipient: ShippingAddress,
      packages: List[PackageDetails],
      service_type: str,
      label_format: str = "PDF",
      reference: Optional[str] = None,
  ) -> CarrierBooking:
    requested = {
        "shipper": _party(shipper),
        "recipients": [_party(recipient)],
        "serviceType": service_type,
        "packagingType": packages[0].package_type,
        "pickupType": "DROPOFF_AT_FEDEX_LOCATION",
        "shippingChargesPayment": {"paymentType": "SENDER"},
        "labelSpecification": {
            "labelFormatType": label_format,
            "labelStockType": "PAPER_4X6",
        },
        "requestedPackageLineItems": _package_items(packages),
    }
    if reference:
      for item in requested["requestedPackageLineItems"]:
        item["customerReferences"] = [
            {"customerReferenceType": "CUSTOMER_REFERENCE", "value": reference}
        ]
    path = "/ship/v1/shipments"
    data = await self._call(
        "POST",
        path,
        {
            "labelResponseOptions": "URL_ONLY",
            "accountNumber": {"value": self._account_number},
            "requestedShipment": requested,
        },
    )
    try:
      shipment = data["output"]["transactionShipments"][0]
      master = shipment["masterTrackingNumber"]
      pieces = shipment.get("pieceResponses") or [{}]
      documents = pieces[0].get("packageDocuments") or [{}]
      operational = (shipment.get("completedShipmentDetail") or {}).get(
          "operationalDetail"
      ) or {}
    except (KeyError, IndexError, TypeError) as e:
      raise self._bad_response(path) from e
    logger.info("FedEx shipment booked: %s", master)
    return CarrierBooking(
        tracking_number=reference or master,
        carrier_tracking_number=master,
        label_url=documents[0].get("url"),
        label_data=documents[0].get("encodedLabel"),
        estimated_delivery=operational.get("deliveryDate"),
    )

  async def track_shipment(self, tracking_number: str) -> TrackingResult:
    path = "/track/v1/trackingnumbers"
    data = await self._call(
        "POST",
        path,
        {
            "trackingInfo": [
                {"trackingNumberInfo": {"trackingNumber": tracking_number}}
            ],
            "includeDetailedScans": True,
        },
    )
    try:
      result = data["output"]["completeTrackResults"][0]["trackResults"][0]
    except (KeyError, IndexError, TypeError) as e:
      raise self._bad_response(path) from e
    events = []
    for scan in result.get("scanEvents") or []:
      location = scan.get("scanLocation") or {}
      place = None
      if location.get("city"):
        state = location.get("stateOrProvinceCode", "")
        place = f"{location['city']}, {state}"
      events.append(
          TrackingEvent(
              timestamp=scan.get("date", ""),
              status=scan.get("eventType", ""),
              description=scan.get("eventDescription", ""),
              location=place,
          )
      )
    window = (result.get("estimatedDeliveryTimeWindow") or {}).get("window")
    return TrackingResult(
        tracking_number=tracking_number,
        status=(result.get("latestStatusDetail") or {}).get(
            "statusByLocale", "Unknown"
        ),
        events=events,
        estimated_delivery=(window or {}).get("begins"),
        actual_delivery=(result.get("actualDeliveryDetail") or {}).get(
            "actualDeliveryDate"
        ),
    )

  async def cancel_shipment(self, tracking_number: str) -> bool:
    data = await self._call(
        "PUT",
        "/ship/v1/shipments/cancel",
        {
            "accountNumber": {"value": self._account_number},
            "trackingNumber": tracking_number,
        },
    )
    cancelled = bool((data.get("output") or {}).get("cancelledShipment", True))
    logger.info("FedEx cancellation of %s: %s", tracking_number, cancelled)
    return cancelled

  def parse_webhook(self, payload: Dict[str, Any]) -> WebhookPayload:
    return parse_shipment_status_event(payload)
