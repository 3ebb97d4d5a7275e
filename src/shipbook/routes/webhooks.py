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

"""Inbound provider webhooks."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Request
from shipbook import dependencies
from shipbook.models import WebhookReceipt
from shipbook.services.webhook_service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/{source}",
    response_model=WebhookReceipt,
    operation_id="receive_webhook",
)
async def receive_webhook(
    request: Request,
    source: str = Path(...),
    webhook_service: WebhookService = Depends(
        dependencies.get_webhook_service
    ),
) -> WebhookReceipt:
  """Receive a signed carrier or payment event.

  The signature is checked against the raw body, so the body is read before
  any JSON decoding.
  """
  raw_body = await request.body()
  signature = request.headers.get(webhook_service.signature_header(source))
  return await webhook_service.receive(source, signature, raw_body)
