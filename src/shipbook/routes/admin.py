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

"""Operator routes for reconciliation.

These expose the integration audit trail and the webhook event log, and let
an operator run the webhook retry sweep on demand.
"""

from typing import List, Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Query
from shipbook import db
from shipbook import dependencies
from shipbook.models import IntegrationLogView
from shipbook.models import RetrySweepResponse
from shipbook.models import WebhookEventView
from shipbook.services.webhook_service import WebhookService
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/integration-logs",
    response_model=List[IntegrationLogView],
    operation_id="list_integration_logs",
)
async def list_integration_logs(
    service: Optional[str] = Query(None),
    failures_only: bool = Query(False, alias="failuresOnly"),
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(dependencies.get_db),
) -> List[IntegrationLogView]:
  logs = await db.list_integration_logs(
      session, service=service, failures_only=failures_only, limit=limit
  )
  return [
      IntegrationLogView.model_validate(log, from_attributes=True)
      for log in logs
  ]


@router.get(
    "/webhook-events",
    response_model=List[WebhookEventView],
    operation_id="list_webhook_events",
)
async def list_webhook_events(
    source: Optional[str] = Query(None),
    pending_only: bool = Query(False, alias="pendingOnly"),
    needs_review: Optional[bool] = Query(None, alias="needsReview"),
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(dependencies.get_db),
) -> List[WebhookEventView]:
  events = await db.list_webhook_events(
      session,
      source=source,
      pending_only=pending_only,
      needs_review=needs_review,
      limit=limit,
  )
  return [
      WebhookEventView.model_validate(e, from_attributes=True) for e in events
  ]


@router.post(
    "/webhooks/retry",
    response_model=RetrySweepResponse,
    operation_id="retry_webhooks",
)
async def retry_webhooks(
    webhook_service: WebhookService = Depends(
        dependencies.get_webhook_service
    ),
) -> RetrySweepResponse:
  """Reprocess every pending event that is not flagged for review."""
  return await webhook_service.retry_pending()
