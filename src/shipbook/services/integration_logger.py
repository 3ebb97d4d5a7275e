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

"""Persistent audit trail of calls to external providers.

Every outbound attempt is written to the `integration_logs` table in a session
of its own, so entries survive even when the business transaction that made
the call is rolled back. Payloads are masked before they are stored.
"""

import json
import logging
from typing import Any, Callable, Optional

from shipbook import db
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_PAYLOAD_CHARS = 4000
MASK = "***"

# Compared after lower-casing and dropping "_" and "-".
SENSITIVE_KEYS = frozenset({
    "accesstoken",
    "refreshtoken",
    "token",
    "clientsecret",
    "secret",
    "secretkey",
    "password",
    "apikey",
    "authorization",
    "cvc",
    "cvv",
    "cardnumber",
})


def _normalize_key(key: str) -> str:
  return key.lower().replace("_", "").replace("-", "")


def mask_sensitive(data: Any) -> Any:
  """Returns a copy of `data` with secret-bearing values replaced."""
  if isinstance(data, dict):
    masked = {}
    for key, value in data.items():
      if isinstance(key, str) and _normalize_key(key) in SENSITIVE_KEYS:
        masked[key] = MASK
      else:
        masked[key] = mask_sensitive(value)
    return masked
  if isinstance(data, (list, tuple)):
    return [mask_sensitive(item) for item in data]
  return data


def serialize_payload(payload: Any) -> Optional[str]:
  """Masks and truncates a payload for storage."""
  if payload is None:
    return None
  if isinstance(payload, bytes):
    payload = payload.decode("utf-8", errors="replace")
  if isinstance(payload, str):
    try:
      payload = json.loads(payload)
    except ValueError:
      return payload[:MAX_PAYLOAD_CHARS]
  text = json.dumps(mask_sensitive(payload), default=str)
  return text[:MAX_PAYLOAD_CHARS]


class IntegrationLogger:
  """Writes integration log entries through an independent session."""

  def __init__(
      self, session_factory: Optional[Callable[[], AsyncSession]] = None
  ):
    self._session_factory = session_factory

  async def record(
      self,
      service: str,
      operation: str,
      request_payload: Any = None,
      response_payload: Any = None,
      status_code: int = 0,
      duration_ms: int = 0,
      success: bool = False,
      error_message: Optional[str] = None,
  ) -> None:
    """Appends one entry. Never raises."""
    if not success:
      logger.warning(
          "%s %s failed (status %s): %s",
          service,
          operation,
          status_code,
          error_message,
      )
    if self._session_factory is None:
      return
    try:
      async with self._session_factory() as session:
        await db.add_integration_log(
            session,
            service=service,
            operation=operation,
            request_payload=serialize_payload(request_payload),
            response_payload=serialize_payload(response_payload),
            status_code=status_code,
            duration_ms=duration_ms,
            success=success,
            error_message=error_message,
        )
        await session.commit()
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception("Failed to write integration log for %s", service)
