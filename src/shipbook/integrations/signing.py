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

"""Webhook signing helpers shared by carrier and payment adapters."""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional


def hmac_sha256_hex(secret: str, payload: bytes) -> str:
  return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_hex_signature(
    secret: str, payload: bytes, signature: Optional[str]
) -> bool:
  """Checks a hex HMAC-SHA256 signature in constant time."""
  if not signature:
    return False
  expected = hmac_sha256_hex(secret, payload).encode("ascii")
  received = signature.strip().lower().encode("ascii", "replace")
  return hmac.compare_digest(expected, received)


def payload_digest(payload: Dict[str, Any]) -> str:
  """Stable identifier for a webhook body that carries no event id."""
  body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
  return "sha256:" + hashlib.sha256(body.encode("utf-8")).hexdigest()
