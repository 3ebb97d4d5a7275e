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

"""Shared configuration for the shipment booking server.

Process options are absl flags. Provider credentials come from the
environment (optionally a `.env` file) and decide whether each integration
runs live or falls back to its mock. Everything is collected once into a
`Settings` object that is handed to `server.create_app`.
"""

import os
from typing import Mapping
from typing import Optional

from absl import flags
from dotenv import load_dotenv
from pydantic import BaseModel

FLAGS = flags.FLAGS

SERVER_VERSION = "1.0.0"

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("db_path", None, "Path to the SQLite database")
  flags.DEFINE_string("host", "0.0.0.0", "Interface to bind the server to")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_integer(
      "quote_ttl_seconds", None, "Lifetime of a reserved quote in seconds"
  )
  flags.DEFINE_bool(
      "allow_mock_fallback",
      None,
      "Serve bookings and payments from the mock providers when live"
      " credentials are missing",
  )
  flags.DEFINE_integer(
      "webhook_sweep_interval",
      None,
      "Seconds between webhook retry sweeps; 0 disables the sweeper",
  )
except flags.DuplicateFlagError:
  pass


def _env_bool(value: Optional[str]) -> bool:
  return (value or "").strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
  """Resolved server configuration."""

  db_path: Optional[str] = None
  quote_ttl_seconds: int = 900
  allow_mock_fallback: bool = False
  webhook_sweep_interval: int = 0
  public_base_url: str = "http://localhost:8000"
  request_timeout: float = 30.0
  retry_base_delay: float = 1.0

  fedex_client_id: Optional[str] = None
  fedex_client_secret: Optional[str] = None
  fedex_account_number: Optional[str] = None
  fedex_webhook_secret: Optional[str] = None
  fedex_base_url: str = "https://apis-sandbox.fedex.com"

  payment_provider: str = "moyasar"
  moyasar_secret_key: Optional[str] = None
  moyasar_publishable_key: Optional[str] = None
  moyasar_webhook_secret: Optional[str] = None
  stripe_secret_key: Optional[str] = None
  stripe_webhook_secret: Optional[str] = None

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
    """Builds settings from environment variables.

    Args:
      environ: The variables to read. Defaults to `os.environ` after loading a
        `.env` file from the working directory, if one exists.

    Returns:
      The resolved Settings.
    """
    if environ is None:
      load_dotenv()
      environ = os.environ

    values = {
        "fedex_client_id": environ.get("FEDEX_CLIENT_ID")
        or environ.get("FEDEX_API_KEY"),
        "fedex_client_secret": environ.get("FEDEX_CLIENT_SECRET")
        or environ.get("FEDEX_SECRET_KEY"),
        "fedex_account_number": environ.get("FEDEX_ACCOUNT_NUMBER"),
        "fedex_webhook_secret": environ.get("FEDEX_WEBHOOK_SECRET"),
        "moyasar_secret_key": environ.get("MOYASAR_SECRET_KEY"),
        "moyasar_publishable_key": environ.get("MOYASAR_PUBLISHABLE_KEY"),
        "moyasar_webhook_secret": environ.get("MOYASAR_WEBHOOK_SECRET"),
        "stripe_secret_key": environ.get("STRIPE_SECRET_KEY"),
        "stripe_webhook_secret": environ.get("STRIPE_WEBHOOK_SECRET"),
        "allow_mock_fallback": _env_bool(environ.get("ALLOW_MOCK_FALLBACK")),
    }
    if environ.get("FEDEX_BASE_URL"):
      values["fedex_base_url"] = environ["FEDEX_BASE_URL"]
    if environ.get("PAYMENT_PROVIDER"):
      values["payment_provider"] = environ["PAYMENT_PROVIDER"].lower()
    if environ.get("PUBLIC_BASE_URL"):
      values["public_base_url"] = environ["PUBLIC_BASE_URL"].rstrip("/")
    return cls(**values)

  def with_flags(self) -> "Settings":
    """Returns a copy with any explicitly set command-line flags applied."""
    overrides = {}
    if FLAGS.db_path:
      overrides["db_path"] = FLAGS.db_path
    if FLAGS.quote_ttl_seconds is not None:
      overrides["quote_ttl_seconds"] = FLAGS.quote_ttl_seconds
    if FLAGS.allow_mock_fallback is not None:
      overrides["allow_mock_fallback"] = FLAGS.allow_mock_fallback
    if FLAGS.webhook_sweep_interval is not None:
      overrides["webhook_sweep_interval"] = FLAGS.webhook_sweep_interval
    return self.model_copy(update=overrides)
