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

"""Runs one maintenance sweep: webhook retries and quote expiry.

Provider credentials are read from the environment (or `.env`) exactly as the
server reads them, so retried events reach the same live or mock adapters.

Usage:
  python -m shipbook.scripts.sweep_webhooks --db_path=...
"""

import asyncio
import sys

from absl import app as absl_app
from absl import flags
from shipbook import db
from shipbook.config import Settings
from shipbook.integrations.carriers.registry import build_carrier_registry
from shipbook.integrations.payments.registry import build_payment_gateway
from shipbook.services import maintenance
from shipbook.services.integration_logger import IntegrationLogger
from shipbook.services.webhook_service import build_webhook_sources

FLAGS = flags.FLAGS


async def run_sweep():
  """Builds the adapters and runs the sweep once."""
  settings = Settings.from_env().with_flags()
  await db.manager.init_db(settings.db_path)
  try:
    integration_logger = IntegrationLogger(db.manager.session_factory)
    carriers = build_carrier_registry(settings, integration_logger)
    payment_gateway = build_payment_gateway(settings, integration_logger)
    async with db.manager.session_factory() as session:
      result = await maintenance.sweep(
          session,
          settings,
          carriers,
          payment_gateway,
          build_webhook_sources(carriers, payment_gateway),
      )
    print(
        f"Webhooks: {result.webhooks.attempted} attempted,"
        f" {result.webhooks.processed} processed,"
        f" {result.webhooks.flagged_for_review} flagged for review"
    )
    print(f"Expired quotes: {result.expired_quotes}")
    print(f"Stale confirmations failed: {result.stale_confirmations}")
    print(
        "Expired idempotency records purged:"
        f" {result.purged_idempotency_records}"
    )
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the sweep script."""
  del argv
  if not FLAGS.db_path:
    print("Error: --db_path is required.")
    sys.exit(1)
  asyncio.run(run_sweep())


if __name__ == "__main__":
  absl_app.run(main)
