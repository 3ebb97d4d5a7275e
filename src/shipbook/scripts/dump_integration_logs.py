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

"""Utility script to dump the integration audit trail.

This script prints the calls made to carriers and payment gateways, newest
first, for manual reconciliation. Payloads are stored masked.

Usage:
  python -m shipbook.scripts.dump_integration_logs --db_path=... \
      [--service=fedex] [--failures_only] [--show_payloads]
"""

import asyncio
import json
import sys

from absl import app as absl_app
from absl import flags
from shipbook import db

FLAGS = flags.FLAGS
flags.DEFINE_string("db_path", None, "Path to the SQLite database")
flags.DEFINE_string("service", None, "Only show calls to this service")
flags.DEFINE_bool("failures_only", False, "Only show failed calls")
flags.DEFINE_bool("show_payloads", False, "Print request/response payloads")
flags.DEFINE_integer("limit", 100, "Maximum number of entries")


def _print_payload(label: str, payload: str) -> None:
  try:
    # Pretty print JSON if possible
    print(f"  {label}: {json.dumps(json.loads(payload), indent=2)}")
  except (json.JSONDecodeError, TypeError):
    print(f"  {label}: {payload}")


async def dump_logs():
  """Queries the database and prints integration logs."""
  await db.manager.init_db(FLAGS.db_path)
  try:
    async with db.manager.session_factory() as session:
      print("=== INTEGRATION LOGS ===")
      logs = await db.list_integration_logs(
          session,
          service=FLAGS.service,
          failures_only=FLAGS.failures_only,
          limit=FLAGS.limit,
      )
      if not logs:
        print("No integration logs found.")
        return

      for log in logs:
        outcome = "OK" if log.success else "FAILED"
        print(
            f"[{log.timestamp}] {log.service} {log.operation} ->"
            f" {log.status_code} {outcome} ({log.duration_ms} ms)"
        )
        if log.error_message:
          print(f"  Error: {log.error_message}")
        if FLAGS.show_payloads:
          if log.request_payload:
            _print_payload("Request", log.request_payload)
          if log.response_payload:
            _print_payload("Response", log.response_payload)
        print("-" * 40)
  finally:
    await db.manager.close()


def main(argv):
  """Main entry point for the integration log dump script."""
  del argv
  if not FLAGS.db_path:
    print("Error: --db_path is required.")
    sys.exit(1)
  asyncio.run(dump_logs())


if __name__ == "__main__":
  absl_app.run(main)
