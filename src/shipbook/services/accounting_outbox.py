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

"""Fire-and-forget delivery of committed invoices to accounting.

Invoices are queued only after the transaction that created them has
committed. A failed sync is logged and does not affect the shipment; the
invoice remains in the database for manual reconciliation.
"""

import asyncio
import logging
from typing import Any, Dict, Set

from shipbook.integrations.accounting import AccountingSync

logger = logging.getLogger(__name__)


class AccountingOutbox:
  """Runs accounting syncs as background tasks."""

  def __init__(self, sync: AccountingSync):
    self.sync = sync
    self._tasks: Set[asyncio.Task] = set()

  def enqueue(self, invoice: Dict[str, Any]) -> None:
    task = asyncio.get_running_loop().create_task(self._deliver(invoice))
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)

  async def _deliver(self, invoice: Dict[str, Any]) -> None:
    try:
      await self.sync.sync_invoice(invoice)
    except Exception:  # pylint: disable=broad-exception-caught
      logger.exception(
          "Accounting sync (%s) failed for invoice %s",
          self.sync.name,
          invoice.get("invoice_number"),
      )

  @property
  def pending(self) -> int:
    return len(self._tasks)

  async def drain(self) -> None:
    """Waits for every queued sync to finish."""
    if self._tasks:
      await asyncio.gather(*list(self._tasks))
