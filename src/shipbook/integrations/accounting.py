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

"""Accounting collaborator that receives paid invoices."""

import abc
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


class AccountingSync(abc.ABC):
  """Pushes invoices to an external books system."""

  name: str = ""

  @abc.abstractmethod
  async def sync_invoice(self, invoice: Dict[str, Any]) -> None:
    """Records one paid invoice. Raises on failure."""


class LoggingAccountingSync(AccountingSync):
  """Default sink used when no books system is connected."""

  name = "log"

  async def sync_invoice(self, invoice: Dict[str, Any]) -> None:
    logger.info(
        "Invoice %s for shipment %s: %s %s (%s)",
        invoice.get("invoice_number"),
        invoice.get("shipment_id"),
        invoice.get("amount"),
        invoice.get("currency"),
        invoice.get("status"),
    )
