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

"""Money helpers. Amounts are persisted in minor units (cents)."""

import datetime
from decimal import Decimal
from decimal import ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def quantize(amount: Number) -> Decimal:
  """Rounds to two decimal places, half-up."""
  return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
  return int(quantize(amount) * 100)


def from_minor_units(amount: int) -> Decimal:
  return (Decimal(amount) / 100).quantize(CENT)


def utcnow() -> datetime.datetime:
  return datetime.datetime.now(datetime.timezone.utc)


def to_iso(value: datetime.datetime) -> str:
  """Formats a timestamp so that string order matches time order."""
  if value.tzinfo is None:
    value = value.replace(tzinfo=datetime.timezone.utc)
  return value.astimezone(datetime.timezone.utc).isoformat(
      timespec="microseconds"
  )
