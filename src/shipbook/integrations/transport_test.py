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

"""Tests for the retrying integration transport and its audit log."""

import asyncio
import json
import os
import shutil
import tempfile

from absl.testing import absltest
import httpx
from shipbook import db
from shipbook import testing
from shipbook.exceptions import ProviderRequestError
from shipbook.exceptions import ProviderUnavailableError
from shipbook.integrations.transport import IntegrationTransport
from shipbook.services import integration_logger
from shipbook.services.integration_logger import IntegrationLogger


class MaskingTest(absltest.TestCase):

  def test_masks_nested_secrets(self) -> None:
    masked = integration_logger.mask_sensitive({
        "client_id": "abc",
        "client_secret": "s3cr3t",
        "auth": {"access_token": "tok", "Authorization": "Bearer tok"},
        "cards": [{"cardNumber": "4111111111111111", "cvc": "123"}],
    })
    self.assertEqual(masked["client_id"], "abc")
    self.assertEqual(masked["client_secret"], "***")
    self.assertEqual(masked["auth"]["access_token"], "***")
    self.assertEqual(masked["auth"]["Authorization"], "***")
    self.assertEqual(masked["cards"][0], {"cardNumber": "***", "cvc": "***"})

  def test_serialize_masks_json_text_and_truncates(self) -> None:
    text = integration_logger.serialize_payload('{"password": "hunter2"}')
    self.assertEqual(json.loads(text), {"password": "***"})
    long_text = integration_logger.serialize_payload("x" * 5000)
    self.assertLen(long_text, integration_logger.MAX_PAYLOAD_CHARS)
    self.assertIsNone(integration_logger.serialize_payload(None))


class IntegrationTransportTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.db_path = os.path.join(self.test_dir, "logs.db")
    self.calls = []
    self.sleeps = []

  def tearDown(self) -> None:
    shutil.rmtree(self.test_dir)
    super().tearDown()

  async def _sleep(self, seconds: float) -> None:
    self.sleeps.append(seconds)

  def _run(self, handler, scenario) -> None:
    def record(request: httpx.Request) -> httpx.Response:
      self.calls.append(request)
      return handler(request)

    async def run() -> None:
      async with testing.temp_database(self.db_path) as manager:
        transport = IntegrationTransport(
            "fedex",
            "https://api.example/",
            IntegrationLogger(manager.session_factory),
            base_delay=1.0,
            transport=httpx.MockTransport(record),
            sleep=self._sleep,
        )
        await scenario(transport)
        async with manager.session_factory() as session:
          self.logs = list(
              reversed(await db.list_integration_logs(session, "fedex"))
          )

    asyncio.run(run())

  def test_success_is_logged_once(self) -> None:
    async def scenario(transport: IntegrationTransport) -> None:
      response = await transport.request("GET", "/ping", params={"a": "1"})
      self.assertEqual(response.json(), {"ok": True})

    self._run(lambda request: httpx.Response(200, json={"ok": True}), scenario)
    self.assertLen(self.calls, 1)
    self.assertEqual(str(self.calls[0].url), "https://api.example/ping?a=1")
    self.assertLen(self.logs, 1)
    self.assertTrue(self.logs[0].success)
    self.assertEqual(self.logs[0].operation, "GET /ping")
    self.assertEqual(self.logs[0].status_code, 200)

  def test_client_error_is_not_retried(self) -> None:
    async def scenario(transport: IntegrationTransport) -> None:
      with self.assertRaises(ProviderRequestError) as cm:
        await transport.request("POST", "/rates", json={"weight": 1})
      self.assertEqual(cm.exception.provider_status, 400)
      self.assertEqual(cm.exception.code, "PROVIDER_REJECTED")

    self._run(
        lambda request: httpx.Response(400, json={"error": "bad"}), scenario
    )
    self.assertLen(self.calls, 1)
    self.assertEmpty(self.sleeps)
    self.assertLen(self.logs, 1)
    self.assertFalse(self.logs[0].success)
    self.assertIn("HTTP 400", self.logs[0].error_message)

  def test_server_errors_retried_three_times(self) -> None:
    async def scenario(transport: IntegrationTransport) -> None:
      with self.assertRaises(ProviderUnavailableError) as cm:
        await transport.request("GET", "/rates")
      self.assertEqual(cm.exception.provider_status, 503)
      self.assertEqual(cm.exception.status_code, 503)

    self._run(lambda request: httpx.Response(503), scenario)
    self.assertLen(self.calls, 3)
    self.assertEqual(self.sleeps, [1.0, 2.0])
    self.assertLen(self.logs, 3)
    self.assertEqual(
        [log.error_message for log in self.logs],
        ["attempt 1: HTTP 503", "attempt 2: HTTP 503", "attempt 3: HTTP 503"],
    )

  def test_rate_limit_then_success(self) -> None:
    responses = [httpx.Response(429), httpx.Response(200, json={"id": 7})]

    async def scenario(transport: IntegrationTransport) -> None:
      response = await transport.request("GET", "/rates")
      self.assertEqual(response.json(), {"id": 7})

    self._run(lambda request: responses.pop(0), scenario)
    self.assertLen(self.calls, 2)
    self.assertEqual([log.success for log in self.logs], [False, True])

  def test_recovers_on_third_attempt(self) -> None:
    responses = [
        httpx.Response(500),
        httpx.Response(500),
        httpx.Response(200, json={"rates": []}),
    ]

    async def scenario(transport: IntegrationTransport) -> None:
      response = await transport.request("POST", "/rates", json={"w": 1})
      self.assertEqual(response.json(), {"rates": []})

    self._run(lambda request: responses.pop(0), scenario)
    self.assertLen(self.calls, 3)
    self.assertEqual(self.sleeps, [1.0, 2.0])
    self.assertLen(self.logs, 3)
    self.assertEqual([log.success for log in self.logs], [False, False, True])
    self.assertEqual(
        [log.status_code for log in self.logs], [500, 500, 200]
    )
    self.assertEqual(
        [log.error_message for log in self.logs],
        ["attempt 1: HTTP 500", "attempt 2: HTTP 500", None],
    )

  def test_connection_errors_are_retried(self) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
      raise httpx.ConnectError("connection refused", request=request)

    async def scenario(transport: IntegrationTransport) -> None:
      with self.assertRaises(ProviderUnavailableError) as cm:
        await transport.request("GET", "/rates")
      self.assertEqual(cm.exception.provider_status, 0)

    self._run(handler, scenario)
    self.assertLen(self.calls, 3)
    self.assertTrue(all(log.status_code == 0 for log in self.logs))
    self.assertIn("ConnectError", self.logs[0].error_message)

  def test_secrets_never_reach_the_log(self) -> None:
    async def scenario(transport: IntegrationTransport) -> None:
      await transport.request(
          "POST",
          "/oauth/token",
          data={"client_id": "id-1", "client_secret": "s3cr3t"},
      )

    self._run(
        lambda request: httpx.Response(
            200, json={"access_token": "tok-123", "expires_in": 3600}
        ),
        scenario,
    )
    log = self.logs[0]
    self.assertNotIn("s3cr3t", log.request_payload)
    self.assertNotIn("tok-123", log.response_payload)
    self.assertEqual(
        json.loads(log.request_payload),
        {"client_id": "id-1", "client_secret": "***"},
    )


if __name__ == "__main__":
  absltest.main()
