# Copyright 2025 Jared Hendrickson
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Tests the DNS challenge provisioners of the snacme.provisioner and snacme.providers modules."""
import unittest
from unittest import mock

import requests_mock

from snacme import errors
from snacme.providers import PorkbunProvisioner
from snacme.provisioner import get_provisioner
from snacme.tests.tools import FakeProvisioner

ENDPOINT = "https://porkbun.test/api/json/v3"
FAKE_PUBLIC = "pk1_fake"
FAKE_SECRET = "sk1_fake"
RECORD = "_acme-challenge.www"
VALUE = "G-8xfPds2qvDProC32UqmRCUpamN1sDQcg3l4729e08"


class TestDNSChallengeProvisioner(unittest.TestCase):
    """Checks the publish, propagation and cleanup behavior shared by all providers."""

    def setUp(self):
        sleep_patcher = mock.patch("snacme.provisioner.time.sleep")
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)
        self.provisioner = FakeProvisioner()

    def test_publish_and_propagation(self):
        """Checks that a published record is observed by the propagation check."""
        self.provisioner.publish("example.test", RECORD, VALUE)

        self.assertEqual(self.provisioner.records, {("example.test", RECORD): VALUE})
        self.assertTrue(self.provisioner.await_propagation("example.test", RECORD, VALUE, timeout=10))
        self.sleep.assert_not_called()

    def test_propagation_retries(self):
        """Checks that the record is queried again, pausing in between, until the value shows up."""
        query = mock.Mock(values=[], last_nameserver="192.0.2.53")
        query.resolve.side_effect = [[], ["stale"], [VALUE]]
        self.provisioner.interval = 2

        with mock.patch.object(self.provisioner, "_query", return_value=query) as make_query:
            self.assertTrue(self.provisioner.await_propagation("example.test", RECORD, VALUE, timeout=60))

        make_query.assert_called_once_with(f"{RECORD}.example.test")
        self.assertEqual(query.resolve.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)
        self.sleep.assert_called_with(2)

    def test_propagation_timeout(self):
        """Checks that the propagation check gives up once the timeout is reached."""
        self.provisioner.propagates = False
        self.provisioner.publish("example.test", RECORD, VALUE)

        with self.assertLogs("snacme.provisioner", level="WARNING"):
            self.assertFalse(self.provisioner.await_propagation("example.test", RECORD, VALUE, timeout=0))

    def test_publish_failure(self):
        """Checks that provider errors raised while publishing reach the caller."""
        self.provisioner.failing_roots.add("example.test")
        with self.assertRaises(errors.DNSProviderError):
            self.provisioner.publish("example.test", RECORD, VALUE)

    def test_cleanup_never_raises(self):
        """Checks that cleanup failures are logged instead of raised."""
        with mock.patch.object(self.provisioner, "_cleanup", side_effect=errors.DNSProviderError("gone")):
            with self.assertLogs("snacme.provisioner", level="WARNING") as logs:
                self.provisioner.cleanup("example.test", RECORD)

        self.assertIn("gone", "\n".join(logs.output))

    def test_registry(self):
        """Checks that providers are looked up by name and misconfiguration is reported."""
        provisioner = get_provisioner("porkbun", public=FAKE_PUBLIC, secret=FAKE_SECRET, nameservers=["192.0.2.53"])
        self.assertIsInstance(provisioner, PorkbunProvisioner)
        self.assertEqual(provisioner.nameservers, ["192.0.2.53"])

        with self.assertRaises(errors.InvalidConfig):
            get_provisioner("not-a-provider")
        with self.assertRaises(errors.InvalidConfig):
            get_provisioner("porkbun", public=FAKE_PUBLIC)


class TestPorkbunProvisioner(unittest.TestCase):
    """Checks the Porkbun API calls made to publish and remove records."""

    def setUp(self):
        self.mocker = requests_mock.Mocker()
        self.mocker.start()
        self.addCleanup(self.mocker.stop)
        self.provisioner = PorkbunProvisioner(FAKE_PUBLIC, FAKE_SECRET, endpoint=ENDPOINT)

    def _register_response(self, path: str, **response):
        self.mocker.post(f"{ENDPOINT}/{path}", json=dict({"status": "SUCCESS"}, **response))

    def _calls(self) -> list:
        return [request.url.split("/v3/", 1)[1] for request in self.mocker.request_history]

    def test_create_record(self):
        """Checks that a missing record is created with the validation value."""
        self._register_response(f"dns/retrieveByNameType/example.test/TXT/{RECORD}", records=[])
        self._register_response("dns/create/example.test", id=106926659)

        self.provisioner.publish("example.test", RECORD, VALUE)

        self.assertEqual(self._calls(), [
            f"dns/retrieveByNameType/example.test/TXT/{RECORD}", "dns/create/example.test"
        ])
        self.assertEqual(self.mocker.last_request.json(), {
            "secretapikey": FAKE_SECRET,
            "apikey": FAKE_PUBLIC,
            "name": RECORD,
            "type": "TXT",
            "content": VALUE,
            "ttl": "600"
        })

    def test_update_record(self):
        """Checks that an existing record holding a different value is edited."""
        self._register_response(f"dns/retrieveByNameType/example.test/TXT/{RECORD}", records=[
            {"id": "1", "name": f"{RECORD}.example.test", "type": "TXT", "content": "old-value", "ttl": "600"}
        ])
        self._register_response(f"dns/editByNameType/example.test/TXT/{RECORD}")

        self.provisioner.publish("example.test", RECORD, VALUE)

        self.assertEqual(len(self.mocker.request_history), 2)
        self.assertEqual(self.mocker.last_request.json()["content"], VALUE)
        self.assertIn("/dns/editByNameType/", self.mocker.last_request.url)

    def test_record_unchanged(self):
        """Checks that a record already holding the value is left alone."""
        self._register_response(f"dns/retrieveByNameType/example.test/TXT/{RECORD}", records=[
            {"id": "1", "name": f"{RECORD}.example.test", "type": "TXT", "content": VALUE, "ttl": "600"}
        ])

        self.provisioner.publish("example.test", RECORD, VALUE)
        self.assertEqual(len(self.mocker.request_history), 1)

    def test_delete_record(self):
        """Checks that cleanup deletes the record by name and type."""
        self._register_response(f"dns/deleteByNameType/example.test/TXT/{RECORD}")

        self.provisioner.cleanup("example.test", RECORD)
        self.assertTrue(self.mocker.last_request.url.endswith(f"/dns/deleteByNameType/example.test/TXT/{RECORD}"))

    def test_api_error(self):
        """Checks that an error status from Porkbun raises DNSProviderError."""
        self.mocker.post(
            f"{ENDPOINT}/dns/retrieveByNameType/example.test/TXT/{RECORD}",
            status_code=400,
            json={"status": "ERROR", "message": "Invalid API key. (002)"}
        )

        with self.assertRaises(errors.DNSProviderError) as context:
            self.provisioner.publish("example.test", RECORD, VALUE)
        self.assertIn("Invalid API key", context.exception.message)

    def test_non_json_response(self):
        """Checks that a response that is not JSON raises DNSProviderError."""
        self.mocker.post(f"{ENDPOINT}/ping", text="<html>Bad Gateway</html>", status_code=502)
        with self.assertRaises(errors.DNSProviderError):
            self.provisioner.ping()

    def test_ping(self):
        """Checks that ping returns the address Porkbun sees."""
        self._register_response("ping", yourIp="203.0.113.7")
        self.assertEqual(self.provisioner.ping(), "203.0.113.7")


if __name__ == "__main__":
    unittest.main()
