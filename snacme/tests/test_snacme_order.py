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
"""Tests the order state machine of the snacme.order module against a scripted ACME server."""
import re
import unittest
from unittest import mock

import requests_mock

from snacme import errors
from snacme.account import AccountManager
from snacme.jws import JWSSigner, b64
from snacme.order import (
    AuthorizationStatus,
    OrderOrchestrator,
    OrderStatus,
    PollSettings,
    Step,
    Target,
    authorization_transition,
    order_transition,
)
from snacme.tests.tools import DIRECTORY_URL, FAKE_CHAIN, FakeCA, FakeProvisioner
from snacme.tools import challenge_record_name
from snacme.transport import ACMEResponse, ACMETransport

CSR = b"0\x82\x01\x0cfake-der-csr"


def target(host: str, root: str) -> Target:
    """Builds a target the way the configuration does for `host` below `root`."""
    domain = root if host == "." else f"{host}.{root}"
    return Target(domain, root, challenge_record_name(host))


class TestTransitions(unittest.TestCase):
    """Checks the pure status transition functions."""

    def test_authorization_transition(self):
        """Checks the step chosen for every authorization status."""
        self.assertIs(authorization_transition(AuthorizationStatus.PENDING), Step.WAIT)
        self.assertIs(authorization_transition(AuthorizationStatus.VALID), Step.PROCEED)
        for status in ("invalid", "expired", "deactivated", "revoked"):
            self.assertIs(authorization_transition(AuthorizationStatus(status)), Step.FAIL)

    def test_order_transition(self):
        """Checks the step chosen for every order status before and after finalizing."""
        self.assertIs(order_transition(OrderStatus.PENDING, False), Step.WAIT)
        self.assertIs(order_transition(OrderStatus.READY, False), Step.FINALIZE)
        self.assertIs(order_transition(OrderStatus.READY, True), Step.WAIT)
        self.assertIs(order_transition(OrderStatus.PROCESSING, True), Step.WAIT)
        self.assertIs(order_transition(OrderStatus.VALID, True), Step.DOWNLOAD)
        self.assertIs(order_transition(OrderStatus.VALID, False), Step.FAIL)
        self.assertIs(order_transition(OrderStatus.INVALID, False), Step.FAIL)
        self.assertIs(order_transition(OrderStatus.INVALID, True), Step.FAIL)

    def test_unknown_status(self):
        """Checks that statuses the client does not know are treated as invalid."""
        self.assertIs(OrderStatus.parse("exploded"), OrderStatus.INVALID)
        self.assertIs(AuthorizationStatus.parse(""), AuthorizationStatus.INVALID)

    def test_poll_delays(self):
        """Checks that polling delays back off up to the maximum interval."""
        delays = PollSettings(interval=2, backoff=2, max_interval=5).delays()
        self.assertEqual([next(delays) for _ in range(4)], [2, 4, 5, 5])


class TestOrderOrchestrator(unittest.TestCase):
    """Drives complete orders through a scripted ACME server."""

    def setUp(self):
        self.mocker = requests_mock.Mocker()
        self.mocker.start()
        self.addCleanup(self.mocker.stop)
        sleep_patcher = mock.patch("snacme.order.time.sleep")
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

        self.provisioner = FakeProvisioner()
        self.signer = JWSSigner.generate()
        self.transport = ACMETransport(DIRECTORY_URL, self.signer)
        self.settings = PollSettings(interval=1, authorization_timeout=60, order_timeout=60, propagation_timeout=60)

    def _orchestrator(self, **ca_options) -> tuple:
        fake_ca = FakeCA(self.mocker, self.provisioner, **ca_options)
        AccountManager().get_or_create_account(self.transport, self.signer)
        return fake_ca, OrderOrchestrator(self.transport, self.signer, self.provisioner, self.settings)

    def test_single_domain(self):
        """Checks a full order moving through pending, ready, processing and valid."""
        fake_ca, orchestrator = self._orchestrator()

        chain = orchestrator.issue([target("www", "example.test")], CSR)

        self.assertEqual(chain, FAKE_CHAIN)
        self.assertEqual(fake_ca.order_statuses, ["pending", "ready", "processing", "valid"])
        self.assertEqual(fake_ca.order()["csr"], b64(CSR))
        self.assertEqual(fake_ca.log[1], ("/new-order", {"identifiers": [{"type": "dns", "value": "www.example.test"}]}))

        # The record is gone once the certificate is issued
        self.assertEqual(self.provisioner.published, [("example.test", "_acme-challenge.www")])
        self.assertEqual(self.provisioner.removed, [("example.test", "_acme-challenge.www")])
        self.assertEqual(self.provisioner.records, {})
        self.assertTrue(self.sleep.called)

    def test_multiple_domains(self):
        """Checks that several roots and hosts share one order and finalize only after every authorization."""
        fake_ca, orchestrator = self._orchestrator()
        targets = [target("a", "root1.test"), target("b", "root1.test"), target(".", "root2.test")]

        orchestrator.issue(targets, CSR)

        paths = fake_ca.paths()
        self.assertEqual(paths.count("/new-order"), 1)
        self.assertEqual(len(fake_ca.authorizations), 3)
        self.assertEqual(len([path for path in paths if path.startswith("/chall/")]), 3)
        self.assertTrue(all(authz["status"] == "valid" for authz in fake_ca.authorizations.values()))

        finalize_index = next(i for i, path in enumerate(paths) if path.endswith("/finalize"))
        last_answer = max(i for i, path in enumerate(paths) if path.startswith("/chall/"))
        self.assertGreater(finalize_index, last_answer)
        self.assertCountEqual(self.provisioner.removed, [
            ("root1.test", "_acme-challenge.a"),
            ("root1.test", "_acme-challenge.b"),
            ("root2.test", "_acme-challenge"),
        ])

    def test_wildcard_domain(self):
        """Checks that a wildcard is validated through the authorization of its base domain."""
        fake_ca, orchestrator = self._orchestrator()

        orchestrator.issue([Target("*.example.test", "example.test", "_acme-challenge")], CSR)

        authz = next(iter(fake_ca.authorizations.values()))
        self.assertEqual(authz["domain"], "example.test")
        self.assertTrue(authz["wildcard"])
        self.assertEqual(self.provisioner.removed, [("example.test", "_acme-challenge")])

    def test_invalid_authorization(self):
        """Checks that one failed domain aborts the order and both records are still removed."""
        fake_ca, orchestrator = self._orchestrator(invalid_domains=("b.example.test",))

        with self.assertRaises(errors.AuthorizationFailed) as context:
            orchestrator.issue([target("a", "example.test"), target("b", "example.test")], CSR)

        self.assertEqual(context.exception.domain, "b.example.test")
        self.assertEqual(context.exception.reason, "Incorrect TXT record")
        self.assertFalse(any(path.endswith("/finalize") for path in fake_ca.paths()))
        self.assertCountEqual(self.provisioner.removed, [
            ("example.test", "_acme-challenge.a"),
            ("example.test", "_acme-challenge.b"),
        ])
        self.assertEqual(self.provisioner.records, {})

    def test_propagation_timeout(self):
        """Checks that a record that never propagates is not answered, the order is not finalized and is cleaned up."""
        self.provisioner.propagates = False
        self.settings.propagation_timeout = 0
        fake_ca, orchestrator = self._orchestrator()

        with self.assertRaises(errors.AuthorizationFailed) as context:
            orchestrator.issue([target("www", "example.test")], CSR)

        self.assertEqual(context.exception.domain, "www.example.test")
        self.assertIsInstance(context.exception.__cause__, errors.DnsPropagationTimeout)
        self.assertFalse(any(path.startswith("/chall/") for path in fake_ca.paths()))
        self.assertFalse(any(path.endswith("/finalize") for path in fake_ca.paths()))
        self.assertEqual(self.provisioner.removed, [("example.test", "_acme-challenge.www")])

    def test_dns_provider_failure(self):
        """Checks that a DNS provider refusing the record fails the domain without answering the challenge."""
        self.provisioner.failing_roots.add("example.test")
        fake_ca, orchestrator = self._orchestrator()

        with self.assertRaises(errors.AuthorizationFailed) as context:
            orchestrator.issue([target("www", "example.test")], CSR)

        self.assertIsInstance(context.exception.__cause__, errors.DNSProviderError)
        self.assertFalse(any(path.startswith("/chall/") for path in fake_ca.paths()))

    def test_authorization_timeout(self):
        """Checks that an authorization stuck in pending fails once its timeout is reached."""
        self.settings.authorization_timeout = 0
        fake_ca, orchestrator = self._orchestrator(authz_pending_polls=100)

        with self.assertRaises(errors.AuthorizationFailed) as context:
            orchestrator.issue([target("www", "example.test")], CSR)

        self.assertIsInstance(context.exception.__cause__, errors.ACMETimeout)
        self.assertFalse(any(path.endswith("/finalize") for path in fake_ca.paths()))
        self.assertEqual(self.provisioner.records, {})

    def test_order_timeout(self):
        """Checks that an order not issued within the order timeout raises ACMETimeout."""
        self.settings.order_timeout = 0
        _, orchestrator = self._orchestrator(processing_polls=100)

        with self.assertRaises(errors.ACMETimeout):
            orchestrator.issue([target("www", "example.test")], CSR)
        self.assertEqual(self.provisioner.records, {})

    def test_invalid_certificate(self):
        """Checks that a certificate download that is not a PEM chain is rejected."""
        _, orchestrator = self._orchestrator()
        self.mocker.post(re.compile(r"https://acme\.test/cert/.*"), text="<html>oops</html>")

        with self.assertRaises(errors.InvalidCertificate):
            orchestrator.issue([target("www", "example.test")], CSR)

    def test_invalid_csr(self):
        """Checks that the CSR must be non-empty DER bytes before an order is created."""
        fake_ca, orchestrator = self._orchestrator()

        with self.assertRaises(errors.InvalidCSR):
            orchestrator.issue([target("www", "example.test")], b"")
        with self.assertRaises(errors.InvalidCSR):
            orchestrator.issue([target("www", "example.test")], "-----BEGIN CERTIFICATE REQUEST-----")
        self.assertNotIn("/new-order", fake_ca.paths())

    def test_retry_after(self):
        """Checks that the server's Retry-After hint replaces the backoff delay, capped by the time left."""
        transport = mock.Mock()
        orchestrator = OrderOrchestrator(transport, self.signer, self.provisioner, self.settings)
        previous = ACMEResponse(200, b"{}", None, {"Retry-After": "3"})

        orchestrator._wait_and_fetch("https://acme.test/order/1", 10, 60, previous)  # pylint: disable=protected-access
        self.sleep.assert_called_with(3.0)
        orchestrator._wait_and_fetch("https://acme.test/order/1", 10, 2, previous)  # pylint: disable=protected-access
        self.sleep.assert_called_with(2)
        orchestrator._wait_and_fetch("https://acme.test/order/1", 10, 60, None)  # pylint: disable=protected-access
        self.sleep.assert_called_with(10)
        transport.post.assert_called_with("https://acme.test/order/1")


if __name__ == "__main__":
    unittest.main()
