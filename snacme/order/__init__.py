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
"""
Drives a single ACME order from creation to certificate download. The order and authorization resources are polled
and each polled status is fed through a pure transition function that decides the next step.
"""
import concurrent.futures
import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .. import errors
from .. import tools
from ..jws import JWSSigner, b64, dns01_txt_value
from ..provisioner import DNSChallengeProvisioner
from ..transport import ACMETransport, ACMEResponse, PEM_CHAIN_CONTENT_TYPE

CHALLENGE_TYPE = "dns-01"
logger = logging.getLogger(__name__)


class OrderStatus(enum.Enum):
    """Order statuses (RFC 8555 Section 7.1.6)."""
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"

    @classmethod
    def parse(cls, value: str) -> "OrderStatus":
        # Anything the client does not understand is treated as a failure
        try:
            return cls(value)
        except ValueError:
            return cls.INVALID


class AuthorizationStatus(enum.Enum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @classmethod
    def parse(cls, value: str) -> "AuthorizationStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.INVALID


class Step(enum.Enum):
    """What the orchestrator does next after observing a resource status."""
    WAIT = "wait"
    PROCEED = "proceed"
    FINALIZE = "finalize"
    DOWNLOAD = "download"
    FAIL = "fail"


def authorization_transition(status: AuthorizationStatus) -> Step:
    """Maps a polled authorization status to the next step."""
    if status is AuthorizationStatus.PENDING:
        return Step.WAIT
    if status is AuthorizationStatus.VALID:
        return Step.PROCEED
    return Step.FAIL


def order_transition(status: OrderStatus, finalized: bool) -> Step:
    """
    Maps a polled order status to the next step.

    Args:
        status (OrderStatus): The order status reported by the server.
        finalized (bool): Whether the finalize request has already been sent for this order.
    """
    if status is OrderStatus.READY:
        return Step.WAIT if finalized else Step.FINALIZE
    if status in (OrderStatus.PENDING, OrderStatus.PROCESSING):
        return Step.WAIT
    if status is OrderStatus.VALID:
        # A certificate we did not finalize would not match our private key
        return Step.DOWNLOAD if finalized else Step.FAIL
    return Step.FAIL


@dataclass(frozen=True)
class Target:
    """One requested domain: the identifier sent to the CA and where its challenge record lives."""
    domain: str
    root: str
    record_name: str

    @property
    def authorization_domain(self) -> str:
        """The identifier value the CA reports in the authorization (wildcards are reported without `*.`)."""
        return tools.strip_wildcard(self.domain)


@dataclass
class Challenge:
    type: str
    url: str
    token: str
    status: str = "pending"
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, jobj: dict) -> "Challenge":
        return cls(
            type=jobj.get("type", ""),
            url=jobj.get("url", ""),
            token=jobj.get("token", ""),
            status=jobj.get("status", "pending"),
            error=jobj.get("error")
        )


@dataclass
class Authorization:
    url: str
    domain: str
    status: AuthorizationStatus
    challenges: List[Challenge] = field(default_factory=list)
    wildcard: bool = False

    @classmethod
    def from_json(cls, url: str, jobj: dict) -> "Authorization":
        return cls(
            url=url,
            domain=jobj.get("identifier", {}).get("value", ""),
            status=AuthorizationStatus.parse(jobj.get("status", "")),
            challenges=[Challenge.from_json(chall) for chall in jobj.get("challenges", [])],
            wildcard=bool(jobj.get("wildcard", False))
        )

    def dns_challenge(self) -> Challenge:
        """
        Selects the DNS-01 challenge offered for this authorization.

        Raises:
            snacme.errors.ChallengeUnavailable: When the server did not offer a DNS-01 challenge.
        """
        for challenge in self.challenges:
            if challenge.type == CHALLENGE_TYPE:
                return challenge
        raise errors.ChallengeUnavailable(f"No {CHALLENGE_TYPE} challenge offered for '{self.domain}'.")

    def failure_reason(self) -> str:
        """Describes why the authorization is not valid, preferring the challenge error reported by the server."""
        for challenge in self.challenges:
            if challenge.error:
                return challenge.error.get("detail") or challenge.error.get("type") or str(challenge.error)
        return f"authorization is {self.status.value}"


@dataclass
class Order:
    url: str
    status: OrderStatus
    authorizations: List[str]
    finalize: str
    certificate: Optional[str] = None
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, url: str, jobj: dict) -> "Order":
        return cls(
            url=url,
            status=OrderStatus.parse(jobj.get("status", "")),
            authorizations=list(jobj.get("authorizations", [])),
            finalize=jobj.get("finalize", ""),
            certificate=jobj.get("certificate"),
            error=jobj.get("error")
        )


@dataclass
class PollSettings:
    """
    Timing used while waiting on the CA and on DNS. All values are in seconds.

    `propagation_timeout` applies to each TXT record while the records of an order are awaited concurrently.
    `authorization_timeout` applies to each authorization. Authorizations are polled one after another once every
    challenge has been answered, so an order with N pending authorizations may wait up to N times that value.
    """
    interval: float = 5
    backoff: float = 1.5
    max_interval: float = 60
    authorization_timeout: float = 300
    order_timeout: float = 300
    propagation_timeout: float = 300
    max_workers: int = 4

    def delays(self):
        """Yields successive delays, growing by `backoff` up to `max_interval`."""
        delay = self.interval
        while True:
            yield delay
            delay = min(delay * self.backoff, self.max_interval)


@dataclass
class _PendingAuthorization:
    authorization: Authorization
    challenge: Challenge
    target: Target
    value: str


class OrderOrchestrator:
    """Runs the ACME order state machine for one certificate."""

    def __init__(
            self,
            transport: ACMETransport,
            signer: JWSSigner,
            provisioner: DNSChallengeProvisioner,
            settings: PollSettings = None
    ) -> None:
        self.transport = transport
        self.signer = signer
        self.provisioner = provisioner
        self.settings = settings if settings else PollSettings()

    def issue(self, targets: List[Target], csr: bytes) -> str:
        """
        Obtains a certificate for the given targets.

        Args:
            targets (list): The domains to include in the certificate.
            csr (bytes): The DER encoded certificate signing request.

        Returns:
            str: The PEM encoded certificate chain.

        Raises:
            snacme.errors.AuthorizationFailed: When a domain could not be validated.
            snacme.errors.OrderFailed: When the server marks the order invalid.
            snacme.errors.ACMETimeout: When the order is not issued within the order timeout.
        """
        if not isinstance(csr, bytes) or not csr:
            raise errors.InvalidCSR("CSR must be non-empty DER bytes.")

        order = self.create_order(targets)
        published = []
        try:
            self.authorize(order, targets, published)
            order = self.finalize(order, csr)
            return self.download(order)
        finally:
            self.cleanup(published)

    def create_order(self, targets: List[Target]) -> Order:
        """Sends `newOrder` for every target domain."""
        payload = {"identifiers": [{"type": "dns", "value": target.domain} for target in targets]}
        response = self.transport.post(self.transport.get_directory().new_order, payload)

        if response.status_code != 201 or not response.location:
            raise errors.OrderFailed(f"Unexpected newOrder response (status {response.status_code}).")

        order = Order.from_json(response.location, response.json())
        logger.info("Created order %s for %s", order.url, [target.domain for target in targets])
        return order

    def authorize(self, order: Order, targets: List[Target], published: list) -> None:
        """
        Completes every authorization of the order. TXT records are published concurrently; each challenge is only
        answered once its own record has propagated. Returns when all authorizations are valid.

        Args:
            published (list): Receives `(root, record_name)` for every record handed to the provisioner.
        """
        by_domain = {target.authorization_domain: target for target in targets}
        pending = []

        for url in order.authorizations:
            authorization = Authorization.from_json(url, self.transport.post(url).json())
            step = authorization_transition(authorization.status)
            if step is Step.PROCEED:
                logger.info("Authorization for %s is already valid", authorization.domain)
                continue
            if step is Step.FAIL:
                raise errors.AuthorizationFailed(authorization.domain, authorization.failure_reason())

            target = by_domain.get(authorization.domain)
            if target is None:
                raise errors.OrderFailed(f"Server returned an authorization for unrequested '{authorization.domain}'.")

            challenge = authorization.dns_challenge()
            value = dns01_txt_value(challenge.token, self.signer.thumbprint)
            pending.append(_PendingAuthorization(authorization, challenge, target, value))

        if not pending:
            return

        self._provision_and_answer(pending, published)
        for item in pending:
            self.poll_authorization(item.authorization)

    def _provision_and_answer(self, pending: List[_PendingAuthorization], published: list) -> None:
        lock = threading.Lock()

        def provision(item):
            with lock:
                published.append((item.target.root, item.target.record_name))
            self.provisioner.publish(item.target.root, item.target.record_name, item.value)
            propagated = self.provisioner.await_propagation(
                item.target.root, item.target.record_name, item.value, self.settings.propagation_timeout
            )
            if not propagated:
                raise errors.DnsPropagationTimeout(
                    f"TXT record {item.target.record_name}.{item.target.root} did not propagate within "
                    f"{self.settings.propagation_timeout} seconds"
                )

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, min(self.settings.max_workers, len(pending)))
        )
        try:
            futures = {executor.submit(provision, item): item for item in pending}
            for future in concurrent.futures.as_completed(futures):
                item = futures[future]
                try:
                    future.result()
                except (errors.DnsPropagationTimeout, errors.DNSProviderError) as err:
                    raise errors.AuthorizationFailed(item.authorization.domain, err.message) from err

                # The record is visible; only now tell the CA to validate it
                logger.info("Answering %s challenge for %s", CHALLENGE_TYPE, item.authorization.domain)
                self.transport.post(item.challenge.url, {})
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def poll_authorization(self, authorization: Authorization) -> Authorization:
        """
        Polls an authorization until it leaves the pending state.

        Raises:
            snacme.errors.AuthorizationFailed: When the authorization becomes invalid or stays pending too long.
        """
        try:
            authorization, step = self._poll(
                authorization.url,
                lambda response: Authorization.from_json(authorization.url, response.json()),
                lambda resource: authorization_transition(resource.status),
                self.settings.authorization_timeout
            )
        except errors.ACMETimeout as err:
            raise errors.AuthorizationFailed(authorization.domain, err.message) from err

        if step is Step.FAIL:
            raise errors.AuthorizationFailed(authorization.domain, authorization.failure_reason())

        logger.info("Authorization for %s is valid", authorization.domain)
        return authorization

    def finalize(self, order: Order, csr: bytes) -> Order:
        """
        Waits for the order to become ready, submits the CSR and waits for the certificate to be issued.

        Returns:
            snacme.order.Order: The valid order holding the certificate URL.
        """
        finalized = False
        response = None
        deadline = time.monotonic() + self.settings.order_timeout
        delays = self.settings.delays()

        while True:
            step = order_transition(order.status, finalized)

            if step is Step.FINALIZE:
                logger.info("Finalizing order %s", order.url)
                response = self.transport.post(order.finalize, {"csr": b64(csr)})
                order = Order.from_json(order.url, response.json())
                finalized = True
                continue
            if step is Step.DOWNLOAD:
                if not order.certificate:
                    raise errors.OrderFailed(f"Order {order.url} is valid but has no certificate URL.")
                return order
            if step is Step.FAIL:
                detail = (order.error or {}).get("detail", f"order is {order.status.value}")
                raise errors.OrderFailed(f"Order {order.url} failed: {detail}")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise errors.ACMETimeout(
                    f"Order {order.url} was not issued within {self.settings.order_timeout} seconds."
                )
            response = self._wait_and_fetch(order.url, next(delays), remaining, response)
            order = Order.from_json(order.url, response.json())

    def download(self, order: Order) -> str:
        """
        Downloads the PEM certificate chain of a valid order.

        Raises:
            snacme.errors.InvalidCertificate: When the server does not return a PEM certificate chain.
        """
        response = self.transport.post(order.certificate, accept=PEM_CHAIN_CONTENT_TYPE)
        certificate = response.text
        if not certificate.lstrip().startswith("-----BEGIN CERTIFICATE-----"):
            raise errors.InvalidCertificate(f"Certificate at {order.certificate} is not a PEM certificate chain.")

        logger.info("Downloaded certificate from %s", order.certificate)
        return certificate

    def cleanup(self, published: list) -> None:
        """Removes every published TXT record. Never raises."""
        for root, record_name in dict.fromkeys(published):
            self.provisioner.cleanup(root, record_name)

    def _poll(self, url: str, parse: Callable, transition: Callable, timeout: float) -> tuple:
        """
        Fetches a resource until its transition is no longer `Step.WAIT`.

        Returns:
            tuple: The last parsed resource and its step.

        Raises:
            snacme.errors.ACMETimeout: When the resource is still waiting after `timeout` seconds.
        """
        deadline = time.monotonic() + timeout
        delays = self.settings.delays()
        response = self.transport.post(url)

        while True:
            resource = parse(response)
            step = transition(resource)
            if step is not Step.WAIT:
                return resource, step

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise errors.ACMETimeout(f"{url} did not leave its pending state within {timeout} seconds.")
            response = self._wait_and_fetch(url, next(delays), remaining, response)

    def _wait_and_fetch(
            self,
            url: str,
            delay: float,
            remaining: float,
            previous: Optional[ACMEResponse]
    ) -> ACMEResponse:
        # The server's Retry-After hint wins over our own backoff
        hint = previous.retry_after if previous is not None else None
        time.sleep(min(hint if hint is not None else delay, remaining))
        return self.transport.post(url)
