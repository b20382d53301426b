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
"""HTTP transport for signed ACME requests, including replay nonce tracking."""
import datetime
import email.utils
import json
import logging
import threading
from typing import NamedTuple, Optional

import requests

from .. import errors
from ..jws import JWSSigner

# Constants and Variables
JOSE_CONTENT_TYPE = "application/jose+json"
PROBLEM_CONTENT_TYPE = "application/problem+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"
REPLAY_NONCE = "Replay-Nonce"
DEFAULT_TIMEOUT = 30
USER_AGENT = "snacme/1.0"
logger = logging.getLogger(__name__)


class Directory:
    """The immutable set of resource URLs advertised by an ACME server."""
    REQUIRED = ("newNonce", "newAccount", "newOrder", "revokeCert", "keyChange")

    def __init__(self, resources: dict) -> None:
        missing = [name for name in self.REQUIRED if not resources.get(name)]
        if missing:
            raise errors.InvalidDirectory(f"ACME directory is missing resources {missing}.")
        self._resources = dict(resources)

    def __getitem__(self, name: str) -> str:
        return self._resources[name]

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    @property
    def new_nonce(self) -> str:
        return self._resources["newNonce"]

    @property
    def new_account(self) -> str:
        return self._resources["newAccount"]

    @property
    def new_order(self) -> str:
        return self._resources["newOrder"]

    @property
    def revoke_cert(self) -> str:
        return self._resources["revokeCert"]

    @property
    def key_change(self) -> str:
        return self._resources["keyChange"]

    @property
    def meta(self) -> dict:
        return dict(self._resources.get("meta") or {})


class ACMEResponse(NamedTuple):
    """The parts of an ACME server response the client acts on."""
    status_code: int
    body: bytes
    nonce: Optional[str]
    headers: dict

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("Location")

    @property
    def retry_after(self) -> Optional[float]:
        """
        Parses the `Retry-After` header.

        Returns:
            float: Number of seconds the server asked us to wait, or `None` when absent or unparseable.
        """
        value = self.headers.get("Retry-After")
        if not value:
            return None
        if value.strip().isdigit():
            return float(value)

        # Otherwise the value is an HTTP date
        try:
            when = email.utils.parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=datetime.timezone.utc)
        return max(0.0, (when - datetime.datetime.now(datetime.timezone.utc)).total_seconds())

    def json(self) -> dict:
        try:
            return json.loads(self.body)
        except ValueError as err:
            raise errors.AcmeProtocolError(detail=f"Response body is not JSON: {err}", status=self.status_code) from err


class ACMETransport:
    """
    Sends signed requests to an ACME server. The transport owns the single replay nonce shared by every request made
    with the account, refreshing it from each response and fetching a new one whenever none is held.
    """

    def __init__(
            self,
            directory_url: str,
            signer: JWSSigner,
            session: requests.Session = None,
            timeout: int = DEFAULT_TIMEOUT,
            verify_ssl: bool = True,
            user_agent: str = USER_AGENT
    ):
        """
        Args:
            directory_url (str): The ACME directory URL to interact with.
            signer (snacme.jws.JWSSigner): The signer holding the account key.
            session (requests.Session): An optional session to send requests with.
            timeout (int): The per-request timeout (in seconds).
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            user_agent (str): The User-Agent header sent with every request.
        """
        self.directory_url = directory_url
        self.signer = signer
        self.timeout = timeout
        self.session = session if session else requests.Session()
        self.session.verify = verify_ssl
        self.session.headers["User-Agent"] = user_agent
        self.nonce = None
        self._directory = None
        self._lock = threading.RLock()

    def get_directory(self) -> Directory:
        """
        Fetches the ACME directory once and caches it for the lifetime of the transport.

        Raises:
            snacme.errors.TransportError: When the directory cannot be retrieved.
            snacme.errors.InvalidDirectory: When the directory is not a valid ACME directory object.
        """
        if self._directory is None:
            response = self._request("GET", self.directory_url)
            self.__raise_for_problem__(response)
            try:
                self._directory = Directory(response.json())
            except (errors.AcmeProtocolError, AttributeError) as err:
                raise errors.InvalidDirectory(f"'{self.directory_url}' did not return an ACME directory.") from err
            logger.debug("Loaded ACME directory from %s", self.directory_url)

        return self._directory

    def fetch_nonce(self) -> str:
        """
        Requests a fresh nonce from the server's `newNonce` resource and holds it for the next signed request.

        Returns:
            str: The new nonce.
        """
        with self._lock:
            response = self._request("HEAD", self.get_directory().new_nonce)
            self.__raise_for_problem__(response)
            self.nonce = response.headers.get(REPLAY_NONCE)
            if not self.nonce:
                raise errors.AcmeProtocolError(detail="newNonce response lacks a Replay-Nonce header.",
                                               status=response.status_code)
            return self.nonce

    def post(self, url: str, payload: dict = None, accept: str = None) -> ACMEResponse:
        """
        Signs and sends a POST request. A `badNonce` rejection is retried exactly once with a newly fetched nonce.

        Args:
            url (str): The target URL.
            payload (dict): The JSON payload. `None` sends a POST-as-GET request.
            accept (str): An optional Accept header value.

        Returns:
            snacme.transport.ACMEResponse: The server response.

        Raises:
            snacme.errors.TransportError: When the request fails before an HTTP response is received.
            snacme.errors.AcmeProtocolError: When the server rejects the request.
        """
        with self._lock:
            try:
                return self._post_once(url, payload, accept)
            except errors.AcmeProtocolError as err:
                if not err.is_bad_nonce:
                    raise
                logger.info("Server rejected nonce for %s, retrying with a fresh nonce", url)

            self.fetch_nonce()
            return self._post_once(url, payload, accept)

    def _post_once(self, url: str, payload: Optional[dict], accept: Optional[str]) -> ACMEResponse:
        if not self.nonce:
            self.fetch_nonce()

        # Each nonce is single use; forget it before sending
        nonce, self.nonce = self.nonce, None
        body = self.signer.sign(payload, url, nonce)

        headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if accept:
            headers["Accept"] = accept

        response = self._request("POST", url, data=json.dumps(body), headers=headers)
        self.__raise_for_problem__(response)
        return response

    def _request(self, method: str, url: str, **kwargs) -> ACMEResponse:
        try:
            raw = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as err:
            raise errors.TransportError(f"{method} {url} failed: {err}") from err

        response = ACMEResponse(
            status_code=raw.status_code,
            body=raw.content or b"",
            nonce=raw.headers.get(REPLAY_NONCE),
            headers=raw.headers
        )

        # The server hands out a new nonce with every response, even errors
        if response.nonce:
            self.nonce = response.nonce

        logger.debug("%s %s -> %s", method, url, response.status_code)
        return response

    @staticmethod
    def __raise_for_problem__(response: ACMEResponse) -> None:
        """Raises an AcmeProtocolError for 4xx/5xx responses, parsed from the problem document when present."""
        if response.status_code < 400:
            return

        problem = {}
        content_type = response.headers.get("Content-Type", "")
        if content_type.startswith(PROBLEM_CONTENT_TYPE) or content_type.startswith("application/json"):
            try:
                problem = json.loads(response.body)
            except ValueError:
                problem = {}

        if not isinstance(problem, dict):
            problem = {}

        raise errors.AcmeProtocolError(
            type=problem.get("type"),
            detail=problem.get("detail") or response.body.decode("utf-8", "replace")[:200],
            status=problem.get("status", response.status_code)
        )
