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
"""DNS-01 provisioner for domains hosted on Porkbun."""
import logging

import requests

from .. import errors
from ..provisioner import DNSChallengeProvisioner, register

PORKBUN_ENDPOINT = "https://api.porkbun.com/api/json/v3"
logger = logging.getLogger(__name__)


@register("porkbun")
class PorkbunProvisioner(DNSChallengeProvisioner):
    """Publishes DNS-01 TXT records through the Porkbun JSON API."""

    def __init__(
            self,
            public: str,
            secret: str,
            endpoint: str = PORKBUN_ENDPOINT,
            ttl: int = 600,
            **kwargs
    ) -> None:
        """
        Args:
            public (str): The Porkbun API key.
            secret (str): The Porkbun secret API key.
            endpoint (str): The base URL of the Porkbun API.
            ttl (int): The TTL (in seconds) of created records. Porkbun does not accept values below 600.
            **kwargs: Propagation checking options passed to `DNSChallengeProvisioner`.
        """
        super().__init__(**kwargs)
        self.client = _PorkbunClient(endpoint, public, secret)
        self.ttl = ttl

    def ping(self) -> str:
        """
        Checks the API credentials.

        Returns:
            str: The IP address Porkbun sees the request coming from.
        """
        return self.client.request("ping").get("yourIp", "")

    def _perform(self, root_domain: str, record_name: str, value: str) -> None:
        records = self.client.retrieve_txt(root_domain, record_name)

        if any(record.get("content") == value for record in records):
            logger.debug("TXT record %s.%s already holds the validation value", record_name, root_domain)
        elif records:
            logger.debug("Updating TXT record %s.%s", record_name, root_domain)
            self.client.edit_txt(root_domain, record_name, value, self.ttl)
        else:
            logger.debug("Creating TXT record %s.%s", record_name, root_domain)
            self.client.create_txt(root_domain, record_name, value, self.ttl)

    def _cleanup(self, root_domain: str, record_name: str) -> None:
        self.client.delete_txt(root_domain, record_name)


class _PorkbunClient:
    """
    Encapsulates all communication with the Porkbun JSON API.
    """

    def __init__(self, endpoint: str, api_key: str, secret_key: str, timeout: int = 30) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.keys = {"secretapikey": secret_key, "apikey": api_key}
        self.timeout = timeout
        self.session = requests.Session()

    def request(self, path: str, data: dict = None) -> dict:
        """
        Sends an authenticated API request.

        Raises:
            snacme.errors.DNSProviderError: When the request fails or Porkbun answers with an error status.
        """
        url = f"{self.endpoint}/{path}"
        payload = dict(self.keys, **(data or {}))
        logger.debug("Porkbun API request to %s", url)

        try:
            resp = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as err:
            raise errors.DNSProviderError(f"Porkbun API request to '{path}' failed: {err}") from err

        try:
            result = resp.json()
        except ValueError as err:
            raise errors.DNSProviderError(f"Porkbun API response with non JSON: {resp.text[:200]}") from err

        if resp.status_code != 200 or result.get("status") != "SUCCESS":
            message = result.get("message", f"HTTP {resp.status_code}")
            raise errors.DNSProviderError(f"Porkbun API response with an error: {message}")
        return result

    def retrieve_txt(self, domain: str, subdomain: str) -> list:
        return self.request(f"dns/retrieveByNameType/{domain}/TXT/{subdomain}").get("records") or []

    def create_txt(self, domain: str, subdomain: str, content: str, ttl: int) -> str:
        data = {"name": subdomain, "type": "TXT", "content": content, "ttl": str(ttl)}
        return str(self.request(f"dns/create/{domain}", data).get("id", ""))

    def edit_txt(self, domain: str, subdomain: str, content: str, ttl: int) -> None:
        self.request(f"dns/editByNameType/{domain}/TXT/{subdomain}", {"content": content, "ttl": str(ttl)})

    def delete_txt(self, domain: str, subdomain: str) -> None:
        self.request(f"dns/deleteByNameType/{domain}/TXT/{subdomain}")
