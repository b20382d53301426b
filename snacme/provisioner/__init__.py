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
The DNS challenge provisioner interface. A provisioner publishes the TXT record for a DNS-01 challenge, waits until
the record is visible in DNS and removes it afterward. Each DNS provider is a subclass implementing `_perform()` and
`_cleanup()`.
"""
import abc
import logging
import time

import requests

from .. import errors
from .. import tools

logger = logging.getLogger(__name__)


class DNSChallengeProvisioner(abc.ABC):
    """Base class for DNS providers able to answer DNS-01 challenges."""

    def __init__(
            self,
            nameservers: list = None,
            interval: int = 2,
            authoritative: bool = False,
            round_robin: bool = True
    ) -> None:
        """
        Args:
            nameservers (list): DNS server hosts to query when checking DNS propagation.
            interval (int): The amount of time (in seconds) between DNS requests when checking propagation.
            authoritative (bool): Query the authoritative nameserver of each domain instead of `nameservers`.
            round_robin (bool): Rotate between each nameserver instead of the default failover behavior.
        """
        self.nameservers = nameservers
        self.interval = interval
        self.authoritative = authoritative
        self.round_robin = round_robin

    def publish(self, root_domain: str, record_name: str, value: str) -> None:
        """
        Creates or updates the TXT record `record_name` in the `root_domain` zone.

        Raises:
            snacme.errors.DNSProviderError: When the provider refuses the change.
        """
        logger.info("Publishing TXT record %s.%s", record_name, root_domain)
        self._perform(root_domain, record_name, value)

    def await_propagation(self, root_domain: str, record_name: str, value: str, timeout: int) -> bool:
        """
        Checks the TXT record until it contains `value` or until the timeout is reached.

        Returns:
            bool: Whether the expected value was observed before the timeout.
        """
        fqdn = f"{record_name}.{root_domain}"
        deadline = time.monotonic() + timeout
        query = self._query(fqdn)

        while True:
            found = value in query.resolve()
            logger.debug(
                "Token '%s' for '%s' %s in %s via %s",
                value, fqdn, "found" if found else "not found", query.values, query.last_nameserver
            )
            if found:
                return True

            # Avoid flooding the DNS server(s) by briefly pausing between DNS checks
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("TXT record %s did not propagate within %s seconds", fqdn, timeout)
                return False
            time.sleep(min(self.interval, remaining))

    def cleanup(self, root_domain: str, record_name: str) -> None:
        """
        Removes the TXT record. Failures are logged and never raised since a stale challenge record is harmless.
        """
        logger.info("Removing TXT record %s.%s", record_name, root_domain)
        try:
            self._cleanup(root_domain, record_name)
        except (errors.DNSProviderError, requests.exceptions.RequestException) as err:
            logger.warning("Failed to remove TXT record %s.%s: %s", record_name, root_domain, err)

    def _query(self, fqdn: str) -> tools.DNSQuery:
        return tools.DNSQuery(
            fqdn,
            rtype="TXT",
            nameservers=self.nameservers,
            authoritative=self.authoritative,
            round_robin=self.round_robin
        )

    @abc.abstractmethod
    def _perform(self, root_domain: str, record_name: str, value: str) -> None:
        """Creates or updates the TXT record with the DNS provider."""

    @abc.abstractmethod
    def _cleanup(self, root_domain: str, record_name: str) -> None:
        """Deletes the TXT record with the DNS provider."""


PROVISIONERS = {}


def register(name: str):
    """Class decorator adding a provisioner to the registry under `name`."""
    def decorator(cls):
        PROVISIONERS[name] = cls
        return cls
    return decorator


def get_provisioner(name: str, **options) -> DNSChallengeProvisioner:
    """
    Creates the provisioner registered under `name`.

    Raises:
        snacme.errors.InvalidConfig: When no provisioner is registered under that name.
    """
    # Importing the providers package registers the bundled provisioners
    from .. import providers  # pylint: disable=import-outside-toplevel,unused-import

    try:
        cls = PROVISIONERS[name]
    except KeyError as err:
        raise errors.InvalidConfig(f"Unsupported DNS API '{name}'. Options {sorted(PROVISIONERS)}") from err

    try:
        return cls(**options)
    except TypeError as err:
        raise errors.InvalidConfig(f"Invalid options for DNS API '{name}': {err}") from err
