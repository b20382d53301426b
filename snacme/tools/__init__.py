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
"""DNS tools to assist ACME verification."""
import logging

import dns.exception
import dns.resolver

DNS_LABEL = "_acme-challenge"
logger = logging.getLogger(__name__)


def strip_wildcard(domain: str) -> str:
    """
    Strips the wildcard portion of a domain (*.) if present.

    Args:
        domain (str): The domain string to strip wildcards from.

    Returns:
        str: The domain string without the wildcard portion.
    """
    return domain[2:] if domain.startswith("*.") else domain


def challenge_record_name(host: str = None) -> str:
    """
    Builds the record name, relative to the root domain, that holds the DNS-01 validation value.

    Args:
        host (str): The subdomain portion of the name. `None`, `.` and `*` all refer to the root domain.

    Returns:
        str: `_acme-challenge.<host>`, or `_acme-challenge` for the root domain.

    Examples:
        >>> challenge_record_name("www")
        '_acme-challenge.www'
        >>> challenge_record_name("*.dev")
        '_acme-challenge.dev'
    """
    if host in (None, "", ".", "*"):
        return DNS_LABEL
    return f"{DNS_LABEL}.{strip_wildcard(host)}"


class DNSQuery:
    """A basic class to make DNS queries"""

    def __init__(
        self,
        domain: str,
        rtype: str = "A",
        nameservers: list = None,
        authoritative: bool = False,
        round_robin: bool = False,
        lifetime: float = 5.0
    ) -> None:
        """
        Initializes our DNS query.

        Args:
            domain (str): The fully qualified domain name to query.
            rtype (str): The DNS request type (e.g. `A`, `TXT`, `CNAME`, etc.).
            nameservers (list): Nameservers to query when making DNS requests.
            authoritative (bool): Use the authoritative nameserver for each domain.
            round_robin (bool): rotate between each nameserver instead of the default fail-over method.
            lifetime (float): The number of seconds to spend on a single resolution.
        """
        self.round_robin = round_robin
        self.type = rtype.upper()
        self.domain = domain
        self.lifetime = lifetime
        self.nameservers = nameservers if nameservers else dns.resolver.Resolver().nameservers
        self.nameservers = self.__get_authoritative_nameservers__() if authoritative else self.nameservers
        self.values = []
        self.last_nameserver = ""

    def resolve(self) -> list:
        """
        Queries the nameservers with our configured object values. Lookup failures yield an empty list so callers can
        simply retry later.

        Returns:
            list: The values of each answer record.
        """
        try:
            answer = self.__resolve__(self.domain, self.type, self.nameservers, self.lifetime)
            self.values = [self.__parse_value__(rdata) for rdata in answer]
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN, dns.resolver.NoNameservers, dns.exception.Timeout):
            self.values = []

        # Rotate the nameservers if round robin mode is enabled
        self.last_nameserver = self.nameservers[0] if self.nameservers else ""
        if self.round_robin and len(self.nameservers) > 1:
            self.nameservers = self.nameservers[1:] + [self.last_nameserver]

        return self.values

    def __get_authoritative_nameservers__(self) -> list:
        """
        Walks up the domain's labels to the closest SOA record and resolves its primary nameserver.

        Returns:
            list: The addresses of the authoritative nameserver, or the configured nameservers if none was found.
        """
        domain_sections = self.domain.split(".")

        # Loop through each level of the subdomain to find the SOA for this FQDN.
        while domain_sections:
            domain = ".".join(domain_sections)
            try:
                soa = self.__resolve__(domain, "SOA", self.nameservers, self.lifetime)
                primary = soa[0].mname.to_text().rstrip(".")
                addresses = self.__resolve__(primary, "A", self.nameservers, self.lifetime)
                return [rdata.to_text() for rdata in addresses]
            except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
                domain_sections.pop(0)
            except (dns.resolver.NoNameservers, dns.exception.Timeout):
                break

        logger.warning("No authoritative nameserver found for %s, using %s", self.domain, self.nameservers)
        return self.nameservers

    @staticmethod
    def __resolve__(domain: str, rtype: str, nameservers: list, lifetime: float):
        """Internal function-like DNS request method."""
        resolver = dns.resolver.Resolver()
        resolver.nameservers = nameservers if nameservers else resolver.nameservers
        resolver.lifetime = lifetime
        return resolver.resolve(domain, rtype)

    @staticmethod
    def __parse_value__(rdata) -> str:
        """Parses the value portion of an answer record, joining the character-strings of TXT records."""
        strings = getattr(rdata, "strings", None)
        if strings is not None:
            return b"".join(strings).decode("utf-8", "replace")
        return rdata.to_text()
