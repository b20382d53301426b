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
"""Loads and validates the TOML configuration describing which certificates to request."""
import pathlib
import tomllib
from dataclasses import dataclass, field
from typing import List, Optional

import validators

from .. import errors
from .. import tools
from ..order import PollSettings, Target

# Constants and Variables
STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
PRODUCTION_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
ROOT_HOST = "."


@dataclass
class DomainRequest:
    """A root domain and the hosts below it to include in a certificate."""
    root: str
    hosts: Optional[List[str]] = None

    def targets(self) -> List[Target]:
        """
        Expands the request into one target per domain name.

        Examples:
            >>> DomainRequest("example.com", [".", "www"]).targets()
            [Target(domain='example.com', root='example.com', record_name='_acme-challenge'),
             Target(domain='www.example.com', root='example.com', record_name='_acme-challenge.www')]
        """
        hosts = [ROOT_HOST] if self.hosts is None else self.hosts
        targets = []
        for host in hosts:
            domain = self.root if host == ROOT_HOST else f"{host}.{self.root}"
            targets.append(Target(domain=domain, root=self.root, record_name=tools.challenge_record_name(host)))
        return targets


@dataclass
class CertificateRequest:
    """One certificate to request, written to `<name>.pem` and `<name>.der`."""
    name: str
    domains: List[DomainRequest] = field(default_factory=list)

    def targets(self) -> List[Target]:
        return [target for domain in self.domains for target in domain.targets()]


@dataclass
class Config:
    output_directory: str
    dns_api: str
    dns_options: dict
    certs: List[CertificateRequest]
    staging: bool = False
    directory_url: Optional[str] = None
    contacts: List[str] = field(default_factory=list)
    nameservers: Optional[List[str]] = None
    authoritative: bool = False
    polling: PollSettings = field(default_factory=PollSettings)

    @property
    def directory(self) -> str:
        """The ACME directory URL to use, honoring an explicit override before the staging flag."""
        if self.directory_url:
            return self.directory_url
        return STAGING_DIRECTORY if self.staging else PRODUCTION_DIRECTORY


def load_config(path: str) -> Config:
    """
    Reads and validates a TOML configuration file.

    Raises:
        snacme.errors.InvalidPath: When the file does not exist.
        snacme.errors.InvalidConfig: When the file is not valid TOML or misses required values.
    """
    file_path = pathlib.Path(path)
    if not file_path.is_file():
        raise errors.InvalidPath(f"No configuration file found at '{path}'")

    try:
        with open(file_path, "rb") as config_file:
            data = tomllib.load(config_file)
    except tomllib.TOMLDecodeError as err:
        raise errors.InvalidConfig(f"Configuration file '{path}' is not valid TOML: {err}") from err

    return parse_config(data)


def parse_config(data: dict) -> Config:
    """
    Builds a `Config` from already parsed configuration data.

    Raises:
        snacme.errors.InvalidConfig: When required values are missing or have the wrong type.
        snacme.errors.InvalidDomain: When a requested domain is not a valid FQDN.
        snacme.errors.InvalidEmail: When a contact is not a valid email address.
    """
    output_directory = __pick__(data, "output_directory", "directory")
    if not isinstance(output_directory, str) or not output_directory:
        raise errors.InvalidConfig("'output_directory' must be set to a directory path.")

    dns_api, dns_options = __parse_dns_api__(__pick__(data, "dns_api", "api"))

    cert_tables = __pick__(data, "certs", "certificate") or []
    if not isinstance(cert_tables, list):
        raise errors.InvalidConfig("'certs' must be an array of certificate tables.")
    certs = [__parse_certificate__(cert) for cert in cert_tables]
    if not certs:
        raise errors.InvalidConfig("At least one certificate must be configured.")
    names = [cert.name for cert in certs]
    if len(set(names)) != len(names):
        raise errors.InvalidConfig(f"Certificate names must be unique, got {names}.")

    contacts = data.get("contacts", [])
    for contact in contacts:
        if not validators.email(contact):
            raise errors.InvalidEmail(f"Value '{contact}' is not a valid email address.")

    polling = data.get("polling", {})
    try:
        settings = PollSettings(**polling)
    except TypeError as err:
        raise errors.InvalidConfig(f"Invalid polling settings: {err}") from err

    return Config(
        output_directory=output_directory,
        dns_api=dns_api,
        dns_options=dns_options,
        certs=certs,
        staging=bool(data.get("staging", False)),
        directory_url=data.get("directory_url"),
        contacts=list(contacts),
        nameservers=data.get("nameservers"),
        authoritative=bool(data.get("authoritative", False)),
        polling=settings
    )


def __pick__(data: dict, name: str, alias: str):
    """Returns the value stored under `name` or, failing that, under its `alias`."""
    return data[name] if name in data else data.get(alias)


def __parse_dns_api__(api) -> tuple:
    """Splits the `[dns_api.<provider>]` table into the provider name and its options."""
    if not isinstance(api, dict) or len(api) != 1:
        raise errors.InvalidConfig("'dns_api' must contain exactly one DNS provider table.")

    name, table = next(iter(api.items()))
    table = dict(table or {})
    options = dict(__pick__(table, "keys", "key") or {})
    options.update({key: value for key, value in table.items() if key not in ("keys", "key")})
    return name, options


def __parse_certificate__(cert) -> CertificateRequest:
    if not isinstance(cert, dict):
        raise errors.InvalidConfig(f"Certificate entry '{cert}' must be a table.")
    name = cert.get("name")
    if not isinstance(name, str) or not name:
        raise errors.InvalidConfig("Every certificate needs a 'name'.")

    domain_tables = __pick__(cert, "domains", "domain") or []
    if not isinstance(domain_tables, list):
        raise errors.InvalidConfig(f"'domains' of certificate '{name}' must be an array of tables.")

    domains = []
    for domain in domain_tables:
        if not isinstance(domain, dict):
            raise errors.InvalidConfig(f"Domain entry '{domain}' in certificate '{name}' must be a table.")
        root = domain.get("root")
        hosts = domain.get("hosts")
        if not isinstance(root, str) or not validators.domain(root):
            raise errors.InvalidDomain(f"Invalid root domain '{root}' in certificate '{name}'.")
        if hosts is not None and (not isinstance(hosts, list) or not hosts):
            raise errors.InvalidConfig(f"'hosts' of '{root}' in certificate '{name}' must be a non-empty list.")
        if hosts and not all(isinstance(host, str) for host in hosts):
            raise errors.InvalidConfig(f"'hosts' of '{root}' in certificate '{name}' must only hold strings.")
        domains.append(DomainRequest(root=root, hosts=hosts))

    request = CertificateRequest(name=name, domains=domains)
    targets = request.targets()
    if not targets:
        raise errors.InvalidConfig(f"Certificate '{name}' does not list any domains.")

    # Each name must be a valid FQDN once the wildcard is stripped
    seen = set()
    for target in targets:
        if not validators.domain(target.authorization_domain):
            raise errors.InvalidDomain(f"Invalid domain name '{target.domain}'. Domain name must adhere to RFC2181.")
        if target.authorization_domain in seen:
            raise errors.InvalidDomain(
                f"Domain '{target.authorization_domain}' is requested more than once in certificate '{name}'."
            )
        seen.add(target.authorization_domain)

    return request
