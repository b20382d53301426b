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
snacme is a Python ACME (RFC 8555) client specifically tailored to the DNS-01 challenge. It speaks the ACME protocol
itself, publishes the challenge TXT records through a DNS provider API, waits for them to propagate and writes the
issued certificates to disk. Although this module is intended for use with Let's Encrypt, it will support any CA
utilizing the ACME v2 protocol.
"""
import logging
import pathlib
from dataclasses import dataclass, field
from typing import List

import requests

from . import account
from . import certificates
from . import errors
from .config import CertificateRequest, STAGING_DIRECTORY
from .jws import JWSSigner
from .order import OrderOrchestrator, PollSettings
from .provisioner import DNSChallengeProvisioner
from .transport import ACMETransport

# Constants and Variables
__pdoc__ = {"tests": False}    # Excludes 'tests' submodule from documentation
logger = logging.getLogger(__name__)


@dataclass
class IssuedCertificate:
    """A certificate obtained from the CA together with the private key it was requested with."""
    name: str
    domains: List[str]
    certificate: bytes
    private_key: bytes


@dataclass
class IssueReport:
    """The outcome of processing several certificate requests."""
    issued: List[IssuedCertificate] = field(default_factory=list)
    failed: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed


class ACMEClient:
    """
    A basic ACME client object to interface with a CA using the ACME DNS-01 challenge.
    """

    def __init__(
            self,
            provisioner: DNSChallengeProvisioner,
            directory: str = STAGING_DIRECTORY,
            contacts: list = None,
            signer: JWSSigner = None,
            account_url: str = None,
            settings: PollSettings = None,
            verify_ssl: bool = True,
            session: requests.Session = None
    ) -> None:
        """
        Args:
            provisioner (snacme.provisioner.DNSChallengeProvisioner): The DNS provider used to publish TXT records.
            directory (str): The ACME directory URL to interact with.
            contacts (list): Email addresses to register with the ACME account.
            signer (snacme.jws.JWSSigner): The account key. A new P-256 key is generated when omitted.
            account_url (str): The URL of an already registered account belonging to `signer`.
            settings (snacme.order.PollSettings): Polling intervals and timeouts.
            verify_ssl (bool): Verify the SSL certificate of the ACME server when making requests.
            session (requests.Session): The HTTP session to use for ACME requests.

        Examples:
            >>> import snacme
            >>> from snacme.provisioner import get_provisioner
            >>> client = snacme.ACMEClient(
            ...     provisioner=get_provisioner("porkbun", public="pk1_...", secret="sk1_..."),
            ...     directory="https://acme-staging-v02.api.letsencrypt.org/directory",
            ...     contacts=["example@example.com"]
            ... )
        """
        self.directory = directory
        self.provisioner = provisioner
        self.settings = settings if settings else PollSettings()
        self.signer = signer if signer else JWSSigner.generate()
        self.account_manager = account.AccountManager(contacts)
        self.account_url = account_url
        self.signer.kid = account_url
        self.transport = ACMETransport(directory, self.signer, session=session, verify_ssl=verify_ssl)

    def new_account(self) -> str:
        """
        Registers the account key at the set ACME `directory` URL, or looks up the existing account for it. By running
        this method, you are agreeing to the ACME servers terms of use.

        Returns:
            str: The account URL.

        Raises:
            snacme.errors.AccountError: When the ACME server refuses the registration.

        Examples:
            >>> client.new_account()
            'https://acme-staging-v02.api.letsencrypt.org/acme/acct/123456'
        """
        self.account_url = self.account_manager.get_or_create_account(self.transport, self.signer)
        return self.account_url

    def export_account(self) -> str:
        """
        Exports the account key and account URL as a JSON string that can be re-imported later.

        Examples:
            >>> client.export_account()
            '{"account_key": "{\\"kty\\": \\"EC\\", ...}", "account_url": "https://...", "directory": "https://..."}'
        """
        return account.export_account(self.signer, self.account_url, self.directory)

    def export_account_to_file(self, path: str) -> None:
        """
        Exports the account to a JSON file.

        Raises:
            snacme.errors.InvalidPath: When the parent directory of `path` does not exist.
        """
        account.export_account_to_file(self.signer, self.account_url, self.directory, path)

    @staticmethod
    def load_account(json_data: str, provisioner: DNSChallengeProvisioner, **kwargs) -> "ACMEClient":
        """
        Loads an existing account from a JSON data string created by the `export_account()` method.

        Args:
            json_data (str): The JSON account data string to import.
            provisioner (snacme.provisioner.DNSChallengeProvisioner): The DNS provider used to publish TXT records.
            **kwargs: Further `ACMEClient` arguments. An explicit `directory` takes precedence over the saved one.

        Returns:
            snacme.ACMEClient: The imported ACMEClient object.
        """
        signer, account_url, directory = account.load_account(json_data)
        return ACMEClient.__from_account__(provisioner, signer, account_url, directory, **kwargs)

    @staticmethod
    def load_account_from_file(path: str, provisioner: DNSChallengeProvisioner, **kwargs) -> "ACMEClient":
        """
        Loads an existing account from a JSON file created by the `export_account_to_file()` method.

        Raises:
            snacme.errors.InvalidPath: When the JSON file path does not exist.
        """
        signer, account_url, directory = account.load_account_from_file(path)
        return ACMEClient.__from_account__(provisioner, signer, account_url, directory, **kwargs)

    def request_certificate(self, request: CertificateRequest, key_type: str = "ec256") -> IssuedCertificate:
        """
        Obtains one certificate. A fresh private key and CSR are generated for it, the order is driven through
        validation and the issued chain is downloaded. Challenge records are always removed afterwards.

        Args:
            request (snacme.config.CertificateRequest): The certificate name and the domains to include.
            key_type (str): The private key type. Options are: [`ec256`, `ec384`, `rsa2048`, `rsa4096`]

        Returns:
            snacme.IssuedCertificate: The PEM certificate chain and the DER encoded private key.

        Raises:
            snacme.errors.AccountError: When no account exists and registration fails.
            snacme.errors.AuthorizationFailed: When a domain could not be validated.
            snacme.errors.OrderFailed: When the CA refuses to issue the certificate.

        Examples:
            >>> client.request_certificate(CertificateRequest("example", [DomainRequest("example.com", [".", "www"])]))
            IssuedCertificate(name='example', domains=['example.com', 'www.example.com'], certificate=b'-----BEGIN...')
        """
        if not self.account_url:
            self.new_account()

        targets = request.targets()
        domains = [target.domain for target in targets]
        logger.info("Requesting certificate '%s' for %s", request.name, domains)

        private_key = certificates.generate_private_key(key_type)
        csr = certificates.generate_csr(private_key, domains)
        orchestrator = OrderOrchestrator(self.transport, self.signer, self.provisioner, self.settings)
        chain = orchestrator.issue(targets, csr)

        return IssuedCertificate(
            name=request.name,
            domains=domains,
            certificate=chain.encode(),
            private_key=certificates.private_key_to_der(private_key)
        )

    def request_certificates(
            self,
            cert_requests: List[CertificateRequest],
            key_type: str = "ec256",
            output_directory: str = None
    ) -> IssueReport:
        """
        Obtains several certificates one after another. A certificate that fails is logged and recorded in the
        report; the remaining certificates are still requested.

        Args:
            cert_requests (list): The certificate requests to process.
            key_type (str): The private key type used for every certificate.
            output_directory (str): When set, each issued certificate is written there as it is obtained.

        Returns:
            snacme.IssueReport: The issued certificates and the error of each failed one, keyed by name.

        Raises:
            snacme.errors.AccountError: When the account cannot be registered. Nothing can be issued without it.
        """
        report = IssueReport()
        for request in cert_requests:
            try:
                issued = self.request_certificate(request, key_type)
                if output_directory:
                    self.export_certificate_to_directory(output_directory, issued)
            except errors.CERTIFICATE_ERRORS as err:
                logger.error("Certificate '%s' failed: %s", request.name, err)
                report.failed[request.name] = err
                continue

            report.issued.append(issued)
            logger.info("Certificate '%s' issued", request.name)

        return report

    @staticmethod
    def export_certificate_to_directory(path: str, issued: IssuedCertificate) -> tuple:
        """
        Writes `<name>.pem` (the certificate chain) and `<name>.der` (the private key) into a directory, creating
        the directory if needed.

        Returns:
            tuple: The paths of the written certificate and private key files.

        Raises:
            snacme.errors.InvalidPath: When the directory cannot be created or the files cannot be written.
        """
        dir_path = pathlib.Path(path).absolute()
        try:
            dir_path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise errors.InvalidPath(f"Directory at '{path}' cannot be created: {err}") from err

        cert_path = dir_path.joinpath(f"{issued.name}.pem")
        key_path = dir_path.joinpath(f"{issued.name}.der")
        try:
            cert_path.write_bytes(issued.certificate)
            key_path.write_bytes(issued.private_key)
            key_path.chmod(0o600)
        except OSError as err:
            raise errors.InvalidPath(f"Certificate '{issued.name}' cannot be written to '{path}': {err}") from err
        return cert_path, key_path

    @staticmethod
    def __from_account__(provisioner, signer, account_url, saved_directory, **kwargs) -> "ACMEClient":
        directory = kwargs.pop("directory", None) or saved_directory or STAGING_DIRECTORY
        # An account URL is only meaningful at the CA it was registered with
        if directory != saved_directory:
            if account_url:
                logger.info("Saved account belongs to %s, registering the key at %s", saved_directory, directory)
            account_url = None
        return ACMEClient(provisioner, directory=directory, signer=signer, account_url=account_url, **kwargs)
