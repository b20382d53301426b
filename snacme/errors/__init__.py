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
"""Custom exception classes for snacme."""

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"


class SigningError(Exception):
    """Error occurs when the account key is missing or cannot produce ES256 signatures."""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransportError(Exception):
    """Error occurs when an HTTP request to the ACME server fails below the HTTP layer (connection, timeout, TLS)"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AcmeProtocolError(Exception):
    """Error occurs when the ACME server rejects a request with a problem document"""
    def __init__(self, type: str = None, detail: str = "", status: int = None) -> None:
        # pylint: disable=redefined-builtin
        self.type = type
        self.detail = detail
        self.status = status
        self.message = f"{status} {type or 'unknown error'}: {detail}"
        super().__init__(self.message)

    @property
    def is_bad_nonce(self) -> bool:
        """Indicates whether this error asks the client to retry with a fresh nonce."""
        return self.type == BAD_NONCE


class AuthorizationFailed(Exception):
    """Error occurs when a domain fails DNS-01 validation or does not validate in time"""
    def __init__(self, domain: str, reason: str) -> None:
        self.domain = domain
        self.reason = reason
        self.message = f"Authorization for '{domain}' failed: {reason}"
        super().__init__(self.message)


class DnsPropagationTimeout(Exception):
    """Error occurs when a published TXT record is not observed in DNS before the timeout"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class OrderFailed(Exception):
    """Error occurs when the ACME server marks an order invalid or returns an unusable order"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ACMETimeout(Exception):
    """Error occurs when the max time has been exceeded waiting for an ACME server event"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AccountError(Exception):
    """Error occurs when the ACME server refuses to register or return the account"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ChallengeUnavailable(Exception):
    """Error occurs when the requested ACME server does not offer the DNS-01 challenge"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DNSProviderError(Exception):
    """Error occurs when the DNS provider API rejects a record change"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidDirectory(Exception):
    """Error occurs when the ACME directory is unreachable or lacks a required resource"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidCSR(Exception):
    """Error occurs when the CSR cannot be built or is not DER bytes"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidKeyType(Exception):
    """Error occurs when the requested private key rtype is unsupported"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidCertificate(Exception):
    """Error occurs when the certificate is invalid or does not exist."""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidEmail(Exception):
    """Error occurs when a contact value is not a valid email address"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidDomain(Exception):
    """Error occurs when a requested domain is not a valid FQDN"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidPath(Exception):
    """Error occurs when a request file path does not exist"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidConfig(Exception):
    """Error occurs when the configuration file is missing, malformed or incomplete"""
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# Failures that only affect the certificate being requested. Anything else aborts the whole run.
CERTIFICATE_ERRORS = (
    TransportError,
    AcmeProtocolError,
    AuthorizationFailed,
    OrderFailed,
    ACMETimeout,
    ChallengeUnavailable,
    DNSProviderError,
    InvalidCertificate,
    InvalidCSR,
    InvalidPath,
)
