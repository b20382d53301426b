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
"""ACME account registration and account file import/export."""
import json
import logging
import pathlib

import validators

from .. import errors
from ..jws import JWSSigner
from ..transport import ACMETransport

logger = logging.getLogger(__name__)


class AccountManager:
    """Registers a new ACME account, or looks up the existing one, for the signer's account key."""

    def __init__(self, contacts: list = None) -> None:
        """
        Args:
            contacts (list): Email addresses to register with the account. These are optional.

        Raises:
            snacme.errors.InvalidEmail: When a contact is not a valid email address.
        """
        self.contacts = []
        for contact in contacts or []:
            address = contact[len("mailto:"):] if contact.startswith("mailto:") else contact
            if not validators.email(address):
                raise errors.InvalidEmail(f"Value '{contact}' is not a valid email address.")
            self.contacts.append(f"mailto:{address}")
        self.account_url = None

    def get_or_create_account(self, transport: ACMETransport, signer: JWSSigner) -> str:
        """
        Sends `newAccount` for the signer's key, agreeing to the terms of service. The server answers 201 when the
        account is created and 200 when it already exists; both are handled identically.

        Returns:
            str: The account URL. The signer's `kid` is set to this value so later requests are signed with it.

        Raises:
            snacme.errors.AccountError: When the server rejects the registration or answers unexpectedly.
        """
        payload = {"termsOfServiceAgreed": True}
        if self.contacts:
            payload["contact"] = self.contacts

        # newAccount must always be signed with the full JWK
        signer.kid = None
        try:
            response = transport.post(transport.get_directory().new_account, payload)
        except errors.AcmeProtocolError as err:
            raise errors.AccountError(f"ACME server rejected account registration: {err.message}") from err

        if response.status_code not in (200, 201):
            raise errors.AccountError(f"Unexpected status {response.status_code} from newAccount.")
        if not response.location:
            raise errors.AccountError("ACME server did not return an account URL.")

        self.account_url = response.location
        signer.kid = self.account_url
        logger.info(
            "%s ACME account %s", "Registered" if response.status_code == 201 else "Using existing", self.account_url
        )
        return self.account_url


def export_account(signer: JWSSigner, account_url: str, directory_url: str) -> str:
    """
    Exports the account as a JSON string that can be re-imported later with `load_account()`.

    Returns:
        str: The account key, account URL and directory URL encoded as a JSON string.

    Examples:
        >>> export_account(signer, "https://acme.test/acct/1", "https://acme.test/directory")
        '{"account_key": "{\\"kty\\": \\"EC\\", ...}", "account_url": "https://acme.test/acct/1", ...}'
    """
    return json.dumps({
        "account_key": signer.export_key(),
        "account_url": account_url,
        "directory": directory_url
    })


def load_account(json_data: str) -> tuple:
    """
    Loads an account from a JSON string created by `export_account()`.

    Returns:
        tuple: The `JWSSigner` (with `kid` set when an account URL was saved), the account URL and the directory URL.

    Raises:
        snacme.errors.SigningError: When the JSON data does not contain a usable account key.
    """
    try:
        acct_data = json.loads(json_data)
        key_data = acct_data["account_key"]
    except (ValueError, KeyError, TypeError) as err:
        raise errors.SigningError(f"Account data does not contain an account key: {err}") from err

    signer = JWSSigner.load_key(key_data)
    signer.kid = acct_data.get("account_url")
    return signer, acct_data.get("account_url"), acct_data.get("directory")


def export_account_to_file(signer: JWSSigner, account_url: str, directory_url: str, path: str) -> None:
    """
    Writes the exported account JSON to a file.

    Raises:
        snacme.errors.InvalidPath: When the parent directory does not exist.
    """
    file_path = pathlib.Path(path).absolute()

    # Ensure our path is an existing directory, throw an error otherwise
    if not file_path.parent.is_dir():
        raise errors.InvalidPath(f"Directory at '{file_path.parent}' does not exist.")

    with open(file_path, "w", encoding="utf-8") as account_file:
        account_file.write(export_account(signer, account_url, directory_url))


def load_account_from_file(path: str) -> tuple:
    """
    Loads an account from a JSON file created by `export_account_to_file()`.

    Raises:
        snacme.errors.InvalidPath: When the JSON file path does not exist.
    """
    file_path = pathlib.Path(path).absolute()
    if not file_path.is_file():
        raise errors.InvalidPath(f"No JSON account file found at '{file_path}'")

    with open(file_path, "r", encoding="utf-8") as json_file:
        return load_account(json_file.read())
