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
"""JSON Web Signature tools used to sign requests sent to the ACME server."""
import json
import logging

import josepy as jose
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from .. import errors

ALGORITHM = "ES256"
logger = logging.getLogger(__name__)


def b64(data: bytes) -> str:
    """Encodes bytes as an unpadded base64url string."""
    return jose.b64encode(data).decode("ascii")


def json_bytes(data) -> bytes:
    """Encodes an object as compact JSON bytes."""
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


def dns01_txt_value(token: str, thumbprint: str) -> str:
    """
    Computes the TXT record value a DNS-01 challenge expects.

    Args:
        token (str): The challenge token chosen by the ACME server.
        thumbprint (str): The base64url JWK thumbprint of the account key.

    Returns:
        str: `base64url(SHA-256(token + "." + thumbprint))` without padding.

    Examples:
        >>> dns01_txt_value("abc123", "xyz789")
        'G-8xfPds2qvDProC32UqmRCUpamN1sDQcg3l4729e08'
    """
    digest = hashes.Hash(hashes.SHA256(), default_backend())
    digest.update(f"{token}.{thumbprint}".encode("utf-8"))
    return b64(digest.finalize())


class JWSSigner:
    """
    Signs ACME request payloads with an EC P-256 account key, producing the flattened JWS JSON form that every ACME
    POST body must use.
    """

    def __init__(self, key=None) -> None:
        """
        Args:
            key (josepy.JWKEC|EllipticCurvePrivateKey): The account private key. Must be an EC P-256 private key.

        Raises:
            snacme.errors.SigningError: When the key is absent, public only, or not on the P-256 curve.
        """
        self._key = self.__validate_key__(key)
        self.jwk = jose.JWKEC(key=self._key)
        self.kid = None
        self.thumbprint = b64(self.jwk.public_key().thumbprint(hash_function=hashes.SHA256))

    @classmethod
    def generate(cls) -> "JWSSigner":
        """Creates a signer with a freshly generated P-256 account key."""
        return cls(ec.generate_private_key(ec.SECP256R1(), default_backend()))

    @property
    def public_jwk(self) -> dict:
        """The public JWK sent in the `jwk` header before the account URL is known."""
        return self.jwk.public_key().to_json()

    def sign(self, payload, url: str, nonce: str) -> dict:
        """
        Builds and signs a flattened JWS for a single ACME request.

        Args:
            payload (dict|None): The JSON payload. `None` produces the empty payload used by POST-as-GET requests.
            url (str): The URL the request will be sent to.
            nonce (str): A fresh nonce obtained from the ACME server.

        Returns:
            dict: The `protected`, `payload` and `signature` members of the JWS.

        Raises:
            snacme.errors.SigningError: When no nonce is given or the signature cannot be computed.
        """
        if not nonce:
            raise errors.SigningError(f"Refusing to sign request to '{url}' without a nonce.")

        protected = {"alg": ALGORITHM, "nonce": nonce, "url": url}
        if self.kid:
            protected["kid"] = self.kid
        else:
            protected["jwk"] = self.public_jwk

        encoded_protected = b64(json_bytes(protected))
        encoded_payload = "" if payload is None else b64(json_bytes(payload))
        signing_input = f"{encoded_protected}.{encoded_payload}".encode("ascii")

        try:
            signature = jose.ES256.sign(self._key, signing_input)
        except (TypeError, ValueError, jose.Error) as err:
            raise errors.SigningError(f"Failed to sign request to '{url}': {err}") from err

        logger.debug("Signed request to %s with %s", url, "kid" if self.kid else "jwk")
        return {"protected": encoded_protected, "payload": encoded_payload, "signature": b64(signature)}

    def export_key(self) -> str:
        """Serializes the private account key as a JWK JSON string."""
        return self.jwk.json_dumps()

    @classmethod
    def load_key(cls, json_data: str) -> "JWSSigner":
        """
        Loads a signer from a private JWK JSON string created by `export_key()`.

        Raises:
            snacme.errors.SigningError: When the JSON is not an EC private JWK.
        """
        try:
            jwk = jose.JWKEC.json_loads(json_data)
        except (jose.DeserializationError, ValueError, TypeError) as err:
            raise errors.SigningError(f"Malformed account key: {err}") from err
        return cls(jwk)

    @staticmethod
    def __validate_key__(key):
        """Unwraps and checks the account key, returning the cryptography private key object."""
        if key is None:
            raise errors.SigningError("No account key configured.")

        # Accept josepy JWK wrappers as well as raw cryptography keys
        if isinstance(key, jose.JWK):
            if not isinstance(key, jose.JWKEC):
                raise errors.SigningError(f"Account key must be an EC key, got '{key.typ}'.")
            key = getattr(key.key, "_wrapped", key.key)

        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise errors.SigningError("Account key must be an EC private key.")
        if not isinstance(key.curve, ec.SECP256R1):
            raise errors.SigningError(f"Account key must use the P-256 curve, got '{key.curve.name}'.")

        return key
