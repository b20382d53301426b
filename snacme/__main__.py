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
Command line entry point.

Usage::

    python -m snacme config.toml
    python -m snacme config.toml account.json --verbose
"""
import argparse
import logging
import pathlib
import sys

from . import ACMEClient
from . import errors
from .config import load_config
from .provisioner import get_provisioner

EXIT_SUCCESS = 0
EXIT_CERTIFICATE_FAILED = 1
EXIT_CONFIG_ERROR = 2
logger = logging.getLogger("snacme")

# Problems with the configuration or the account that stop the whole run
SETUP_ERRORS = (
    errors.InvalidConfig,
    errors.InvalidDomain,
    errors.InvalidEmail,
    errors.InvalidPath,
    errors.InvalidDirectory,
    errors.SigningError,
    errors.AccountError,
    errors.TransportError,
    errors.AcmeProtocolError,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snacme",
        description="Obtain certificates from an ACME CA using DNS-01 challenges.",
    )
    parser.add_argument("config", metavar="CONFIG", help="Path to the TOML configuration file.")
    parser.add_argument(
        "account",
        metavar="ACCOUNT",
        nargs="?",
        help="Path to the account JSON file. It is loaded when present and written after registration.",
    )
    parser.add_argument(
        "--key-type",
        default="ec256",
        choices=["ec256", "ec384", "rsa2048", "rsa4096"],
        help="Private key type of the requested certificates.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="Enable debug logging.")
    return parser


def main(argv: list = None) -> int:
    """Runs the client and returns the process exit status."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config)
        provisioner = get_provisioner(
            config.dns_api,
            nameservers=config.nameservers,
            authoritative=config.authoritative,
            **config.dns_options
        )
        client = _make_client(config, provisioner, args.account)
        client.new_account()
        if args.account:
            client.export_account_to_file(args.account)
        report = client.request_certificates(config.certs, args.key_type, config.output_directory)
    except SETUP_ERRORS as err:
        logger.error("%s", err)
        return EXIT_CONFIG_ERROR

    for name, err in report.failed.items():
        logger.error("Certificate '%s' was not issued: %s", name, err)
    return EXIT_SUCCESS if report.success else EXIT_CERTIFICATE_FAILED


def _make_client(config, provisioner, account_path) -> ACMEClient:
    options = {"contacts": config.contacts, "settings": config.polling}
    if account_path and pathlib.Path(account_path).is_file():
        logger.info("Loading account from %s", account_path)
        return ACMEClient.load_account_from_file(account_path, provisioner, directory=config.directory, **options)
    return ACMEClient(provisioner, directory=config.directory, **options)


if __name__ == "__main__":
    sys.exit(main())
