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

import logging
import sys

import snacme
from snacme.config import CertificateRequest, DomainRequest
from snacme.order import PollSettings
from snacme.provisioner import DNSChallengeProvisioner, register

logging.basicConfig(level=logging.DEBUG if "--verbose" in sys.argv else logging.INFO)


# Register a provisioner for your own DNS server. Only record creation and removal need to be implemented,
# propagation checks are inherited.
@register("manual")
class ManualProvisioner(DNSChallengeProvisioner):
    """Asks the operator to create the TXT records by hand."""

    def _perform(self, root_domain, record_name, value):
        input(f"Create TXT record {record_name}.{root_domain} with value '{value}', then press enter.")

    def _cleanup(self, root_domain, record_name):
        print(f"TXT record {record_name}.{root_domain} may now be removed.")


# Reuse an account saved by a previous run, waiting up to 20 minutes for DNS changes to propagate
client = snacme.ACMEClient.load_account_from_file(
    "account.json",
    provisioner=ManualProvisioner(nameservers=["8.8.8.8", "1.1.1.1"], authoritative=True),
    settings=PollSettings(propagation_timeout=1200, order_timeout=600),
)

# Request several certificates. A failing certificate does not stop the others.
report = client.request_certificates(
    [
        CertificateRequest("wildcard", [DomainRequest("example.com", ["*"])]),
        CertificateRequest("hosts", [DomainRequest("example.com", ["www", "mail"]), DomainRequest("example.net")]),
    ],
    key_type="rsa4096",
    output_directory="certs",
)

for name, error in report.failed.items():
    print(f"Failed to issue certificate '{name}': {error}")
sys.exit(0 if report.success else 1)
