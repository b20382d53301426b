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

import snacme
from snacme.config import CertificateRequest, DomainRequest
from snacme.provisioner import get_provisioner

# Create the DNS provider used to publish the challenge TXT records. Porkbun is bundled with snacme.
provisioner = get_provisioner(
    "porkbun",
    public="pk1_...",
    secret="sk1_...",
    nameservers=["8.8.8.8", "1.1.1.1"],  # Set the nameservers to query when checking DNS propagation
)

# Create a client object to interface with the ACME server. In this example, the Let's Encrypt staging environment.
client = snacme.ACMEClient(
    provisioner=provisioner,
    directory="https://acme-staging-v02.api.letsencrypt.org/directory",
    contacts=["user@example.com"],
)

# Register a new ACME account and save it so later runs reuse it
client.new_account()
client.export_account_to_file("account.json")

# Request a certificate for example.com and www.example.com. The TXT records are published, checked and removed for us.
issued = client.request_certificate(
    CertificateRequest("example", [DomainRequest("example.com", [".", "www"])]),
    key_type="ec256",
)
print(issued.certificate.decode())

# Write example.pem and example.der to the certs directory
client.export_certificate_to_directory("certs", issued)
