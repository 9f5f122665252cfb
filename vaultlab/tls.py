# Copyright 2016 The Johns Hopkins University Applied Physics Laboratory
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

"""Self signed certificate authority and node certificates for the lab.

All of the cryptography is done by the `openssl` command line tool.
"""

import os
import shutil
import logging
import subprocess

from . import console
from .exceptions import LabError
from .utils import run, check_dependencies, host_accessible_ip

LOGGER = logging.getLogger(__name__)

SUBJECT = "/C=IT/ST=Virtual/L=Lab/O=Vault Lab/CN={}"
CA_NAME = "Vault Lab CA"
KEY_BITS = "2048"

SAN_CONFIG = """[req]
distinguished_name = req_distinguished_name
req_extensions = v3_req

[req_distinguished_name]

[v3_req]
subjectAltName = @alt_names

[alt_names]
DNS.1 = localhost
DNS.2 = {name}
IP.1 = 127.0.0.1
IP.2 = {ip}
"""

def vault_node_names(multi):
    if multi:
        return ["vault-node{}".format(i) for i in range(1, 4)]
    return ["vault-server"]

CONSUL_NODE = "consul-server"

class CertificateAuthority(object):
    """Lab CA kept under <base>/tls, issuing one certificate per server"""

    def __init__(self, ctx):
        self.ctx = ctx
        self.paths = ctx.paths

    def cert_file(self, name):
        return os.path.join(self.paths.certs, "{}.pem".format(name))

    def key_file(self, name):
        return os.path.join(self.paths.certs, "{}-key.pem".format(name))

    def _openssl(self, *args):
        try:
            return run(["openssl"] + list(args))
        except subprocess.CalledProcessError as ex:
            raise LabError("openssl {} failed: {}".format(args[0], (ex.stderr or "").strip()))

    def is_valid(self, cert):
        """If cert exists, parses and has not expired"""
        if not os.path.exists(cert):
            return False
        try:
            run(["openssl", "x509", "-in", cert, "-noout", "-checkend", "0"])
            return True
        except subprocess.CalledProcessError:
            return False

    def ensure_ca(self):
        os.makedirs(self.paths.ca, exist_ok = True)
        cert, key = self.paths.ca_cert, self.paths.ca_key

        if os.path.exists(cert) and os.path.exists(key) and self.is_valid(cert):
            console.info("CA certificate already exists, reusing.")
            return cert

        console.info("Generating Certificate Authority (CA) with OpenSSL...")
        self._openssl("genrsa", "-out", key, KEY_BITS)
        os.chmod(key, 0o600)
        self._openssl("req", "-new", "-x509", "-key", key, "-sha256",
                      "-days", str(self.ctx.setting('CA_DAYS')),
                      "-out", cert, "-subj", SUBJECT.format(CA_NAME))

        # Certificates signed by a previous CA are no longer trusted
        shutil.rmtree(self.paths.certs, ignore_errors = True)

        console.info("CA certificate generated: {}".format(cert))
        return cert

    def ensure_certificate(self, name, ip = "127.0.0.1"):
        """Issue (or reuse) the certificate for a server node.

        Returns:
            (tuple(str, str)): Certificate and key paths
        """
        os.makedirs(self.paths.certs, exist_ok = True)
        cert, key = self.cert_file(name), self.key_file(name)

        if os.path.exists(key) and self.is_valid(cert):
            console.info("TLS certificate already exists for {}, reusing.".format(name))
            return cert, key

        if os.path.exists(cert):
            console.warning("Certificate for {} is invalid or expired, regenerating".format(name))

        console.info("Generating TLS certificate for {}".format(name))
        csr = os.path.join(self.paths.certs, "{}.csr".format(name))
        ext = os.path.join(self.paths.certs, "{}.conf".format(name))
        try:
            with open(ext, 'w') as fh:
                fh.write(SAN_CONFIG.format(name = name, ip = ip))

            self._openssl("genrsa", "-out", key, KEY_BITS)
            os.chmod(key, 0o600)
            self._openssl("req", "-new", "-key", key, "-out", csr,
                          "-subj", SUBJECT.format(name))
            self._openssl("x509", "-req", "-in", csr,
                          "-CA", self.paths.ca_cert, "-CAkey", self.paths.ca_key,
                          "-CAcreateserial", "-out", cert,
                          "-days", str(self.ctx.setting('CERT_DAYS')),
                          "-extensions", "v3_req", "-extfile", ext)
        finally:
            for tmp in (csr, ext):
                if os.path.exists(tmp):
                    os.remove(tmp)

        return cert, key

    def setup(self):
        """Create the CA plus the certificates needed by the current configuration"""
        console.header("Setting up TLS infrastructure")
        check_dependencies(["openssl"])

        self.ensure_ca()
        for name in vault_node_names(self.ctx.config.multi):
            self.ensure_certificate(name)
        if self.ctx.config.consul:
            # Consul listens on every interface, reachable from a WSL host
            self.ensure_certificate(CONSUL_NODE, host_accessible_ip())

        console.info("TLS infrastructure setup completed.")
