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

"""Single node Consul server used as the Vault storage backend."""

import os
import time
import logging

import requests

from . import console
from . import constants as const
from . import tls
from .exceptions import LabError
from .process import ProcessSupervisor
from .utils import write_secret

LOGGER = logging.getLogger(__name__)

CONFIG_TEMPLATE = """datacenter = "dc1"
data_dir = "{data_dir}"
server = true
bootstrap_expect = 1
client_addr = "0.0.0.0"
ui_config {{
  enabled = true
}}
{ports}
acl = {{
  enabled = true
  default_policy = "deny"
  enable_token_persistence = true
}}
"""

PORTS_HTTP = """ports {{
  http = {port}
}}"""

PORTS_HTTPS = """ports {{
  http = -1
  https = {port}
}}
ca_file = "{ca_file}"
cert_file = "{cert_file}"
key_file = "{key_file}"
verify_incoming = false
verify_outgoing = false
verify_server_hostname = false"""

def leader_elected(resp):
    """/v1/status/leader returns a quoted address, or "" before election"""
    try:
        return len(resp.json()) > 0
    except ValueError:
        return False

class ConsulServer(object):
    def __init__(self, ctx, supervisor = None, session = None):
        self.ctx = ctx
        self.paths = ctx.paths
        self.session = session or requests.Session()
        self.supervisor = supervisor or ProcessSupervisor(ctx, self.session)

    @property
    def config_file(self):
        return self.paths.consul_file(const.CONSUL_CONFIG)

    @property
    def log_file(self):
        return self.paths.consul_file(const.CONSUL_LOG)

    @property
    def pid_file(self):
        return self.paths.consul_file(const.CONSUL_PID)

    @property
    def token_file(self):
        return self.paths.consul_file(const.CONSUL_ACL_TOKEN)

    @property
    def token(self):
        return self.ctx.read_file(self.token_file)

    def render_config(self):
        if self.ctx.config.tls_enabled:
            ca = tls.CertificateAuthority(self.ctx)
            ports = PORTS_HTTPS.format(port = const.CONSUL_PORT,
                                       ca_file = self.paths.ca_cert,
                                       cert_file = ca.cert_file(tls.CONSUL_NODE),
                                       key_file = ca.key_file(tls.CONSUL_NODE))
        else:
            ports = PORTS_HTTP.format(port = const.CONSUL_PORT)

        return CONFIG_TEMPLATE.format(data_dir = self.paths.consul_file(const.CONSUL_DATA),
                                      ports = ports)

    def write_config(self):
        os.makedirs(self.paths.consul_file(const.CONSUL_DATA), exist_ok = True)
        with open(self.config_file, 'w') as fh:
            fh.write(self.render_config())

    @property
    def patterns(self):
        return ["consul", "agent", self.config_file]

    def running_pid(self):
        return self.supervisor.running_pid(self.pid_file, self.patterns)

    def is_running(self):
        return self.running_pid() is not None

    def start(self):
        """Configure and launch Consul, wait for a leader, then bootstrap ACLs"""
        console.header("Configuring and starting Consul (single node server)")
        self.stop()
        self.write_config()

        cmd = [self.paths.exe('consul'), "agent", "-config-file={}".format(self.config_file)]
        handle = self.supervisor.launch("Consul", cmd, self.log_file, self.pid_file, const.CONSUL_PORT)

        self.supervisor.wait_for_http(self.ctx.consul_addr + "/v1/status/leader",
                                      "Consul",
                                      self.ctx.setting('CONSUL_TIMEOUT'),
                                      log_path = handle.log_path,
                                      check = leader_elected)

        # Give the raft state time to settle before ACL calls
        time.sleep(self.ctx.setting('CONSUL_SETTLE'))

        self.bootstrap_acl()
        return handle

    def bootstrap_acl(self, retries = 5):
        """Create the ACL management token, or reuse the stored one.

        Returns:
            (str): The token SecretID
        """
        console.info("Bootstrapping Consul ACL Master Token...")
        token = self.token
        if token:
            console.info("Re-using existing Consul ACL Master Token.")
            return token

        url = self.ctx.consul_addr + "/v1/acl/bootstrap"
        last = None
        for attempt in range(retries):
            try:
                resp = self.session.put(url, timeout=10, verify=self.ctx.verify)
                if resp.status_code == 200:
                    token = resp.json().get('SecretID')
                    if token:
                        break
                last = "HTTP {}: {}".format(resp.status_code, resp.text.strip())
            except (requests.RequestException, ValueError) as ex:
                last = str(ex)

            LOGGER.debug("ACL bootstrap attempt %d failed: %s", attempt + 1, last)
            time.sleep(self.ctx.setting('POLL_INTERVAL'))
        else:
            raise LabError("Failed to bootstrap the Consul ACL system: {}".format(last))

        write_secret(self.token_file, token)
        console.info("Consul ACL Master Token saved to {}".format(self.token_file))
        return token

    def stop(self):
        self.supervisor.stop("Consul",
                             [self.pid_file],
                             patterns = self.patterns,
                             ports = [const.CONSUL_PORT])

    def members(self):
        """Consul agent members, or None if Consul can't be reached"""
        headers = {'X-Consul-Token': self.token or ''}
        try:
            resp = self.session.get(self.ctx.consul_addr + "/v1/agent/members",
                                    headers=headers, timeout=5, verify=self.ctx.verify)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as ex:
            LOGGER.debug("Could not list Consul members: %s", ex)
            return None

    def export_kv(self):
        """All KV entries in the format written by `consul kv export`

        Returns:
            (list[dict]): {key, flags, value (base64)} entries
        """
        headers = {'X-Consul-Token': self.token or ''}
        resp = self.session.get(self.ctx.consul_addr + "/v1/kv/",
                                params={'recurse': 'true'},
                                headers=headers, timeout=30, verify=self.ctx.verify)
        if resp.status_code == 404:
            return []
        resp.raise_for_status()

        return [{'key': entry['Key'],
                 'flags': entry.get('Flags', 0),
                 'value': entry.get('Value') or ''}
                for entry in resp.json()]
