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

import os
import glob
import hvac
import json
import logging

import psutil
import requests

from . import console
from . import constants as const
from . import tls
from .exceptions import VaultError, PreconditionError
from .process import ProcessSupervisor
from .utils import write_secret

LOGGER = logging.getLogger(__name__)

STORAGE_FILE = """storage "file" {{
  path = "{path}"
}}"""

STORAGE_CONSUL = """storage "consul" {{
  address = "{address}"
  path    = "vault/"
  token   = "{token}"
  scheme  = "{scheme}"{tls}
}}"""

LISTENER = """listener "tcp" {{
  address     = "{address}"{tls}
}}"""

SERVER_CONFIG = """{storage}
{listener}
api_addr      = "{api_addr}"
cluster_addr  = "https://{loopback}:{cluster_port}"
disable_mlock = true
ui            = true
"""

def hcl_path(path):
    return path.replace('\\', '/')

def _data(resp):
    """Mount / auth / audit listings are wrapped in 'data' by newer Vault versions"""
    if isinstance(resp, dict) and isinstance(resp.get('data'), dict):
        return resp['data']
    return resp or {}

def unsealed(resp):
    """Readiness check for /v1/sys/seal-status"""
    try:
        status = resp.json()
    except ValueError:
        return False
    return status.get('initialized') is True and status.get('sealed') is False

class VaultNode(object):
    """One Vault server process and the files that belong to it"""

    def __init__(self, name, directory, port, cluster_port):
        self.name = name
        self.directory = directory
        self.port = port
        self.cluster_port = cluster_port

    @property
    def config_file(self):
        return os.path.join(self.directory, const.VAULT_CONFIG)

    @property
    def log_file(self):
        return os.path.join(self.directory, const.VAULT_LOG)

    @property
    def pid_file(self):
        return os.path.join(self.directory, const.VAULT_PID)

    def __repr__(self):
        return "VaultNode({!r}, port={})".format(self.name, self.port)

def vault_nodes(ctx, multi = None):
    """The Vault nodes for the current (or the given) cluster mode"""
    if multi is None:
        multi = ctx.config.multi

    if not multi:
        return [VaultNode(tls.vault_node_names(False)[0],
                          ctx.paths.vault,
                          const.VAULT_PORT,
                          const.VAULT_CLUSTER_PORT)]

    names = tls.vault_node_names(True)
    return [VaultNode(names[i],
                      ctx.paths.vault_file("node_{}".format(i + 1)),
                      const.CLUSTER_API_PORTS[i],
                      const.CLUSTER_CLUSTER_PORTS[i])
            for i in range(const.CLUSTER_NODES)]

class VaultServer(object):
    """Generates the configuration for and supervises the Vault server process(es)"""

    def __init__(self, ctx, supervisor = None, session = None):
        self.ctx = ctx
        self.paths = ctx.paths
        self.supervisor = supervisor or ProcessSupervisor(ctx, session)

    @property
    def nodes(self):
        return vault_nodes(self.ctx)

    @property
    def pids_file(self):
        return self.paths.vault_file(const.VAULT_PIDS)

    def render_config(self, node, consul_token = None):
        config = self.ctx.config

        if config.consul:
            if not consul_token:
                raise PreconditionError("Consul ACL token not found. Start Consul first.")
            storage_tls = ""
            if config.tls_enabled:
                storage_tls = '\n  tls_ca_file = "{}"'.format(hcl_path(self.paths.ca_cert))
            storage = STORAGE_CONSUL.format(address = "{}:{}".format(const.LOOPBACK, const.CONSUL_PORT),
                                            token = consul_token,
                                            scheme = self.ctx.scheme,
                                            tls = storage_tls)
        else:
            storage = STORAGE_FILE.format(path = hcl_path(self.paths.vault_file(const.VAULT_STORAGE)))

        if config.tls_enabled:
            ca = tls.CertificateAuthority(self.ctx)
            listener_tls = ('\n  tls_cert_file = "{}"'
                            '\n  tls_key_file  = "{}"').format(hcl_path(ca.cert_file(node.name)),
                                                             hcl_path(ca.key_file(node.name)))
        else:
            listener_tls = "\n  tls_disable = 1"
        listener = LISTENER.format(address = "{}:{}".format(const.LOOPBACK, node.port),
                                   tls = listener_tls)

        return SERVER_CONFIG.format(storage = storage,
                                    listener = listener,
                                    api_addr = self.ctx.url(node.port),
                                    loopback = const.LOOPBACK,
                                    cluster_port = node.cluster_port)

    def write_config(self, node, consul_token = None):
        os.makedirs(node.directory, exist_ok = True)
        if not self.ctx.config.consul:
            os.makedirs(self.paths.vault_file(const.VAULT_STORAGE), exist_ok = True)
        with open(node.config_file, 'w') as fh:
            fh.write(self.render_config(node, consul_token))

    @property
    def timeout(self):
        if self.ctx.config.multi or self.ctx.config.consul:
            return self.ctx.setting('CLUSTER_TIMEOUT')
        return self.ctx.setting('VAULT_TIMEOUT')

    def start(self, consul_token = None):
        """Write the configuration of every node, launch them and wait for each API

        Returns:
            (list[ServerHandle])
        """
        if self.ctx.config.multi:
            console.header("Configuring and starting 3-node Vault cluster (Consul backend)")
        else:
            console.header("Configuring and starting Vault")
        self.stop()

        handles = []
        for node in self.nodes:
            self.write_config(node, consul_token)
            cmd = [self.paths.exe('vault'), "server", "-config={}".format(node.config_file)]
            handle = self.supervisor.launch("Vault {}".format(node.name), cmd,
                                            node.log_file, node.pid_file, node.port)
            handles.append(handle)

            if self.ctx.config.multi:
                with open(self.pids_file, 'a') as fh:
                    fh.write("{}\n".format(handle.pid))

            self.supervisor.wait_for_http(self.ctx.url(node.port) + "/v1/sys/seal-status",
                                          "Vault {}".format(node.name),
                                          self.timeout,
                                          log_path = node.log_file)
        return handles

    def all_pid_files(self):
        """PID files of both cluster modes, so a mode switch can't strand a process"""
        return [node.pid_file for node in vault_nodes(self.ctx, False) + vault_nodes(self.ctx, True)]

    @property
    def patterns(self):
        """Command line fragments shared by every lab Vault server"""
        return ["vault", "server", self.paths.vault]

    def stop(self):
        if os.path.exists(self.pids_file):
            with open(self.pids_file, 'r') as fh:
                pids = [int(l) for l in fh.read().split() if l.strip().isdigit()]
            for pid in pids:
                if not self.supervisor.owns(pid, self.patterns):
                    LOGGER.debug("Skipping PID %s, not a lab Vault server", pid)
                    continue
                try:
                    self.supervisor.terminate(pid)
                except psutil.Error as ex:
                    console.warning("Could not stop Vault node PID {}: {}".format(pid, ex))
            os.remove(self.pids_file)

        self.supervisor.stop("Vault",
                             self.all_pid_files(),
                             patterns = self.patterns,
                             ports = self.ctx.vault_ports)

    def running_pids(self):
        pids = []
        for node in self.nodes:
            pid = self.supervisor.running_pid(node.pid_file, ["vault", node.config_file])
            if pid is not None:
                pids.append(pid)
        return pids

    def is_running(self):
        return len(self.running_pids()) > 0

class Vault(object):
    """Client side operations against the lab's Vault.

    All requests go to the first node; initialization state and data are
    shared by every node of a cluster, seal state is not.
    """

    def __init__(self, ctx, url = None, session = None):
        self.ctx = ctx
        self.paths = ctx.paths
        self._url = url
        self.session = session or requests.Session()
        self.supervisor = ProcessSupervisor(ctx, self.session)

    @property
    def url(self):
        return self._url or self.ctx.vault_addr

    def path(self, filename):
        """Get the complete file path for one of the lab's Vault files.
        Args:
            filename (string) : Name of the file
        Returns:
            (string) : Complete file path
        """
        return self.paths.vault_file(filename)

    def connect(self, read_token = None, url = None):
        client = hvac.Client(url=url or self.url, verify=self.ctx.verify, session=self.session)

        if read_token is not None:
            token_file = self.path(read_token)
            if not os.path.exists(token_file):
                raise VaultError("Token file '{}' doesn't exist".format(token_file))

            with open(token_file, "r") as fh:
                client.token = fh.read().strip()
        return client

    def root(self):
        return self.connect(const.ROOT_TOKEN)

    def seal_status(self, url = None):
        """Seal status of one node, None if it can't be reached"""
        try:
            return self.connect(url = url).sys.read_seal_status()
        except (hvac.exceptions.VaultError, requests.RequestException) as ex:
            LOGGER.debug("Seal status of %s unavailable: %s", url or self.url, ex)
            return None

    def initialize(self, secrets = 1, threshold = 1):
        """Initialize the lab Vault if, and only if, it reports not initialized.

        The root token and the single unseal key are written to disk. A Vault
        that is already initialized is never initialized again, as that would
        orphan the existing data.

        Args:
            secrets (int) : Total number of secrets to split the master key into
            threshold (int) : The number of secrets required to reconstruct the master key

        Returns:
            (bool) : If the Vault was initialized by this call
        """
        console.header("Initializing and unsealing Vault")
        client = self.connect()
        if client.sys.is_initialized():
            console.info("Vault is already initialized.")
            if not os.path.exists(self.path(const.UNSEAL_KEY)):
                raise VaultError("Vault is initialized but {} is missing, cannot unseal"
                                 .format(self.path(const.UNSEAL_KEY)))
            return False

        console.info("Initializing with {} secrets and {} needed to unseal".format(secrets, threshold))
        result = client.sys.initialize(secret_shares=secrets, secret_threshold=threshold)
        write_secret(self.path(const.ROOT_TOKEN), result["root_token"])
        write_secret(self.path(const.UNSEAL_KEY), result["keys_base64"][0])

        console.info("Vault initialized. Root Token and Unseal Key saved.")
        console.warning("INSECURE: Credentials are saved in plain text in {}".format(self.paths.vault))
        return True

    def unseal(self, urls = None):
        """Submit the stored unseal key to every node that reports sealed.

        Each node of a cluster holds its own seal state, so every listener is
        unsealed independently.

        Returns:
            (int) : Number of nodes that were unsealed by this call
        """
        key = self.ctx.read_file(self.path(const.UNSEAL_KEY))
        if not key:
            raise VaultError("Could not locate the unseal key file, not unsealing")

        count = 0
        for url in urls or self.ctx.vault_addrs:
            client = self.connect(url = url)
            if not client.sys.is_sealed():
                console.info("Vault on {} is already unsealed.".format(url))
                continue

            res = client.sys.submit_unseal_key(key)
            if res['sealed']:
                raise VaultError("Vault on {} still sealed, {} of {} keys entered"
                                 .format(url, res['progress'], res['t']))
            console.info("Vault on {} unsealed.".format(url))
            count += 1
        return count

    def wait_until_unsealed(self, urls = None):
        """Poll every node until it reports initialized and unsealed.

        Raises:
            StatusCheckError: If a node doesn't become operational in time
        """
        console.info("Waiting for Vault to be fully unsealed...")
        for node, url in zip(vault_nodes(self.ctx), urls or self.ctx.vault_addrs):
            self.supervisor.wait_for_http(url + "/v1/sys/seal-status",
                                          "Vault {} (unsealed)".format(node.name),
                                          self.ctx.setting('UNSEAL_TIMEOUT'),
                                          log_path = node.log_file,
                                          check = unsealed)
        console.info("Vault is unsealed and operational.")

    def configure(self):
        """A companion function that will configure a newly initialized Vault
        for lab use. This includes:
            * KV v2 secrets engine at secret/
            * PKI secrets engine at pki/
            * All of the policies from policies/*.hcl
            * Userpass auth with the demo user
            * AppRole auth with the demo role, ids saved to disk
            * File audit device
            * A test secret

        Every step checks the current state first, so it is safe to run
        against a Vault that is already configured.
        """
        console.header("Configuring common Vault features")
        client = self.root()

        # Secrets engines
        mounts = _data(client.sys.list_mounted_secrets_engines())
        if const.KV_MOUNT + '/' not in mounts:
            console.info(" - Enabling KV v2 secrets engine at '{}/'".format(const.KV_MOUNT))
            self._tolerate(client.sys.enable_secrets_engine, 'kv',
                           path=const.KV_MOUNT, options={'version': '2'})
        else:
            console.info(" - KV secrets engine already enabled at '{}/'".format(const.KV_MOUNT))

        if const.PKI_MOUNT + '/' not in mounts:
            console.info(" - Enabling PKI secrets engine at '{}/'".format(const.PKI_MOUNT))
            self._tolerate(client.sys.enable_secrets_engine, 'pki', path=const.PKI_MOUNT)
        else:
            console.info(" - PKI secrets engine already enabled at '{}/'".format(const.PKI_MOUNT))
        client.sys.tune_mount_configuration(const.PKI_MOUNT, max_lease_ttl=const.PKI_MAX_LEASE_TTL)

        # Policies
        path = os.path.join(const.POLICY_DIR, "*.hcl")
        for policy in sorted(glob.glob(path)):
            name = os.path.basename(policy).split('.')[0]
            console.info(" - Writing policy '{}'".format(name))
            with open(policy, 'r') as fh:
                client.sys.create_or_update_policy(name, fh.read())

        # Auth methods
        auths = _data(client.sys.list_auth_methods())
        for method in ('userpass', 'approle'):
            if method + '/' not in auths:
                console.info(" - Enabling {} authentication".format(method))
                self._tolerate(client.sys.enable_auth_method, method)
            else:
                console.info(" - {} authentication already enabled".format(method))

        client.write_data("auth/userpass/users/{}".format(const.DEMO_USER),
                          data={'password': const.DEMO_PASSWORD,
                                'policies': ",".join(const.DEMO_USER_POLICIES)})

        console.info(" - Configuring AppRole '{}'".format(const.APPROLE_NAME))
        client.auth.approle.create_or_update_approle(const.APPROLE_NAME,
                                                     token_policies=const.APPROLE_POLICIES)
        self.write_approle_credentials(client)

        # Audit device
        audit_path = self.ctx.setting('AUDIT_LOG_PATH')
        if 'file/' not in _data(client.sys.list_enabled_audit_devices()):
            console.info(" - Enabling file audit device to {}".format(audit_path))
            self._tolerate(client.sys.enable_audit_device, 'file',
                           options={'file_path': audit_path})
        else:
            console.info(" - File audit device already enabled")

        console.info(" - Writing test secret to {}/{}".format(const.KV_MOUNT, const.TEST_SECRET_PATH))
        client.secrets.kv.v2.create_or_update_secret(const.TEST_SECRET_PATH,
                                                     secret=const.TEST_SECRET,
                                                     mount_point=const.KV_MOUNT)

    def _tolerate(self, fn, *args, **kwargs):
        """Call fn, treating an 'already in use / exists' refusal as success"""
        try:
            return fn(*args, **kwargs)
        except hvac.exceptions.InvalidRequest as ex:
            msg = str(ex).lower()
            if 'already in use' in msg or 'already exists' in msg or 'already enabled' in msg:
                console.warning("{} (ignored)".format(str(ex).strip()))
                return None
            raise

    def write_approle_credentials(self, client = None):
        """Read the demo role's role_id, generate a secret_id and save both

        Returns:
            (tuple(str, str)) : role_id, secret_id
        """
        client = client or self.root()
        role_id = client.auth.approle.read_role_id(const.APPROLE_NAME)['data']['role_id']
        secret_id = client.auth.approle.generate_secret_id(const.APPROLE_NAME)['data']['secret_id']
        write_secret(self.path(const.APPROLE_ROLE_ID), role_id)
        write_secret(self.path(const.APPROLE_SECRET_ID), secret_id)
        console.info("   AppRole role_id and secret_id saved to {}".format(self.paths.vault))
        return role_id, secret_id

    def approle_login(self, role_id = None, secret_id = None):
        """Log in with an AppRole pair, by default the one saved on disk.

        Reusing a secret_id that the server considers consumed raises the
        server's refusal as a VaultError.

        Returns:
            (str) : The client token
        """
        role_id = role_id or self.ctx.read_file(self.path(const.APPROLE_ROLE_ID))
        secret_id = secret_id or self.ctx.read_file(self.path(const.APPROLE_SECRET_ID))
        if not role_id or not secret_id:
            raise VaultError("AppRole credentials not found in {}".format(self.paths.vault))

        try:
            resp = self.connect().auth.approle.login(role_id, secret_id)
        except hvac.exceptions.VaultError as ex:
            raise VaultError("AppRole login rejected: {}".format(str(ex).strip()))
        return resp['auth']['client_token']

    def export_api_state(self, directory):
        """Best-effort dump of the live configuration into JSON files.

        Failures are reported as warnings and never abort the caller.

        Returns:
            (list[str]) : Names of the files written
        """
        client = self.root()
        exports = [
            ("policies_list.json", lambda: client.sys.list_policies()),
            ("auth_methods.json", lambda: _data(client.sys.list_auth_methods())),
            ("secrets_engines.json", lambda: _data(client.sys.list_mounted_secrets_engines())),
            ("approle_config.json", lambda: client.read("auth/approle/role/{}".format(const.APPROLE_NAME))),
        ]

        os.makedirs(directory, exist_ok = True)
        written = []
        for filename, export in exports:
            try:
                data = export()
            except (hvac.exceptions.VaultError, requests.RequestException) as ex:
                console.warning("Could not export {}: {}".format(filename, ex))
                continue

            with open(os.path.join(directory, filename), 'w') as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            written.append(filename)
        return written

    def smoke_test(self):
        """Exercise the demo configuration.

        Returns:
            (list[tuple(str, bool, str)]) : check name, passed, detail
        """
        results = []

        def check(name, fn):
            try:
                detail = fn()
                results.append((name, True, detail or ""))
            except (hvac.exceptions.VaultError, requests.RequestException, VaultError, KeyError) as ex:
                results.append((name, False, str(ex).strip()))

        client = self.root()
        kv = client.secrets.kv.v2

        def seal():
            status = client.sys.read_seal_status()
            if status['sealed']:
                raise VaultError("Vault is sealed")
            return "version {}".format(status.get('version', 'unknown'))

        def secret():
            kv.create_or_update_secret(const.TEST_SECRET_PATH, secret=const.TEST_SECRET,
                                       mount_point=const.KV_MOUNT)
            data = kv.read_secret_version(const.TEST_SECRET_PATH, mount_point=const.KV_MOUNT,
                                          raise_on_deleted_version=True)['data']['data']
            if data != const.TEST_SECRET:
                raise VaultError("Read back {!r}".format(data))
            return "{}/{} message={!r}".format(const.KV_MOUNT, const.TEST_SECRET_PATH, data['message'])

        def userpass():
            self.connect().auth.userpass.login(const.DEMO_USER, const.DEMO_PASSWORD)
            return "logged in as {}".format(const.DEMO_USER)

        def pki():
            if const.PKI_MOUNT + '/' not in _data(client.sys.list_mounted_secrets_engines()):
                raise VaultError("{}/ is not mounted".format(const.PKI_MOUNT))

        def audit():
            if len(_data(client.sys.list_enabled_audit_devices())) == 0:
                raise VaultError("No audit device enabled")

        def approle():
            self.approle_login()
            return "role {}".format(const.APPROLE_NAME)

        check("Seal status", seal)
        check("KV v2 write / read", secret)
        check("Userpass login", userpass)
        check("PKI engine", pki)
        check("Audit device", audit)
        check("AppRole login", approle)
        return results

    def seal(self):
        """Seal an unsealed Vault.

        Used to quickly protect a Vault without stopping the server.
        """
        client = self.root()
        if client.sys.is_sealed():
            console.info("Vault is already sealed")
            return

        client.sys.seal()
        console.info("Vault is sealed")

    def shell(self):
        """Create a connection to Vault and then drop the user into an interactive
        shell (just like the python interperter) with 'client' holding the Vault
        connection object.
        """
        import code
        client = self.root()
        code.interact(local=locals())

    def status(self):
        """Print the status of the lab Vault: seal state of every node and,
        when unsealed, the mounted engines, auth methods, audit devices and policies.
        """
        for url in self.ctx.vault_addrs:
            status = self.seal_status(url)
            if status is None:
                console.yellow("{}: not reachable".format(url))
            else:
                print("{}: initialized={} sealed={} version={}".format(url,
                                                                        status.get('initialized'),
                                                                        status.get('sealed'),
                                                                        status.get('version')))

        status = self.seal_status()
        if status is None or status.get('sealed', True):
            return

        client = self.root()
        print()
        print("Secret Backends")
        print(json.dumps(sorted(_data(client.sys.list_mounted_secrets_engines())), indent=True))

        print()
        print("Auth Backends")
        print(json.dumps(sorted(_data(client.sys.list_auth_methods())), indent=True))

        print()
        print("Audit Backends")
        print(json.dumps(sorted(_data(client.sys.list_enabled_audit_devices())), indent=True))

        print()
        print("Policies")
        print(json.dumps(_data(client.sys.list_policies()).get('policies', []), indent=True))
