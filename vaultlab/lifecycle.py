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

"""Lab lifecycle: the start / stop / restart / reset / cleanup / status
commands and the order in which they drive the other components.

States:
    stopped          -> no Vault process recorded as alive
    running-sealed   -> Vault process alive, seal status sealed or unknown
    running-unsealed -> Vault process alive and unsealed
"""

import os
import time
import shutil
import logging
import subprocess

import requests

from . import console
from . import constants as const
from .configuration import LabConfig, CONSUL, MULTI, BACKENDS, CLUSTER_MODES
from .consul import ConsulServer
from .exceptions import LabError, PreconditionError, PortInUseError
from .process import ProcessSupervisor, port_in_use
from .provision import BinaryProvisioner
from .tls import CertificateAuthority
from .utils import check_dependencies, dir_has_entries, host_accessible_ip, is_wsl
from .vault import Vault, VaultServer

LOGGER = logging.getLogger(__name__)

STOPPED = 'stopped'
RUNNING_SEALED = 'running-sealed'
RUNNING_UNSEALED = 'running-unsealed'

def resolve_config(ctx, backend = None, cluster = None, tls = None):
    """Decide the LabConfig for start / reset.

    Values given on the command line are used as is. Anything else is asked
    for, with the saved configuration (or VAULT_LAB_BACKEND) as the default
    answer. With ctx.assume_yes the defaults are taken without asking.

    Returns:
        (LabConfig)
    """
    saved = ctx.config

    if cluster is None:
        if ctx.assume_yes:
            cluster = saved.cluster_mode
        else:
            cluster = console.choose("Cluster mode", CLUSTER_MODES, saved.cluster_mode)
    console.info("Using cluster mode: {}".format(cluster))

    if backend is None:
        if cluster == MULTI:
            backend = CONSUL
            console.info("Cluster mode is multi: forcing backend to consul")
        else:
            default = os.environ.get('VAULT_LAB_BACKEND') or saved.backend_type
            if default not in BACKENDS:
                raise PreconditionError("VAULT_LAB_BACKEND must be one of {}".format(", ".join(BACKENDS)))
            if ctx.assume_yes:
                backend = default
            else:
                backend = console.choose("Choose storage backend", BACKENDS, default)
    console.info("Using backend: {}".format(backend))

    if tls is None:
        if ctx.assume_yes:
            tls = saved.tls_enabled
        else:
            tls = console.confirm("Enable TLS/SSL encryption?", default = saved.tls_enabled, timeout = None)
    console.info("TLS encryption: {}".format("enabled" if tls else "disabled"))

    return LabConfig(backend, cluster, tls)

class LabController(object):
    def __init__(self, ctx, session = None):
        self.ctx = ctx
        self.paths = ctx.paths
        self.session = session or requests.Session()

        self.supervisor = ProcessSupervisor(ctx, self.session)
        self.provisioner = BinaryProvisioner(ctx, self.session)
        self.ca = CertificateAuthority(ctx)
        self.consul = ConsulServer(ctx, self.supervisor, self.session)
        self.server = VaultServer(ctx, self.supervisor)
        self.vault = Vault(ctx, session = self.session)

    ########################
    # State
    def vault_running(self):
        return self.server.is_running()

    def state(self):
        if not self.vault_running():
            return STOPPED

        status = self.vault.seal_status()
        if status is not None and status.get('sealed') is False:
            return RUNNING_UNSEALED
        return RUNNING_SEALED

    ########################
    # Preconditions
    def validate_directories(self):
        for directory in (self.paths.base, self.paths.bin):
            try:
                os.makedirs(directory, exist_ok = True)
            except OSError as ex:
                raise PreconditionError("Cannot create directory {}: {}".format(directory, ex))
            if not os.access(directory, os.W_OK):
                raise PreconditionError("Directory {} is not writable".format(directory))

    def check_ports(self):
        """Refuse to start over a port that something else is listening on"""
        ports = list(self.ctx.vault_ports)
        if self.ctx.config.consul:
            ports.append(const.CONSUL_PORT)

        for port in ports:
            if port_in_use(port):
                raise PortInUseError(port)

    def check_dependencies(self):
        if self.ctx.config.tls_enabled:
            check_dependencies(["openssl"])

    def has_data(self):
        return any(dir_has_entries(d) for d in self.paths.data_dirs())

    ########################
    # Steps
    def provision(self):
        self.provisioner.ensure('vault', self.ctx.setting('VAULT_VERSION'))
        if self.ctx.config.consul:
            self.provisioner.ensure('consul', self.ctx.setting('CONSUL_VERSION'))

    def launch(self):
        """Start the servers for the current configuration (TLS material first)"""
        if self.ctx.config.tls_enabled:
            self.ca.setup()

        consul_token = None
        if self.ctx.config.consul:
            self.consul.start()
            consul_token = self.consul.token

        return self.server.start(consul_token)

    def unseal(self):
        """Initialize if needed, then unseal every node and wait for it

        Returns:
            (bool): If the Vault was initialized by this call
        """
        initialized = self.vault.initialize()
        self.vault.unseal()
        self.vault.wait_until_unsealed()
        return initialized

    ########################
    # Commands
    def start(self, clean = False):
        """stopped -> running-unsealed"""
        console.header("Validating environment")
        if clean:
            self.cleanup()
        elif self.has_data():
            msg = "Existing lab data found in {}. Wipe it and start fresh?".format(self.paths.base)
            if not self.ctx.assume_yes and console.confirm(msg, default = False, timeout = None):
                self.cleanup()
            else:
                console.info("Re-using existing lab data.")

        if self.vault_running() or self.consul.is_running():
            console.info("Lab processes are already running, stopping them first.")
            self.stop()

        self.validate_directories()
        self.check_ports()
        self.check_dependencies()

        self.provision()
        self.launch()
        self.unseal()
        self.vault.configure()

        self.ctx.config.save(self.paths.config_file)
        self.display_final_info()

    def stop(self):
        """any -> stopped, never fails because nothing was running"""
        console.header("Stopping Vault lab environment (Backend: {})".format(self.ctx.config.backend_type))
        self.server.stop()
        if self.ctx.config.consul or os.path.exists(self.consul.pid_file):
            self.consul.stop()
        console.info("Vault lab environment stopped.")

    def restart(self):
        """any -> running-unsealed, keeping the existing data"""
        console.header("Restarting Vault lab environment (Backend: {})".format(self.ctx.config.backend_type))
        self.validate_directories()
        self.check_dependencies()
        self.provision()
        self.stop()
        time.sleep(self.ctx.setting('RESTART_PAUSE'))

        self.launch()
        if self.unseal():
            # There was no data to keep, so this is a first start
            self.vault.configure()
            self.ctx.config.save(self.paths.config_file)

        console.info("Vault lab environment restarted and unsealed.")
        self.display_final_info()

    def reset(self):
        """any -> running-unsealed on freshly wiped data"""
        console.header("Resetting Vault lab environment")
        self.start(clean = True)

    def cleanup(self):
        """any -> stopped, with the data directories wiped and recreated empty"""
        console.header("Full cleanup of previous lab environment")
        self.stop()

        if os.path.exists(self.paths.config_file):
            os.remove(self.paths.config_file)

        console.info("Deleting previous working directories...")
        for directory in self.paths.data_dirs():
            shutil.rmtree(directory, ignore_errors = True)
            os.makedirs(directory, exist_ok = True)
        console.info("Cleanup completed.")

    def status(self):
        """Report process liveness and, when alive, the seal state

        Returns:
            (str): One of STOPPED, RUNNING_SEALED, RUNNING_UNSEALED
        """
        console.header("Checking Vault lab status (Backend: {})".format(self.ctx.config.backend_type))

        pids = self.server.running_pids()
        if len(pids) == 0:
            state = STOPPED
            console.info("Vault server is NOT RUNNING.")
        else:
            console.info("Vault process is RUNNING. PID: {}".format(", ".join(str(p) for p in pids)))
            state = self.state()
            if state == RUNNING_UNSEALED:
                console.info("Vault is UNSEALED and READY.")
            else:
                console.warning("Vault is SEALED. Run 'restart' to unseal.")

        if self.ctx.config.consul:
            pid = self.consul.running_pid()
            if pid is not None:
                console.info("Consul process is RUNNING. PID: {}".format(pid))
                members = self.consul.members()
                if members is not None:
                    console.info("Consul members: {}".format(len(members)))
            else:
                console.info("Consul server is NOT RUNNING.")

        if self.ctx.config.tls_enabled:
            console.info("TLS encryption is ENABLED.")
        else:
            console.info("TLS encryption is DISABLED.")

        return state

    def shell(self):
        """Run an interactive shell with the lab's variables exported

        Returns:
            (int): The shell's exit code
        """
        env = os.environ.copy()
        env.update(self.ctx.environment())
        shell = os.environ.get('SHELL') or 'bash'

        console.info("Lab shell active. Type 'exit' to leave.")
        return subprocess.call([shell, "-i"], env=env)

    def smoke_test(self):
        """Run the smoke checks against the running lab, raising if any fails"""
        if self.state() != RUNNING_UNSEALED:
            raise PreconditionError("The lab is not running and unsealed, start it first")

        console.header("Running smoke tests")
        results = self.vault.smoke_test()
        failed = 0
        for name, ok, detail in results:
            line = "{}: {}".format(name, detail) if detail else name
            if ok:
                console.passed(line)
            else:
                console.fail(line)
                failed += 1

        if failed:
            raise LabError("{} of {} smoke tests failed".format(failed, len(results)))
        console.info("All {} smoke tests passed.".format(len(results)))
        return results

    def display_final_info(self):
        console.header("Lab Vault is ready to use!")
        config = self.ctx.config
        read = self.ctx.read_file
        tls_note = " (TLS enabled)" if config.tls_enabled else ""
        consul_url = "{}://{}:{}".format(self.ctx.scheme, host_accessible_ip(), const.CONSUL_PORT)

        print()
        console.yellow("--- ACCESS DETAILS ---")
        print("  Vault UI: {}{}".format(self.ctx.vault_addr, tls_note))
        print("  Vault Root Token: {}".format(read(self.paths.vault_file(const.ROOT_TOKEN)) or "unknown"))

        if config.consul:
            print("  ---")
            print("  Consul UI: {}{}".format(consul_url, tls_note))
            print("  Consul ACL Token: {}".format(self.consul.token or "unknown"))

        if config.multi:
            print()
            console.yellow("Vault cluster nodes:")
            for addr in self.ctx.vault_addrs:
                print("  {}".format(addr))

        role_id = read(self.paths.vault_file(const.APPROLE_ROLE_ID))
        if role_id:
            print()
            console.yellow("--- APPROLE ({}) ---".format(const.APPROLE_NAME))
            print("  Role ID: {}".format(role_id))
            print("  Secret ID: {}".format(read(self.paths.vault_file(const.APPROLE_SECRET_ID)) or "unknown"))

        if config.tls_enabled:
            ca_cert = self.paths.ca_cert
            print()
            console.yellow("--- TLS CERTIFICATE INFO ---")
            print("  CA Certificate: {}".format(ca_cert))
            print("  Certificates Directory: {}".format(self.paths.certs))
            print()
            print("  To trust the CA certificate:")
            print("  Linux: sudo cp {} /usr/local/share/ca-certificates/vault-lab-ca.crt && sudo update-ca-certificates".format(ca_cert))
            print("  macOS: sudo security add-trusted-cert -d -r trustRoot -k /Library/Keychains/System.keychain {}".format(ca_cert))
            print("  Windows: Import the CA cert via certmgr.msc into Trusted Root Certification Authorities")
            if is_wsl():
                print()
                print("  WSL Note: Vault uses localhost (127.0.0.1) for local access")
                print("  Consul uses the VM IP ({}) for Windows host access".format(host_accessible_ip()))

        print()
        print("  Run 'vault-lab shell' for a shell with VAULT_ADDR / VAULT_TOKEN set.")
