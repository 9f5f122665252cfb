# Copyright 2018 The Johns Hopkins University Applied Physics Laboratory
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
import re
import yaml

from . import console
from .exceptions import PreconditionError

########################
# Network layout
LOOPBACK = "127.0.0.1"
VAULT_PORT = 8200
VAULT_CLUSTER_PORT = 8201
CONSUL_PORT = 8500

# Multi node clusters run three Vault servers side by side
CLUSTER_NODES = 3
CLUSTER_API_PORTS = [8200, 8201, 8202]
CLUSTER_CLUSTER_PORTS = [8300, 8301, 8302]

########################
# Binary provisioning
RELEASES_INDEX_URL = "https://releases.hashicorp.com/{product}/index.json"
RELEASES_DOWNLOAD_URL = "https://releases.hashicorp.com/{product}/{version}/{product}_{version}_{platform}.zip"
UNSTABLE_RELEASE = re.compile(r"ent|rc|beta|preview|alpha")
LATEST = "latest"

########################
# File layout (relative to the base directory)
BIN_DIR = "bin"
VAULT_DIR = "vault-data"
CONSUL_DIR = "consul-data"
TLS_DIR = "tls"
BACKUP_DIR = "backups"
LAB_CONFIG_FILE = "vault-lab-ctl.conf"
SETTINGS_FILE = "vault-lab.yml"
LOCK_FILE = ".vault-lab.lock"

VAULT_CONFIG = "config.hcl"
VAULT_LOG = "vault.log"
VAULT_PID = "vault.pid"
VAULT_PIDS = "vault_pids"
VAULT_STORAGE = "storage"
ROOT_TOKEN = "root_token.txt"
UNSEAL_KEY = "unseal_key.txt"
APPROLE_ROLE_ID = "approle_role_id.txt"
APPROLE_SECRET_ID = "approle_secret_id.txt"

CONSUL_CONFIG = "consul_config.hcl"
CONSUL_LOG = "consul.log"
CONSUL_PID = "consul.pid"
CONSUL_DATA = "data"
CONSUL_ACL_TOKEN = "acl_master_token.txt"

CA_CERT = "ca-cert.pem"
CA_KEY = "ca-key.pem"

BACKUP_METADATA = "backup_metadata.json"
BACKUP_CHECKSUMS = "checksums.sha256"
BACKUP_NAME = re.compile(r"^[a-zA-Z0-9_-]+$")
BACKUP_VAULT = "vault-data"
BACKUP_CONSUL = "consul-data"
BACKUP_TLS = "tls-data"
BACKUP_API_EXPORT = "api_export"
BACKUP_CONSUL_EXPORT = "consul_export"

########################
# Demo configuration applied to a fresh Vault
KV_MOUNT = "secret"
PKI_MOUNT = "pki"
PKI_MAX_LEASE_TTL = "87600h"
DEMO_USER = "devuser"
DEMO_PASSWORD = "devpass"
DEMO_USER_POLICIES = ["default", "dev-policy"]
APPROLE_NAME = "web-application"
APPROLE_POLICIES = ["default", "my-app-policy"]
TEST_SECRET_PATH = "test-secret"
TEST_SECRET = {
    "message": "Hello from Vault!",
    "username": "testuser",
}

########################
# Settings that can be overridden from <base>/vault-lab.yml
SETTINGS = {
    'POLL_INTERVAL': 1,
    'VAULT_TIMEOUT': 30,
    'CLUSTER_TIMEOUT': 60,
    'CONSUL_TIMEOUT': 60,
    'UNSEAL_TIMEOUT': 30,
    'CONSUL_SETTLE': 5,
    'STOP_GRACE': 5,
    'RESTART_PAUSE': 3,
    'VAULT_VERSION': LATEST,
    'CONSUL_VERSION': LATEST,
    'AUDIT_LOG_PATH': '/dev/null',
    'DOWNLOAD_TIMEOUT': 120,
    'CERT_DAYS': 365,
    'CA_DAYS': 3650,
}

def load_settings(path):
    """Load the optional YAML settings file and merge it over SETTINGS.

    Unknown keys are kept (so typos are visible in the warning) but do not
    change any behavior.

    Args:
        path (str): Path to the YAML file

    Returns:
        (dict): Copy of SETTINGS updated with the file's values
    """
    settings = dict(SETTINGS)
    if path is None or not os.path.exists(path):
        return settings

    try:
        with open(path, 'r') as fh:
            config = yaml.safe_load(fh.read())
    except (OSError, yaml.YAMLError) as ex:
        raise PreconditionError("Problem loading settings file '{}': {}".format(path, ex))

    if config is None:
        return settings
    if not isinstance(config, dict):
        raise PreconditionError("Settings file '{}' must contain a mapping".format(path))

    for key in config:
        if key not in SETTINGS:
            console.warning("Setting {} is not recognized".format(key))
        settings[key] = config[key]

    return settings

########################
# Path functions
def find_dir(dir_):
    return os.path.dirname(os.path.realpath(dir_))

def path(*args):
    return os.path.realpath(os.path.join(*args))

cur_dir = find_dir(__file__)
POLICY_DIR = path(cur_dir, 'policies')
