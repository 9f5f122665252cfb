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

"""Lab configuration: where the lab lives on disk, the persisted choices
made on `start`, and the context object handed to every component.
"""

import os

from . import console
from . import constants as const
from .exceptions import PreconditionError
from .utils import is_windows

FILE = 'file'
CONSUL = 'consul'
BACKENDS = (FILE, CONSUL)

SINGLE = 'single'
MULTI = 'multi'
CLUSTER_MODES = (SINGLE, MULTI)

TRUE_VALUES = ('true', '1', 'yes', 'y', 'on')
FALSE_VALUES = ('false', '0', 'no', 'n', 'off', '')

def parse_bool(value):
    if isinstance(value, bool):
        return value
    value = str(value).strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    raise PreconditionError("'{}' is not a boolean value".format(value))

class LabPaths(object):
    """All of the file system locations used by one lab, rooted at a base directory"""

    def __init__(self, base_dir):
        self.base = os.path.realpath(base_dir)
        self.bin = os.path.join(self.base, const.BIN_DIR)
        self.vault = os.path.join(self.base, const.VAULT_DIR)
        self.consul = os.path.join(self.base, const.CONSUL_DIR)
        self.tls = os.path.join(self.base, const.TLS_DIR)
        self.ca = os.path.join(self.tls, 'ca')
        self.certs = os.path.join(self.tls, 'certs')
        self.backups = os.path.join(self.base, const.BACKUP_DIR)
        self.config_file = os.path.join(self.base, const.LAB_CONFIG_FILE)
        self.settings_file = os.path.join(self.base, const.SETTINGS_FILE)
        self.lock_file = os.path.join(self.base, const.LOCK_FILE)

    def exe(self, product):
        """Path of a provisioned executable"""
        name = product + ".exe" if is_windows() else product
        return os.path.join(self.bin, name)

    def vault_file(self, *names):
        return os.path.join(self.vault, *names)

    def consul_file(self, *names):
        return os.path.join(self.consul, *names)

    @property
    def ca_cert(self):
        return os.path.join(self.ca, const.CA_CERT)

    @property
    def ca_key(self):
        return os.path.join(self.ca, const.CA_KEY)

    def data_dirs(self):
        return [self.vault, self.consul]

class LabConfig(object):
    """The choices made when the lab was started.

    Persisted as shell-sourceable `KEY="value"` lines so that the file stays
    readable by operators and compatible with the original scripts.
    """

    __KEYS = {
        'BACKEND_TYPE': 'backend_type',
        'CLUSTER_MODE': 'cluster_mode',
        'ENABLE_TLS': 'tls_enabled',
    }

    def __init__(self, backend_type = FILE, cluster_mode = SINGLE, tls_enabled = False):
        self.backend_type = backend_type
        self.cluster_mode = cluster_mode
        self.tls_enabled = parse_bool(tls_enabled)
        self.validate()

    def validate(self):
        if self.backend_type not in BACKENDS:
            raise PreconditionError("Invalid backend '{}', expected one of {}"
                                    .format(self.backend_type, ", ".join(BACKENDS)))
        if self.cluster_mode not in CLUSTER_MODES:
            raise PreconditionError("Invalid cluster mode '{}', expected one of {}"
                                    .format(self.cluster_mode, ", ".join(CLUSTER_MODES)))
        if self.cluster_mode == MULTI and self.backend_type != CONSUL:
            raise PreconditionError("Cluster mode 'multi' requires the consul backend")

    @property
    def multi(self):
        return self.cluster_mode == MULTI

    @property
    def consul(self):
        return self.backend_type == CONSUL

    @classmethod
    def parse(cls, text):
        values = {}
        for line in text.splitlines():
            line = line.strip()
            if len(line) == 0 or line.startswith('#'):
                continue
            if line.startswith('export '):
                line = line[len('export '):]
            if '=' not in line:
                console.debug("Ignoring malformed lab config line: {}".format(line))
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")

            if key not in cls.__KEYS:
                console.debug("Ignoring unknown lab config key {}".format(key))
                continue
            values[cls.__KEYS[key]] = value

        # Older config files leave the cluster mode empty
        if not values.get('cluster_mode'):
            values.pop('cluster_mode', None)
        return cls(**values)

    @classmethod
    def load(cls, path):
        """Read a persisted configuration.

        Returns:
            (LabConfig|None): None if the file doesn't exist
        """
        if not os.path.exists(path):
            return None
        with open(path, 'r') as fh:
            return cls.parse(fh.read())

    def dumps(self):
        lines = []
        for key, attr in self.__KEYS.items():
            value = getattr(self, attr)
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            lines.append('{}="{}"'.format(key, value))
        return "\n".join(lines) + "\n"

    def save(self, path):
        os.makedirs(os.path.dirname(path), exist_ok = True)
        tmp = path + ".tmp"
        with open(tmp, 'w') as fh:
            fh.write(self.dumps())
        os.replace(tmp, path)

    def __eq__(self, other):
        if not isinstance(other, LabConfig):
            return NotImplemented
        return (self.backend_type, self.cluster_mode, self.tls_enabled) == \
               (other.backend_type, other.cluster_mode, other.tls_enabled)

    def __repr__(self):
        return "LabConfig(backend_type={!r}, cluster_mode={!r}, tls_enabled={!r})" \
               .format(self.backend_type, self.cluster_mode, self.tls_enabled)

class LabContext(object):
    """Explicit context passed to every lab component.

    Attributes:
        paths (LabPaths): File system layout
        config (LabConfig): Backend / cluster / TLS choices
        settings (dict): constants.SETTINGS merged with the YAML settings file
        fallback (bool): If a failed download may fall back to an existing local binary
        assume_yes (bool): If interactive prompts should take their default answer
    """

    def __init__(self, base_dir, config = None, settings = None, fallback = True, assume_yes = False):
        self.paths = LabPaths(base_dir)
        self.config = config if config is not None else LabConfig()
        self.settings = settings if settings is not None else dict(const.SETTINGS)
        self.fallback = fallback
        self.assume_yes = assume_yes

    def setting(self, key):
        return self.settings.get(key, const.SETTINGS.get(key))

    @property
    def scheme(self):
        return 'https' if self.config.tls_enabled else 'http'

    def url(self, port):
        return "{}://{}:{}".format(self.scheme, const.LOOPBACK, port)

    @property
    def vault_addr(self):
        return self.url(const.VAULT_PORT)

    @property
    def vault_ports(self):
        if self.config.multi:
            return list(const.CLUSTER_API_PORTS)
        return [const.VAULT_PORT]

    @property
    def vault_addrs(self):
        return [self.url(port) for port in self.vault_ports]

    @property
    def consul_addr(self):
        return self.url(const.CONSUL_PORT)

    @property
    def ca_cert(self):
        """The lab CA certificate, if TLS is enabled"""
        return self.paths.ca_cert if self.config.tls_enabled else None

    @property
    def verify(self):
        """Value for the `verify` argument of requests / hvac"""
        return self.ca_cert if self.config.tls_enabled else True

    def read_file(self, path):
        """Read a token / key file, returning None if it doesn't exist"""
        if not os.path.exists(path):
            return None
        with open(path, 'r') as fh:
            return fh.read().strip()

    def environment(self):
        """Environment variables for a shell that talks to the lab"""
        env = {
            'VAULT_ADDR': self.vault_addr,
            'PATH': self.paths.bin + os.pathsep + os.environ.get('PATH', ''),
        }

        token = self.read_file(self.paths.vault_file(const.ROOT_TOKEN))
        if token:
            env['VAULT_TOKEN'] = token

        if self.config.consul:
            env['CONSUL_HTTP_ADDR'] = self.consul_addr
            consul_token = self.read_file(self.paths.consul_file(const.CONSUL_ACL_TOKEN))
            if consul_token:
                env['CONSUL_HTTP_TOKEN'] = consul_token

        if self.config.tls_enabled:
            env['VAULT_CACERT'] = self.paths.ca_cert
            env['CONSUL_CACERT'] = self.paths.ca_cert

        return env

    def reload_config(self):
        """Re-read the persisted LabConfig, keeping the current one if there is none"""
        config = LabConfig.load(self.paths.config_file)
        if config is not None:
            self.config = config
        return config

def load_context(base_dir = None, settings_file = None, **kwargs):
    """Build a LabContext from the environment and the files under base_dir.

    VAULT_LAB_BASE_DIR is used when base_dir is not given, and the current
    directory when neither is set. The persisted LabConfig, if present, is
    loaded as the starting configuration.
    """
    if base_dir is None:
        base_dir = os.environ.get('VAULT_LAB_BASE_DIR', os.getcwd())

    paths = LabPaths(base_dir)
    settings = const.load_settings(settings_file or paths.settings_file)

    for key, env in (('VAULT_VERSION', 'VAULT_LAB_VERSION'),
                     ('CONSUL_VERSION', 'CONSUL_LAB_VERSION')):
        if os.environ.get(env):
            settings[key] = os.environ[env]

    if 'fallback' not in kwargs and os.environ.get('VAULT_LAB_NO_FALLBACK'):
        kwargs['fallback'] = not parse_bool(os.environ['VAULT_LAB_NO_FALLBACK'])

    ctx = LabContext(base_dir, settings = settings, **kwargs)
    ctx.reload_config()
    return ctx
