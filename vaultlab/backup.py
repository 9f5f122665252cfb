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

"""Named, checksummed snapshots of the lab's on-disk state.

A backup is a directory under <base>/backups/<name> holding copies of the
data directories, the lab configuration, optional JSON exports taken from
the live API, a metadata document and a sha256 manifest of every file.
"""

import os
import json
import shutil
import socket
import getpass
import logging
from datetime import datetime

import hvac
import requests

from . import console
from . import constants as const
from . import hash
from .archive import archive_directory, archive_name, extract_directory, ARCHIVE_SUFFIX
from .exceptions import LabError, LabCanceled, PreconditionError, IntegrityError, VaultError
from .utils import get_commit, human_size, dir_size

LOGGER = logging.getLogger(__name__)

# Runtime files that only describe the processes of the moment
RUNTIME_FILES = shutil.ignore_patterns("*.pid", const.VAULT_PIDS)

def default_name(now = None):
    return (now or datetime.now()).strftime("backup_%Y%m%d_%H%M%S")

def validate_name(name):
    """Reject names that are not safe as a single path component"""
    if not name or not const.BACKUP_NAME.match(name):
        raise PreconditionError("Backup name '{}' must contain only letters, numbers, hyphens, and underscores."
                                .format(name))

class BackupManager(object):
    """Create, inspect, restore and move backups of one lab.

    Args:
        ctx (LabContext): Lab context
        lab (LabController): Used to detect a running lab, stop it before a
                             restore and reach the live Vault / Consul APIs
    """

    def __init__(self, ctx, lab):
        self.ctx = ctx
        self.paths = ctx.paths
        self.lab = lab

    def path(self, name):
        return os.path.join(self.paths.backups, name)

    def _existing(self, name):
        validate_name(name)
        path = self.path(name)
        if not os.path.isdir(path):
            raise PreconditionError("Backup '{}' not found in {}".format(name, self.paths.backups))
        return path

    def read_metadata(self, name):
        """Metadata of a backup, None if missing or unreadable"""
        metadata = os.path.join(self.path(name), const.BACKUP_METADATA)
        try:
            with open(metadata, 'r') as fh:
                return json.load(fh)
        except (OSError, ValueError):
            return None

    def metadata(self, name, description, running):
        provisioner = self.lab.provisioner
        config = self.ctx.config
        return {
            'backup_name': name,
            'description': description or "",
            'created_date': datetime.now().astimezone().isoformat(timespec='seconds'),
            'backend_type': config.backend_type,
            'tls_enabled': config.tls_enabled,
            'cluster_mode': config.cluster_mode,
            'lab_was_running': running,
            'vault_version': provisioner.local_version('vault') or "unknown",
            'consul_version': (provisioner.local_version('consul') or "unknown") if config.consul else "n/a",
            'script_version': get_commit(),
            'hostname': socket.gethostname(),
            'user': getpass.getuser(),
        }

    def create(self, name = None, description = None):
        """Snapshot the lab into a new backup.

        Args:
            name (optional[str]): Backup name, defaults to a timestamp
            description (optional[str]): Free text stored in the metadata

        Returns:
            (str): Name of the created backup
        """
        if not name:
            name = default_name()
        validate_name(name)

        path = self.path(name)
        if os.path.exists(path):
            raise PreconditionError("Backup '{}' already exists. Choose a different name or delete the existing backup."
                                    .format(name))

        console.header("Creating backup: {}".format(name))
        console.info("Description: {}".format(description or "No description provided"))

        running = self.lab.vault_running()
        if running:
            console.info("Lab is currently running. Creating hot backup...")
        else:
            console.info("Lab is stopped. Creating cold backup...")

        os.makedirs(path)
        try:
            self._copy_payload(path, running)

            with open(os.path.join(path, const.BACKUP_METADATA), 'w') as fh:
                json.dump(self.metadata(name, description, running), fh, indent=2)

            console.info("Calculating backup integrity checksum...")
            hash.write_manifest(path, const.BACKUP_CHECKSUMS)
        except (OSError, shutil.Error) as ex:
            shutil.rmtree(path, ignore_errors = True)
            raise LabError("Failed to create backup '{}': {}".format(name, ex))

        console.info("Backup '{}' completed successfully! Size: {}".format(name, human_size(dir_size(path))))
        console.info("Backup location: {}".format(path))
        return name

    def _copy_payload(self, path, running):
        config = self.ctx.config

        if os.path.isdir(self.paths.vault):
            console.info("Backing up Vault data...")
            shutil.copytree(self.paths.vault, os.path.join(path, const.BACKUP_VAULT), ignore=RUNTIME_FILES)

            if running and os.path.exists(self.paths.vault_file(const.ROOT_TOKEN)):
                console.info("Exporting Vault configuration via API...")
                try:
                    self.lab.vault.export_api_state(os.path.join(path, const.BACKUP_API_EXPORT))
                except (hvac.exceptions.VaultError, requests.RequestException, VaultError) as ex:
                    console.warning("Vault API export failed: {}".format(ex))

        if config.consul and os.path.isdir(self.paths.consul):
            console.info("Backing up Consul data...")
            shutil.copytree(self.paths.consul, os.path.join(path, const.BACKUP_CONSUL), ignore=RUNTIME_FILES)

            if running and self.lab.consul.token:
                console.info("Exporting Consul KV store...")
                try:
                    entries = self.lab.consul.export_kv()
                    export = os.path.join(path, const.BACKUP_CONSUL_EXPORT)
                    os.makedirs(export, exist_ok = True)
                    with open(os.path.join(export, "kv_export.json"), 'w') as fh:
                        json.dump(entries, fh, indent=2)
                except (requests.RequestException, ValueError) as ex:
                    console.warning("Consul KV export failed: {}".format(ex))

        if config.tls_enabled and os.path.isdir(self.paths.tls):
            console.info("Backing up TLS certificates...")
            shutil.copytree(self.paths.tls, os.path.join(path, const.BACKUP_TLS))

        if os.path.exists(self.paths.config_file):
            console.info("Backing up lab configuration...")
            shutil.copy2(self.paths.config_file, path)

    def list(self):
        """Summaries of every backup, sorted by name.

        A directory without readable metadata is still listed, as 'unknown'.

        Returns:
            (list[dict]): name, backend, tls, size, date, description
        """
        if not os.path.isdir(self.paths.backups):
            return []

        records = []
        for name in sorted(os.listdir(self.paths.backups)):
            path = self.path(name)
            if not os.path.isdir(path):
                continue

            metadata = self.read_metadata(name)
            if metadata is None:
                records.append({'name': name, 'backend': 'unknown', 'tls': '?',
                                'size': '?', 'date': 'No metadata', 'description': ''})
                continue

            records.append({
                'name': name,
                'backend': metadata.get('backend_type') or 'unknown',
                'tls': 'YES' if metadata.get('tls_enabled') is True else 'NO',
                'size': human_size(dir_size(path)),
                'date': metadata.get('created_date') or 'unknown',
                'description': metadata.get('description') or '',
            })
        return records

    def print_list(self):
        console.header("Listing available backups")
        records = self.list()
        if len(records) == 0:
            console.warning("No backups found in {}".format(self.paths.backups))
            return records

        fmt = "{:<25} {:<15} {:<8} {:<12} {}"
        print()
        console.yellow("Available backups:")
        print("-" * 80)
        print(fmt.format("NAME", "BACKEND", "TLS", "SIZE", "DATE"))
        print("-" * 80)
        for record in records:
            print(fmt.format(record['name'], record['backend'], record['tls'], record['size'], record['date']))
        print("-" * 80)
        return records

    def verify(self, name):
        """Check every file of a backup against its manifest.

        Returns:
            (bool): True if verified, False if the backup has no manifest

        Raises:
            IntegrityError: If any file differs, is missing or is not listed
        """
        path = self._existing(name)
        if not os.path.exists(os.path.join(path, const.BACKUP_CHECKSUMS)):
            console.warning("No integrity checksums found. Proceeding without verification.")
            return False

        bad = hash.verify_manifest(path, const.BACKUP_CHECKSUMS)
        if bad:
            raise IntegrityError(name, bad)
        console.info("Backup integrity verified")
        return True

    def restore(self, name, force = False):
        """Replace the lab's state with the contents of a backup.

        Integrity is verified before anything is touched. The replacement
        itself is not transactional: a failure part way through leaves a
        mix of old and restored files.
        """
        path = self._existing(name)
        metadata = self.read_metadata(name)
        if metadata is None:
            raise PreconditionError("Backup metadata not found. This might be a corrupted backup.")

        console.header("Verifying backup integrity")
        self.verify(name)

        console.header("Restoring backup: {}".format(name))
        console.info("Created: {}".format(metadata.get('created_date', 'unknown')))
        console.info("Backend: {}".format(metadata.get('backend_type', 'unknown')))
        console.info("TLS: {}".format("enabled" if metadata.get('tls_enabled') is True else "disabled"))
        console.info("Cluster: {}".format(metadata.get('cluster_mode') or 'single'))
        if metadata.get('description'):
            console.info("Description: {}".format(metadata['description']))

        if not force:
            msg = "WARNING: This will completely replace your current lab environment!\n" \
                  "Current data will be permanently lost."
            if not console.confirm_typed(msg):
                raise LabCanceled("Restore cancelled by user.")

        console.info("Stopping current lab environment...")
        self.lab.stop()

        console.info("Cleaning current environment...")
        for directory in (self.paths.vault, self.paths.consul, self.paths.tls):
            shutil.rmtree(directory, ignore_errors = True)
        if os.path.exists(self.paths.config_file):
            os.remove(self.paths.config_file)

        copies = [
            (const.BACKUP_VAULT, self.paths.vault, "Vault data"),
            (const.BACKUP_CONSUL, self.paths.consul, "Consul data"),
            (const.BACKUP_TLS, self.paths.tls, "TLS certificates"),
        ]
        try:
            for src, dst, label in copies:
                if os.path.isdir(os.path.join(path, src)):
                    console.info("Restoring {}...".format(label))
                    shutil.copytree(os.path.join(path, src), dst)

            config = os.path.join(path, const.LAB_CONFIG_FILE)
            if os.path.exists(config):
                console.info("Restoring lab configuration...")
                shutil.copy2(config, self.paths.config_file)
        except (OSError, shutil.Error) as ex:
            raise LabError("Restore of '{}' failed part way, the lab is in a mixed state: {}".format(name, ex))

        for directory in self.paths.data_dirs():
            os.makedirs(directory, exist_ok = True)

        config = self.ctx.reload_config()
        if config is not None:
            console.info("Restored configuration: {}".format(config))

        console.info("Backup '{}' restored successfully!".format(name))
        console.info("You can now start the lab with: vault-lab restart")

    def delete(self, name, force = False):
        path = self._existing(name)

        metadata = self.read_metadata(name)
        if metadata is not None:
            console.info("Backup details - Date: {}, Backend: {}, TLS: {}"
                         .format(metadata.get('created_date', 'unknown'),
                                 metadata.get('backend_type', 'unknown'),
                                 metadata.get('tls_enabled', False)))

        if not force:
            msg = "WARNING: This will permanently delete backup '{}'!".format(name)
            if not console.confirm_typed(msg):
                raise LabCanceled("Delete cancelled by user.")

        console.info("Deleting backup '{}'...".format(name))
        shutil.rmtree(path)
        console.info("Backup '{}' deleted successfully!".format(name))

    def export(self, name, target = None):
        """Package a backup as a single .tar.gz file

        Returns:
            (str): Path of the archive
        """
        path = self._existing(name)
        if not target:
            target = os.path.join(os.getcwd(), name + ARCHIVE_SUFFIX)
        elif os.path.isdir(target):
            target = os.path.join(target, name + ARCHIVE_SUFFIX)
        if not target.endswith(ARCHIVE_SUFFIX):
            target += ARCHIVE_SUFFIX

        if os.path.exists(target):
            raise PreconditionError("Export target '{}' already exists".format(target))

        console.info("Exporting backup '{}' to '{}'...".format(name, target))
        try:
            archive = archive_directory(path, target)
        except OSError as ex:
            raise LabError("Failed to create export archive: {}".format(ex))

        console.info("Backup exported successfully! Size: {}".format(human_size(os.path.getsize(archive))))
        console.info("Export location: {}".format(archive))
        return archive

    def import_(self, source, name = None):
        """Unpack an exported archive as a new backup

        Returns:
            (str): Name of the imported backup
        """
        if not source or not os.path.isfile(source):
            raise PreconditionError("Import file '{}' not found.".format(source))

        if not name:
            name = archive_name(source)
        validate_name(name)

        path = self.path(name)
        if os.path.exists(path):
            raise PreconditionError("Backup '{}' already exists. Delete it first or choose a different name."
                                    .format(name))

        console.info("Importing backup from '{}' as '{}'...".format(source, name))
        extract_directory(source, path)

        console.info("Backup imported successfully!")
        console.info("You can now restore it with: vault-lab restore {}".format(name))
        return name
