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

"""Download and keep up to date the Vault / Consul executables used by the lab."""

import os
import re
import stat
import shutil
import logging
import platform
import tempfile
import zipfile
import subprocess

import requests
from packaging.version import Version, InvalidVersion

from . import console
from . import constants as const
from .exceptions import ProvisionError
from .utils import run, is_windows

LOGGER = logging.getLogger(__name__)

VERSION_LINE = re.compile(r"v?(\d+\.\d+\.\d+[^\s]*)")

ARCHITECTURES = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'i386': '386',
    'i686': '386',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'armv6l': 'arm',
}

def host_platform():
    """The HashiCorp release platform string for this host, e.g. linux_amd64"""
    if is_windows():
        os_name = 'windows'
    else:
        os_name = platform.system().lower()

    machine = platform.machine().lower()
    arch = ARCHITECTURES.get(machine, machine)
    return "{}_{}".format(os_name, arch)

def select_latest(versions):
    """Pick the highest stable version.

    Versions whose name matches UNSTABLE_RELEASE (enterprise, release
    candidates, betas, previews) or that can't be parsed are ignored.

    Args:
        versions (iterable[str]): Version strings from the release index

    Returns:
        (str|None): Highest version or None if there are no stable versions
    """
    candidates = []
    for version in versions:
        if const.UNSTABLE_RELEASE.search(version):
            continue
        try:
            candidates.append((Version(version), version))
        except InvalidVersion:
            LOGGER.debug("Skipping unparsable version %s", version)

    if len(candidates) == 0:
        return None
    return max(candidates)[1]

def parse_version_output(output):
    """Extract the version from the first line of `<product> version`"""
    lines = output.strip().splitlines()
    if len(lines) == 0:
        return None
    match = VERSION_LINE.search(lines[0])
    return match.group(1) if match else None

class BinaryProvisioner(object):
    """Make sure a product executable of the desired version exists under <base>/bin"""

    def __init__(self, ctx, session = None):
        self.ctx = ctx
        self.session = session or requests.Session()

    def exe(self, product):
        return self.ctx.paths.exe(product)

    def local_version(self, product):
        """Version reported by the local executable, None if missing or broken"""
        exe = self.exe(product)
        if not os.path.exists(exe):
            return None
        try:
            result = run([exe, "version"], timeout=30)
        except (OSError, subprocess.SubprocessError) as ex:
            LOGGER.debug("Could not get version of %s: %s", exe, ex)
            return None
        return parse_version_output(result.stdout)

    def resolve_version(self, product, requested = const.LATEST):
        if requested and requested != const.LATEST:
            return requested.lstrip('v')

        url = const.RELEASES_INDEX_URL.format(product=product)
        try:
            resp = self.session.get(url, timeout=30)
            resp.raise_for_status()
            index = resp.json()
        except (requests.RequestException, ValueError) as ex:
            raise ProvisionError("Failed to fetch {} releases: {}".format(product, ex), url)

        latest = select_latest(index.get('versions', {}).keys())
        if latest is None:
            raise ProvisionError("Could not determine the latest {} version".format(product), url)
        return latest

    def ensure(self, product, requested = const.LATEST):
        """Make sure the executable for product exists at the requested version.

        If resolving or downloading fails and a local executable exists it is
        used instead (unless the context disables the fallback), with a
        warning naming the version that will run.

        Args:
            product (str): 'vault' or 'consul'
            requested (str): 'latest' or an exact version

        Returns:
            (str): Path to the executable
        """
        console.header("{} binary management: check and download".format(product))
        exe = self.exe(product)
        os.makedirs(self.ctx.paths.bin, exist_ok = True)

        current = self.local_version(product)
        try:
            target = self.resolve_version(product, requested)
            console.info("Target {} version: {}".format(product, target))

            if current == target:
                console.info("Current {} binary (v{}) is up-to-date.".format(product, current))
                return exe

            if current is None:
                console.info("No {} binary found in {}, downloading v{}".format(product, self.ctx.paths.bin, target))
            else:
                console.info("Updating {} from v{} to v{}".format(product, current, target))

            self.download(product, target)
        except ProvisionError as ex:
            if os.path.exists(exe) and self.ctx.fallback:
                console.warning(str(ex))
                console.warning("Falling back to the existing local {} binary (v{}), it may be outdated"
                                .format(product, current or "unknown"))
                return exe
            raise

        console.info("{} v{} downloaded and configured successfully.".format(product.capitalize(), target))
        return exe

    def download(self, product, version):
        """Download the release archive, extract the executable and swap it into place"""
        url = const.RELEASES_DOWNLOAD_URL.format(product = product,
                                                 version = version,
                                                 platform = host_platform())
        exe = self.exe(product)
        member = os.path.basename(exe)

        with tempfile.TemporaryDirectory(prefix="vault-lab-") as tmp:
            archive = os.path.join(tmp, "{}.zip".format(product))

            console.info("Downloading {} v{}".format(product, version))
            try:
                with self.session.get(url, stream=True, timeout=self.ctx.setting('DOWNLOAD_TIMEOUT')) as resp:
                    resp.raise_for_status()
                    with open(archive, 'wb') as fh:
                        for chunk in resp.iter_content(chunk_size=1024 * 1024):
                            fh.write(chunk)
            except (requests.RequestException, OSError) as ex:
                raise ProvisionError("Download failed: {}".format(ex), url)

            # Extract next to the final location so the replace is atomic
            staged = os.path.join(self.ctx.paths.bin, ".{}.new".format(member))
            try:
                with zipfile.ZipFile(archive) as zf:
                    with zf.open(member) as src, open(staged, 'wb') as dst:
                        shutil.copyfileobj(src, dst)
            except (zipfile.BadZipFile, KeyError, OSError) as ex:
                if os.path.exists(staged):
                    os.remove(staged)
                raise ProvisionError("Extraction failed: {}".format(ex), archive)

        mode = os.stat(staged).st_mode
        os.chmod(staged, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        os.replace(staged, exe)
        return exe
