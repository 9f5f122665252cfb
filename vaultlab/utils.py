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
import shutil
import socket
import logging
import platform
import subprocess
from collections import deque

from .exceptions import DependencyError

LOGGER = logging.getLogger(__name__)

def is_windows():
    return platform.system().lower().startswith(('windows', 'cygwin', 'msys', 'mingw'))

def is_wsl():
    try:
        with open('/proc/version', 'r') as fh:
            return 'microsoft' in fh.read().lower()
    except OSError:
        return False

def host_accessible_ip():
    """IP address the host OS can use to reach services in this machine.

    On WSL the services listening on all interfaces are reached through the
    VM's own address, everywhere else loopback is used.
    """
    ip = "127.0.0.1"
    if is_wsl():
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
                # No packets are sent, this only selects the outbound interface
                s.connect(("10.255.255.255", 1))
                ip = s.getsockname()[0]
        except OSError:
            pass
    return ip

def check_dependencies(commands):
    """Verify that all of the given commands are available on the PATH.

    Args:
        commands (list[str]): Command names

    Raises:
        DependencyError: Listing every missing command
    """
    missing = [cmd for cmd in commands if shutil.which(cmd) is None]
    if missing:
        raise DependencyError(missing)

def run(cmd, env_extras=None, check=True, **kwargs):
    """Run a command and capture its output

    Args:
        cmd (list[str]): Command and arguments to run
        env_extras (optional[dict]): Dictionary of extra environmental variable to provide
        check (bool): If the return code should be checked and an exception raised if not zero
        kwargs: Other arguments to pass to subprocess.run

    Return:
        subprocess.CompletedProcess: With stdout / stderr decoded as text

    Raises:
        subprocess.CalledProcessError: If check is True and the return code is not zero
    """
    if env_extras is not None:
        env = os.environ.copy()
        env.update(env_extras)
    else:
        env = None

    LOGGER.debug("Running %s", " ".join(cmd))
    result = subprocess.run(cmd,
                            env=env,
                            stdout=subprocess.PIPE,
                            stderr=subprocess.PIPE,
                            universal_newlines=True,
                            **kwargs)
    LOGGER.debug("Return code %s", result.returncode)

    if check:
        result.check_returncode()
    return result

def get_commit(short=True):
    """Get the git commit hash of the directory holding this package.

    Returns:
        (string) : The git commit hash or "unknown" if it could not be located
    """
    cmd = ["git", "rev-parse", "--short", "HEAD"] if short else ["git", "rev-parse", "HEAD"]
    try:
        result = run(cmd, cwd=os.path.dirname(os.path.realpath(__file__)))
        return result.stdout.strip() or "unknown"
    except (OSError, subprocess.CalledProcessError):
        return "unknown"

def tail(path, lines=20):
    """Return the last lines of a text file, or an empty list if it is unreadable"""
    try:
        with open(path, 'r', errors='replace') as fh:
            return [l.rstrip('\n') for l in deque(fh, maxlen=lines)]
    except OSError:
        return []

def human_size(num):
    for unit in ('B', 'K', 'M', 'G'):
        if num < 1024:
            return "{:.0f}{}".format(num, unit) if unit == 'B' else "{:.1f}{}".format(num, unit)
        num /= 1024.0
    return "{:.1f}T".format(num)

def dir_size(path):
    total = 0
    for root, dirs, files in os.walk(path):
        for f in files:
            try:
                total += os.path.getsize(os.path.join(root, f))
            except OSError:
                pass
    return total

def dir_has_entries(path):
    return os.path.isdir(path) and len(os.listdir(path)) > 0

def write_secret(path, value):
    """Write a token / key to a file readable only by the current user"""
    os.makedirs(os.path.dirname(path), exist_ok = True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as fh:
        fh.write(value + "\n")
