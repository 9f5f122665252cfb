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

"""Advisory lock serializing the commands that change a lab.

The lock itself is an OS level file lock, released automatically if the
holder dies. The holder's PID is kept in a side file for the error message.
"""

import os
import logging

import psutil
from filelock import FileLock, Timeout

from .exceptions import LockError
from .process import read_pid, write_pid

LOGGER = logging.getLogger(__name__)

class LabLock(object):
    def __init__(self, lock_file, timeout = 0):
        self.lock_file = lock_file
        self.pid_file = lock_file + ".pid"
        self.lock = FileLock(lock_file, timeout = timeout)

    def holder(self):
        """PID of the live process holding the lock, if known"""
        pid = read_pid(self.pid_file)
        if pid is not None and psutil.pid_exists(pid):
            return pid
        return None

    @property
    def is_locked(self):
        return self.lock.is_locked

    def acquire(self):
        os.makedirs(os.path.dirname(self.lock_file), exist_ok = True)
        try:
            self.lock.acquire()
        except Timeout:
            raise LockError(self.lock_file, self.holder() or "unknown")

        stale = read_pid(self.pid_file)
        if stale is not None and stale != os.getpid():
            LOGGER.debug("Replacing stale lock owner %s", stale)
        write_pid(self.pid_file, os.getpid())
        return self

    def release(self):
        if not self.lock.is_locked:
            return
        try:
            os.remove(self.pid_file)
        except OSError:
            pass
        self.lock.release()

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
