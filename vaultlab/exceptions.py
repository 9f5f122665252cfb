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

class LabError(Exception):
    pass

class LabCanceled(LabError):
    def __init__(self, message="Action Canceled"):
        super().__init__(message)

class PreconditionError(LabError):
    pass

class DependencyError(PreconditionError):
    def __init__(self, missing):
        self.missing = list(missing)
        msg = "Missing required commands: {}".format(", ".join(self.missing))
        super(DependencyError, self).__init__(msg)

class PortInUseError(PreconditionError):
    def __init__(self, port):
        self.port = port
        msg = "Port {} is already in use. Stop the process using it or choose a different port".format(port)
        super(PortInUseError, self).__init__(msg)

class ProvisionError(LabError):
    def __init__(self, message, target=None):
        self.target = target

        if target is not None:
            message = "{} ({})".format(message, target)
        super(ProvisionError, self).__init__(message)

class StatusCheckError(LabError):
    def __init__(self, message, target=None, log_path=None):
        self.target = target
        self.log_path = log_path

        super(StatusCheckError, self).__init__(message)

class IntegrityError(LabError):
    def __init__(self, backup, mismatched):
        self.backup = backup
        self.mismatched = list(mismatched)

        msg = "Backup '{}' integrity check failed for {} file(s): {}"
        msg = msg.format(backup, len(self.mismatched), ", ".join(self.mismatched))
        super(IntegrityError, self).__init__(msg)

class LockError(LabError):
    def __init__(self, lock_file, pid):
        self.lock_file = lock_file
        self.pid = pid

        msg = "Another lab command (PID {}) holds the lock {}".format(pid, lock_file)
        super(LockError, self).__init__(msg)

class VaultError(LabError):
    pass
