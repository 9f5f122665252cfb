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

"""Launch, watch, and stop the server processes that make up the lab.

Each server is started detached from the controlling process, its PID is
recorded immediately, and readiness is decided only by its HTTP API
answering with a 200 status.
"""

import os
import time
import socket
import logging
import subprocess

import psutil
import requests

from . import console
from . import constants as const
from .exceptions import StatusCheckError
from .utils import is_windows

LOGGER = logging.getLogger(__name__)

def gen_timeout(total, step):
    """Break the total timeout value into steps
    that are a specific size.

    Args:
        total (int) : total number seconds
        step (int) : length of step

    Returns:
        (list) : list containing a repeated number of step
                 plus the remainder if step doesn't evenly divide
    """
    times, remainder = divmod(total, step)
    rtn = [step for i in range(int(times))]
    if remainder > 0:
        rtn.insert(0, remainder) # Sleep for the partial time first
    return rtn

def read_pid(pid_file):
    try:
        with open(pid_file, 'r') as fh:
            return int(fh.read().strip())
    except (OSError, ValueError):
        return None

def write_pid(pid_file, pid):
    os.makedirs(os.path.dirname(pid_file), exist_ok = True)
    with open(pid_file, 'w') as fh:
        fh.write("{}\n".format(pid))

def port_in_use(port, host = const.LOOPBACK):
    """If something accepts TCP connections on the port"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(1)
        return s.connect_ex((host, port)) == 0

class ServerHandle(object):
    """A launched server process"""

    def __init__(self, name, pid, port, log_path, pid_file):
        self.name = name
        self.pid = pid
        self.port = port
        self.log_path = log_path
        self.pid_file = pid_file

    def __repr__(self):
        return "ServerHandle({!r}, pid={}, port={})".format(self.name, self.pid, self.port)

class ProcessSupervisor(object):
    def __init__(self, ctx, session = None):
        self.ctx = ctx
        self.session = session or requests.Session()

    def launch(self, name, cmd, log_path, pid_file, port):
        """Start a server in the background.

        The PID file is written before readiness is checked, so that a
        server that never becomes ready can still be stopped.

        Returns:
            (ServerHandle)
        """
        os.makedirs(os.path.dirname(log_path), exist_ok = True)

        kwargs = {}
        if is_windows():
            kwargs['creationflags'] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['start_new_session'] = True

        console.info("Starting {} server in background...".format(name))
        LOGGER.debug("Launching %s", " ".join(cmd))
        with open(log_path, 'ab') as log:
            proc = subprocess.Popen(cmd,
                                    stdout=log,
                                    stderr=subprocess.STDOUT,
                                    stdin=subprocess.DEVNULL,
                                    **kwargs)

        write_pid(pid_file, proc.pid)
        console.info("{} PID {} saved to {}".format(name, proc.pid, pid_file))
        return ServerHandle(name, proc.pid, port, log_path, pid_file)

    def probe(self, url, check = None):
        """Single readiness probe, True only for an HTTP 200 accepted by check"""
        try:
            resp = self.session.get(url, timeout=2, verify=self.ctx.verify)
        except requests.RequestException as ex:
            LOGGER.debug("Probe %s failed: %s", url, ex)
            return False

        if resp.status_code != 200:
            LOGGER.debug("Probe %s returned %s", url, resp.status_code)
            return False
        if check is not None:
            return bool(check(resp))
        return True

    def wait_for_http(self, url, name, timeout, log_path = None, check = None):
        """Poll url until it is ready or the timeout expires.

        Args:
            url (str): Endpoint to poll
            name (str): Service name for messages
            timeout (int): Seconds to wait
            log_path (optional[str]): Server log, reported on timeout
            check (optional[callable]): Extra test applied to a 200 response

        Raises:
            StatusCheckError: If the endpoint never became ready
        """
        console.info("Waiting for {} on {} (timeout {}s)".format(name, url, timeout))
        elapsed = 0
        for step in [0] + gen_timeout(timeout, self.ctx.setting('POLL_INTERVAL')):
            time.sleep(step)
            elapsed += step
            if self.probe(url, check):
                if elapsed > 0:
                    print()
                console.info("{} reachable after {}s".format(name, int(elapsed)))
                return
            console.dot()
        print()

        msg = "{} not reachable on {} after {} seconds.".format(name, url, timeout)
        if log_path is not None:
            msg += " Check the logs: tail -f {}".format(log_path)
        raise StatusCheckError(msg, target = url, log_path = log_path)

    def owns(self, pid, markers):
        """If pid is a live process whose command line contains every marker"""
        try:
            proc = psutil.Process(pid)
            if proc.status() == psutil.STATUS_ZOMBIE:
                return False
            cmdline = " ".join(proc.cmdline())
        except psutil.Error:
            return False
        return all(m in cmdline for m in markers or [])

    def running_pid(self, pid_file, markers = None):
        """PID recorded in pid_file if that process is alive.

        A stale PID file (the process is gone, or the PID was reused by a
        process whose command line lacks the markers) is removed.

        Args:
            pid_file (str): PID file written at launch
            markers (optional[list[str]]): Strings the server's command line must contain

        Returns:
            (int|None)
        """
        pid = read_pid(pid_file)
        if pid is None:
            return None
        if psutil.pid_exists(pid) and self.owns(pid, markers):
            return pid

        LOGGER.debug("Removing stale PID file %s", pid_file)
        try:
            os.remove(pid_file)
        except OSError:
            pass
        return None

    def terminate(self, pid, grace = None):
        """Send a graceful signal, wait, then force kill.

        Returns:
            (bool): If a process was found
        """
        if grace is None:
            grace = self.ctx.setting('STOP_GRACE')
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(grace)
            except psutil.TimeoutExpired:
                console.warning("Forcing kill of PID {}".format(pid))
                proc.kill()
                proc.wait(grace)
            return True
        except psutil.NoSuchProcess:
            return False

    def find_processes(self, patterns):
        """Processes whose command line contains every one of the patterns"""
        found = []
        me = os.getpid()
        for proc in psutil.process_iter(['pid', 'cmdline']):
            try:
                cmdline = " ".join(proc.info.get('cmdline') or [])
            except psutil.Error:
                continue
            if proc.info['pid'] == me or len(cmdline) == 0:
                continue
            if all(p in cmdline for p in patterns):
                found.append(proc.info['pid'])
        return found

    def listening_pids(self, port):
        pids = set()
        for conn in psutil.net_connections(kind='tcp'):
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port \
               and conn.pid is not None:
                pids.add(conn.pid)
        return sorted(pids)

    def stop(self, name, pid_files, patterns = None, ports = None):
        """Stop a server, trying every strategy in turn.

        1. Signal the PIDs recorded in the PID files, if their command line
           still matches the patterns
        2. Signal any process whose command line matches all of the patterns
        3. Kill any process still listening on one of the ports

        Each strategy is best-effort; finding nothing to stop is not an
        error, so stopping a stopped server succeeds silently.
        """
        console.info("Attempting to stop {} server...".format(name))

        for pid_file in pid_files:
            pid = self.running_pid(pid_file, patterns)
            if pid is not None:
                console.info("Stopping {} process with PID {}...".format(name, pid))
                try:
                    self.terminate(pid)
                except psutil.Error as ex:
                    console.warning("Could not stop PID {}: {}".format(pid, ex))
            if os.path.exists(pid_file):
                os.remove(pid_file)

        if patterns:
            try:
                pids = self.find_processes(patterns)
            except psutil.Error as ex:
                console.warning("Could not scan the process table: {}".format(ex))
                pids = []
            for pid in pids:
                console.info("Found leftover {} process {}, terminating".format(name, pid))
                try:
                    self.terminate(pid, grace = 2)
                except psutil.Error as ex:
                    console.warning("Could not stop PID {}: {}".format(pid, ex))

        for port in ports or []:
            try:
                pids = self.listening_pids(port)
            except (psutil.Error, OSError) as ex:
                console.warning("Could not scan port {}: {}".format(port, ex))
                continue
            for pid in pids:
                if pid == os.getpid():
                    continue
                console.warning("Lingering process {} on port {}, killing".format(pid, port))
                try:
                    psutil.Process(pid).kill()
                except psutil.Error as ex:
                    console.warning("Could not kill PID {}: {}".format(pid, ex))
