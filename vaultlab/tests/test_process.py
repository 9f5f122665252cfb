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

import unittest
from unittest.mock import patch, MagicMock, call
import os, sys
import tempfile

# Allow unit test files to import the target library modules
cur_dir = os.path.dirname(os.path.realpath(__file__))
parent_dir = os.path.normpath(os.path.join(cur_dir, '..', '..'))
sys.path.append(parent_dir)

import psutil
import requests

from vaultlab.configuration import LabContext
from vaultlab.exceptions import StatusCheckError
from vaultlab.process import ProcessSupervisor, gen_timeout, read_pid, write_pid

def response(status_code, json = None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json
    return resp


class TestHelpers(unittest.TestCase):
    def test_gen_timeout(self):
        self.assertEqual(gen_timeout(10, 3), [1, 3, 3, 3])
        self.assertEqual(gen_timeout(4, 2), [2, 2])
        self.assertEqual(gen_timeout(0, 1), [])

    def test_pid_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            pid_file = os.path.join(tmp, "data", "vault.pid")
            self.assertIsNone(read_pid(pid_file))

            write_pid(pid_file, 4321)
            self.assertEqual(read_pid(pid_file), 4321)

            with open(pid_file, 'w') as fh:
                fh.write("not a pid")
            self.assertIsNone(read_pid(pid_file))


@patch('vaultlab.process.time.sleep', MagicMock())
class TestProcessSupervisor(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.ctx = LabContext(self.tmp.name)
        self.ctx.settings['POLL_INTERVAL'] = 1
        self.session = MagicMock()
        self.supervisor = ProcessSupervisor(self.ctx, self.session)
        self.pid_file = os.path.join(self.tmp.name, "vault.pid")

    def tearDown(self):
        self.tmp.cleanup()

    @patch('vaultlab.process.subprocess.Popen')
    def test_launch(self, mPopen):
        mPopen.return_value.pid = 4321
        log = os.path.join(self.tmp.name, "logs", "vault.log")

        handle = self.supervisor.launch("Vault", ["vault", "server"], log, self.pid_file, 8200)

        self.assertEqual(handle.pid, 4321)
        self.assertEqual(handle.port, 8200)
        self.assertEqual(read_pid(self.pid_file), 4321)
        self.assertTrue(os.path.exists(log))
        self.assertEqual(mPopen.call_args[0][0], ["vault", "server"])

    def test_wait_for_http_ready(self):
        self.session.get.side_effect = [requests.ConnectionError("refused"),
                                        response(503),
                                        response(200)]

        self.supervisor.wait_for_http("http://127.0.0.1:8200/v1/sys/seal-status", "Vault", 10)
        self.assertEqual(self.session.get.call_count, 3)

    def test_wait_for_http_timeout(self):
        self.session.get.return_value = response(500)
        log = os.path.join(self.tmp.name, "vault.log")

        with self.assertRaises(StatusCheckError) as cm:
            self.supervisor.wait_for_http("http://127.0.0.1:8200/v1/sys/seal-status", "Vault", 3, log_path = log)

        self.assertEqual(cm.exception.log_path, log)
        self.assertEqual(cm.exception.target, "http://127.0.0.1:8200/v1/sys/seal-status")
        self.assertIn("tail -f " + log, str(cm.exception))
        # one immediate probe plus one per second
        self.assertEqual(self.session.get.call_count, 4)

    def test_wait_for_http_check(self):
        self.session.get.side_effect = [response(200, ""), response(200, "127.0.0.1:8300")]
        check = lambda resp: len(resp.json()) > 0

        self.supervisor.wait_for_http("http://127.0.0.1:8500/v1/status/leader", "Consul", 5, check = check)
        self.assertEqual(self.session.get.call_count, 2)

    def test_probe_uses_lab_ca(self):
        self.ctx.config.tls_enabled = True
        self.session.get.return_value = response(200)

        self.assertTrue(self.supervisor.probe("https://127.0.0.1:8200/v1/sys/seal-status"))
        self.assertEqual(self.session.get.call_args[1]['verify'], self.ctx.paths.ca_cert)

    def test_running_pid_alive(self):
        write_pid(self.pid_file, os.getpid())
        self.assertEqual(self.supervisor.running_pid(self.pid_file), os.getpid())
        self.assertTrue(os.path.exists(self.pid_file))

    @patch('vaultlab.process.psutil.pid_exists', return_value = False)
    def test_running_pid_stale(self, mExists):
        write_pid(self.pid_file, 999999)
        self.assertIsNone(self.supervisor.running_pid(self.pid_file))
        self.assertFalse(os.path.exists(self.pid_file))

    def test_running_pid_missing(self):
        self.assertIsNone(self.supervisor.running_pid(self.pid_file))

    @patch('vaultlab.process.psutil.Process')
    def test_running_pid_markers(self, mProcess):
        mProcess.return_value.status.return_value = psutil.STATUS_SLEEPING
        mProcess.return_value.cmdline.return_value = ["/lab/bin/vault", "server", "-config=/lab/vault-data/config.hcl"]
        write_pid(self.pid_file, os.getpid())

        self.assertEqual(self.supervisor.running_pid(self.pid_file, ["vault", "/lab/vault-data/config.hcl"]),
                         os.getpid())

        # the PID now belongs to something else
        mProcess.return_value.cmdline.return_value = ["python", "-c", "import time; time.sleep(60)"]
        self.assertIsNone(self.supervisor.running_pid(self.pid_file, ["vault", "/lab/vault-data/config.hcl"]))
        self.assertFalse(os.path.exists(self.pid_file))

    @patch('vaultlab.process.psutil.Process')
    def test_owns(self, mProcess):
        proc = mProcess.return_value
        proc.status.return_value = psutil.STATUS_RUNNING
        proc.cmdline.return_value = ["/lab/bin/consul", "agent", "-config-file=/lab/consul-data/consul_config.hcl"]
        self.assertTrue(self.supervisor.owns(4321, ["consul", "agent", "/lab/consul-data/consul_config.hcl"]))
        self.assertFalse(self.supervisor.owns(4321, ["vault"]))

        proc.status.return_value = psutil.STATUS_ZOMBIE
        self.assertFalse(self.supervisor.owns(4321, ["consul"]))

        proc.status.side_effect = psutil.AccessDenied(4321)
        self.assertFalse(self.supervisor.owns(4321, ["consul"]))

    def test_stop_skips_reused_pid(self):
        write_pid(self.pid_file, 4321)
        with patch('vaultlab.process.psutil.pid_exists', return_value = True), \
             patch.object(self.supervisor, 'owns', return_value = False), \
             patch.object(self.supervisor, 'find_processes', return_value = []), \
             patch.object(self.supervisor, 'listening_pids', return_value = []), \
             patch.object(self.supervisor, 'terminate') as mTerminate:
            self.supervisor.stop("Vault", [self.pid_file], patterns = ["vault", "server"], ports = [8200])

        mTerminate.assert_not_called()
        self.assertFalse(os.path.exists(self.pid_file))

    @patch('vaultlab.process.psutil.Process')
    def test_terminate_graceful(self, mProcess):
        proc = mProcess.return_value

        self.assertTrue(self.supervisor.terminate(4321, grace = 5))
        proc.terminate.assert_called_once_with()
        proc.wait.assert_called_once_with(5)
        proc.kill.assert_not_called()

    @patch('vaultlab.process.psutil.Process')
    def test_terminate_escalates(self, mProcess):
        proc = mProcess.return_value
        proc.wait.side_effect = [psutil.TimeoutExpired(5, 4321), None]

        self.assertTrue(self.supervisor.terminate(4321, grace = 5))
        proc.kill.assert_called_once_with()

    @patch('vaultlab.process.psutil.Process', side_effect = psutil.NoSuchProcess(4321))
    def test_terminate_gone(self, mProcess):
        self.assertFalse(self.supervisor.terminate(4321))

    @patch('vaultlab.process.psutil.process_iter')
    def test_find_processes(self, mIter):
        def proc(pid, cmdline):
            p = MagicMock()
            p.info = {'pid': pid, 'cmdline': cmdline}
            return p

        mIter.return_value = [
            proc(10, ["/lab/bin/vault", "server", "-config=/lab/vault-data/config.hcl"]),
            proc(11, ["/other/bin/vault", "server", "-config=/other/config.hcl"]),
            proc(12, None),
            proc(os.getpid(), ["python", "vault", "server", "/lab/vault-data"]),
        ]

        self.assertEqual(self.supervisor.find_processes(["vault", "server", "/lab/vault-data"]), [10])

    def test_stop_nothing_running(self):
        with patch.object(self.supervisor, 'find_processes', return_value = []), \
             patch.object(self.supervisor, 'listening_pids', return_value = []), \
             patch.object(self.supervisor, 'terminate') as mTerminate:
            self.supervisor.stop("Vault", [self.pid_file], patterns = ["vault"], ports = [8200])
            self.supervisor.stop("Vault", [self.pid_file], patterns = ["vault"], ports = [8200])

        mTerminate.assert_not_called()

    def test_stop_strategies(self):
        write_pid(self.pid_file, 4321)
        with patch.object(self.supervisor, 'running_pid', return_value = 4321), \
             patch.object(self.supervisor, 'find_processes', return_value = [4322]), \
             patch.object(self.supervisor, 'listening_pids', return_value = [4323]), \
             patch.object(self.supervisor, 'terminate') as mTerminate, \
             patch('vaultlab.process.psutil.Process') as mProcess:
            self.supervisor.stop("Vault", [self.pid_file], patterns = ["vault"], ports = [8200])

        self.assertEqual(mTerminate.call_args_list, [call(4321), call(4322, grace = 2)])
        mProcess.assert_called_once_with(4323)
        mProcess.return_value.kill.assert_called_once_with()
        self.assertFalse(os.path.exists(self.pid_file))

    def test_stop_survives_scan_errors(self):
        with patch.object(self.supervisor, 'find_processes', side_effect = psutil.AccessDenied()), \
             patch.object(self.supervisor, 'listening_pids', side_effect = psutil.AccessDenied()):
            self.supervisor.stop("Consul", [self.pid_file], patterns = ["consul"], ports = [8500])
