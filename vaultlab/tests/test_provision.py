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
from unittest.mock import patch, MagicMock
import os, sys
import io
import tempfile
import zipfile

# Allow unit test files to import the target library modules
cur_dir = os.path.dirname(os.path.realpath(__file__))
parent_dir = os.path.normpath(os.path.join(cur_dir, '..', '..'))
sys.path.append(parent_dir)

import requests

from vaultlab.configuration import LabContext
from vaultlab.exceptions import ProvisionError
from vaultlab.provision import BinaryProvisioner, select_latest, parse_version_output, host_platform


class TestVersions(unittest.TestCase):
    def test_select_latest(self):
        versions = ["1.9.10", "1.15.2", "1.15.2+ent", "1.16.0-rc1", "1.16.0-beta2", "1.10.0"]
        self.assertEqual(select_latest(versions), "1.15.2")

    def test_select_latest_none(self):
        self.assertIsNone(select_latest(["1.16.0-rc1", "not-a-version"]))
        self.assertIsNone(select_latest([]))

    def test_parse_version_output(self):
        self.assertEqual(parse_version_output("Vault v1.15.2 (cf1b5cafa047bc8e4a3f93444fcb4011593b92cb), built 2023-11-06T11:33:28Z\n"),
                         "1.15.2")
        self.assertEqual(parse_version_output("Consul v1.17.0\nRevision 4e3f428b\n"), "1.17.0")
        self.assertIsNone(parse_version_output(""))
        self.assertIsNone(parse_version_output("garbage"))

    @patch('vaultlab.provision.is_windows', return_value = False)
    @patch('vaultlab.provision.platform')
    def test_host_platform(self, mPlatform, mWindows):
        mPlatform.system.return_value = "Linux"
        mPlatform.machine.return_value = "x86_64"
        self.assertEqual(host_platform(), "linux_amd64")

        mPlatform.system.return_value = "Darwin"
        mPlatform.machine.return_value = "arm64"
        self.assertEqual(host_platform(), "darwin_arm64")


class TestBinaryProvisioner(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.ctx = LabContext(self.tmp.name)
        self.session = MagicMock()
        self.provisioner = BinaryProvisioner(self.ctx, self.session)
        self.exe = self.ctx.paths.exe('vault')

    def tearDown(self):
        self.tmp.cleanup()

    def touch_exe(self):
        os.makedirs(os.path.dirname(self.exe), exist_ok = True)
        with open(self.exe, 'w') as fh:
            fh.write("#!/bin/sh\n")

    def test_resolve_explicit_version(self):
        self.assertEqual(self.provisioner.resolve_version('vault', 'v1.14.0'), "1.14.0")
        self.session.get.assert_not_called()

    def test_resolve_latest(self):
        resp = MagicMock()
        resp.json.return_value = {'versions': {"1.15.1": {}, "1.15.2": {}, "1.16.0-rc1": {}}}
        self.session.get.return_value = resp

        self.assertEqual(self.provisioner.resolve_version('vault', 'latest'), "1.15.2")
        self.session.get.assert_called_once_with("https://releases.hashicorp.com/vault/index.json", timeout=30)

    def test_resolve_latest_network_error(self):
        self.session.get.side_effect = requests.ConnectionError("unreachable")

        with self.assertRaises(ProvisionError) as cm:
            self.provisioner.resolve_version('vault', 'latest')
        self.assertEqual(cm.exception.target, "https://releases.hashicorp.com/vault/index.json")

    def test_local_version_missing(self):
        self.assertIsNone(self.provisioner.local_version('vault'))

    @patch('vaultlab.provision.run')
    def test_local_version(self, mRun):
        self.touch_exe()
        mRun.return_value.stdout = "Vault v1.15.2 (abc), built 2023-11-06\n"

        self.assertEqual(self.provisioner.local_version('vault'), "1.15.2")
        mRun.assert_called_once_with([self.exe, "version"], timeout=30)

    def test_ensure_up_to_date(self):
        self.touch_exe()
        with patch.object(self.provisioner, 'local_version', return_value = "1.15.2"), \
             patch.object(self.provisioner, 'download') as mDownload:
            self.assertEqual(self.provisioner.ensure('vault', '1.15.2'), self.exe)
        mDownload.assert_not_called()

    def test_ensure_update(self):
        self.touch_exe()
        with patch.object(self.provisioner, 'local_version', return_value = "1.14.0"), \
             patch.object(self.provisioner, 'download') as mDownload:
            self.provisioner.ensure('vault', '1.15.2')
        mDownload.assert_called_once_with('vault', '1.15.2')

    def test_ensure_fallback(self):
        self.touch_exe()
        error = ProvisionError("Download failed", "https://releases.hashicorp.com")
        with patch.object(self.provisioner, 'local_version', return_value = "1.14.0"), \
             patch.object(self.provisioner, 'download', side_effect = error), \
             patch('vaultlab.provision.console') as mConsole:
            self.assertEqual(self.provisioner.ensure('vault', '1.15.2'), self.exe)

        warnings = " ".join(c[0][0] for c in mConsole.warning.call_args_list)
        self.assertIn("v1.14.0", warnings)

    def test_ensure_no_fallback(self):
        self.touch_exe()
        self.ctx.fallback = False
        error = ProvisionError("Download failed")
        with patch.object(self.provisioner, 'local_version', return_value = "1.14.0"), \
             patch.object(self.provisioner, 'download', side_effect = error):
            with self.assertRaises(ProvisionError):
                self.provisioner.ensure('vault', '1.15.2')

    def test_ensure_nothing_to_fall_back_to(self):
        self.session.get.side_effect = requests.ConnectionError("unreachable")
        with self.assertRaises(ProvisionError):
            self.provisioner.ensure('vault', 'latest')

    @patch('vaultlab.provision.host_platform', return_value = "linux_amd64")
    def test_download(self, mPlatform):
        member = os.path.basename(self.exe)
        data = io.BytesIO()
        with zipfile.ZipFile(data, 'w') as zf:
            zf.writestr(member, "#!/bin/sh\necho vault\n")

        resp = MagicMock()
        resp.__enter__.return_value = resp
        resp.iter_content.return_value = [data.getvalue()]
        self.session.get.return_value = resp
        os.makedirs(self.ctx.paths.bin)

        self.assertEqual(self.provisioner.download('vault', '1.15.2'), self.exe)

        url = self.session.get.call_args[0][0]
        self.assertEqual(url, "https://releases.hashicorp.com/vault/1.15.2/vault_1.15.2_linux_amd64.zip")
        self.assertTrue(os.access(self.exe, os.X_OK))
        self.assertEqual(os.listdir(self.ctx.paths.bin), [member])

    def test_download_bad_archive(self):
        resp = MagicMock()
        resp.__enter__.return_value = resp
        resp.iter_content.return_value = [b"not a zip"]
        self.session.get.return_value = resp
        os.makedirs(self.ctx.paths.bin)

        with self.assertRaises(ProvisionError):
            self.provisioner.download('vault', '1.15.2')
        self.assertEqual(os.listdir(self.ctx.paths.bin), [])
