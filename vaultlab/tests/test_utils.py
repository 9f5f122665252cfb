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
from unittest.mock import patch
import os, sys
import tempfile

# Allow unit test files to import the target library modules
cur_dir = os.path.dirname(os.path.realpath(__file__))
parent_dir = os.path.normpath(os.path.join(cur_dir, '..', '..'))
sys.path.append(parent_dir)

from colorama import Fore, Style

from vaultlab import console
from vaultlab.exceptions import DependencyError
from vaultlab.utils import check_dependencies, tail, human_size, dir_size, dir_has_entries, write_secret


class TestUtils(unittest.TestCase):
    def test_check_dependencies(self):
        which = {'openssl': '/usr/bin/openssl'}
        with patch('vaultlab.utils.shutil.which', side_effect = which.get):
            check_dependencies(["openssl"])

            with self.assertRaises(DependencyError) as cm:
                check_dependencies(["openssl", "jq", "unzip"])

        self.assertEqual(cm.exception.missing, ["jq", "unzip"])
        self.assertIn("jq, unzip", str(cm.exception))

    def test_tail(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "vault.log")
            with open(path, 'w') as fh:
                fh.write("".join("line {}\n".format(i) for i in range(5)))

            self.assertEqual(tail(path, 2), ["line 3", "line 4"])
            self.assertEqual(tail(os.path.join(tmp, "missing.log")), [])

    def test_human_size(self):
        self.assertEqual(human_size(512), "512B")
        self.assertEqual(human_size(2048), "2.0K")
        self.assertEqual(human_size(5 * 1024 * 1024), "5.0M")

    def test_dir_size_and_entries(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertFalse(dir_has_entries(tmp))
            self.assertFalse(dir_has_entries(os.path.join(tmp, "missing")))

            write_secret(os.path.join(tmp, "sub", "token.txt"), "abc")

            self.assertTrue(dir_has_entries(tmp))
            self.assertEqual(dir_size(tmp), 4)
            self.assertEqual(os.stat(os.path.join(tmp, "sub", "token.txt")).st_mode & 0o777, 0o600)


class TestConsole(unittest.TestCase):
    def setUp(self):
        console.set_color(False)

    def tearDown(self):
        console.set_color(True)
        console.set_verbose(False)

    def test_prefixes(self):
        with patch('sys.stdout') as mOut, patch('sys.stderr') as mErr:
            mOut.isatty.return_value = False
            console.info("ready")
            console.error("broken")

        self.assertIn("[INFO] ready", mOut.write.call_args_list[0][0][0])
        self.assertIn("[ERROR] broken", mErr.write.call_args_list[0][0][0])

    def test_debug_only_when_verbose(self):
        with patch('sys.stdout') as mOut:
            console.debug("hidden")
            mOut.write.assert_not_called()

            console.set_verbose(True)
            console.debug("shown")
            self.assertIn("[DEBUG] shown", mOut.write.call_args_list[0][0][0])

    @patch('vaultlab.console._input', return_value = "")
    def test_choose_default(self, mInput):
        self.assertEqual(console.choose("Backend", ["file", "consul"], "consul"), "consul")

    @patch('vaultlab.console._input', side_effect = ["etcd", "FILE"])
    def test_choose_retries(self, mInput):
        with patch('vaultlab.console.warning'):
            self.assertEqual(console.choose("Backend", ["file", "consul"], "consul"), "file")

    @patch('vaultlab.console._input', return_value = "YES")
    def test_confirm_typed(self, mInput):
        with patch('vaultlab.console.yellow'):
            self.assertTrue(console.confirm_typed("Replace the lab?"))

    @patch('vaultlab.console._input', return_value = "y")
    def test_confirm_typed_needs_word(self, mInput):
        with patch('vaultlab.console.yellow'):
            self.assertFalse(console.confirm_typed("Replace the lab?"))

    def test_yellow_color_only_on_tty(self):
        with patch('sys.stdout') as mOut:
            mOut.isatty.return_value = True
            console.yellow("careful")
        self.assertEqual(mOut.write.call_args_list[0][0][0], "careful")

        console.set_color(True)
        with patch('sys.stdout') as mOut:
            mOut.isatty.return_value = True
            console.yellow("careful")
        written = "".join(c[0][0] for c in mOut.write.call_args_list)
        self.assertTrue(written.startswith(Fore.YELLOW))
        self.assertIn("careful" + Style.RESET_ALL, written)
