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
import os, sys
import io
import hashlib
import tarfile
import tempfile

# Allow unit test files to import the target library modules
cur_dir = os.path.dirname(os.path.realpath(__file__))
parent_dir = os.path.normpath(os.path.join(cur_dir, '..', '..'))
sys.path.append(parent_dir)

from vaultlab import hash
from vaultlab.archive import archive_directory, archive_name, extract_directory
from vaultlab.exceptions import LabError

MANIFEST = "checksums.sha256"

def write(path, data):
    os.makedirs(os.path.dirname(path), exist_ok = True)
    with open(path, 'w') as fh:
        fh.write(data)


class TestManifest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = self.tmp.name
        write(os.path.join(self.dir, "vault-data", "config.hcl"), "ui = true\n")
        write(os.path.join(self.dir, "vault-data", "storage", "core", "keyring"), "abc")
        write(os.path.join(self.dir, "backup_metadata.json"), "{}")

    def tearDown(self):
        self.tmp.cleanup()

    def test_file_sha256(self):
        path = os.path.join(self.dir, "backup_metadata.json")
        self.assertEqual(hash.file_sha256(path), hashlib.sha256(b"{}").hexdigest())

    def test_write_manifest(self):
        entries = hash.write_manifest(self.dir, MANIFEST)

        expected = ["backup_metadata.json",
                    "vault-data/config.hcl",
                    "vault-data/storage/core/keyring"]
        self.assertEqual([rel for rel, _ in entries], expected)
        self.assertEqual(hash.read_manifest(os.path.join(self.dir, MANIFEST)),
                         [(rel, digest) for rel, digest in entries])

    def test_verify_unchanged(self):
        hash.write_manifest(self.dir, MANIFEST)
        self.assertEqual(hash.verify_manifest(self.dir, MANIFEST), [])

    def test_verify_modified(self):
        hash.write_manifest(self.dir, MANIFEST)
        write(os.path.join(self.dir, "vault-data", "config.hcl"), "ui = false\n")

        self.assertEqual(hash.verify_manifest(self.dir, MANIFEST), ["vault-data/config.hcl"])

    def test_verify_missing_and_extra(self):
        hash.write_manifest(self.dir, MANIFEST)
        os.remove(os.path.join(self.dir, "backup_metadata.json"))
        write(os.path.join(self.dir, "vault-data", "extra"), "x")

        self.assertEqual(hash.verify_manifest(self.dir, MANIFEST),
                         ["backup_metadata.json", "vault-data/extra"])

    def test_read_sha256sum_format(self):
        digest = hashlib.sha256(b"{}").hexdigest()
        path = os.path.join(self.dir, MANIFEST)
        write(path, "{} *./backup_metadata.json\n\n".format(digest))

        self.assertEqual(hash.read_manifest(path), [("backup_metadata.json", digest)])


class TestArchive(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.dir = self.tmp.name
        self.source = os.path.join(self.dir, "backups", "nightly")
        write(os.path.join(self.source, "vault-data", "config.hcl"), "ui = true\n")
        write(os.path.join(self.source, "backup_metadata.json"), "{}")

    def tearDown(self):
        self.tmp.cleanup()

    def test_archive_name(self):
        self.assertEqual(archive_name("/tmp/nightly.tar.gz"), "nightly")
        self.assertEqual(archive_name("nightly.tgz"), "nightly")
        self.assertEqual(archive_name("nightly"), "nightly")

    def test_archive_and_extract(self):
        target = os.path.join(self.dir, "export", "nightly")
        os.makedirs(os.path.dirname(target))

        archive = archive_directory(self.source, target)
        self.assertEqual(archive, target + ".tar.gz")

        destination = os.path.join(self.dir, "backups", "copy")
        top = extract_directory(archive, destination)

        self.assertEqual(top, "nightly")
        self.assertEqual(hash.build_manifest(destination), hash.build_manifest(self.source))
        leftovers = [n for n in os.listdir(os.path.dirname(destination)) if n.startswith(".import-")]
        self.assertEqual(leftovers, [])

    def test_extract_existing_destination(self):
        archive = archive_directory(self.source, os.path.join(self.dir, "nightly.tar.gz"))

        with self.assertRaises(LabError):
            extract_directory(archive, self.source)

    def test_extract_unsafe_path(self):
        archive = os.path.join(self.dir, "evil.tar.gz")
        with tarfile.open(archive, "w:gz") as tar:
            data = b"boom"
            info = tarfile.TarInfo("../evil.txt")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        with self.assertRaises(LabError):
            extract_directory(archive, os.path.join(self.dir, "evil"))
        self.assertFalse(os.path.exists(os.path.join(self.dir, "evil.txt")))

    def test_extract_not_an_archive(self):
        path = os.path.join(self.dir, "bogus.tar.gz")
        write(path, "not a tar file")

        with self.assertRaises(LabError):
            extract_directory(path, os.path.join(self.dir, "bogus"))
