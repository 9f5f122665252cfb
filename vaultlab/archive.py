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
import tarfile
import tempfile

from .exceptions import LabError

ARCHIVE_SUFFIX = ".tar.gz"

def archive_directory(directory, target):
    """Package a directory as a gzip compressed tar file.

    The archive contains a single top level entry named after the directory.

    Args:
        directory (str): Directory to archive
        target (str): Path of the archive to create, '.tar.gz' is added if missing

    Returns:
        (str): Path of the created archive
    """
    if target.endswith(ARCHIVE_SUFFIX):
        target = target[:-len(ARCHIVE_SUFFIX)]

    parent = os.path.dirname(os.path.realpath(directory))
    name = os.path.basename(os.path.realpath(directory))
    return shutil.make_archive(target, "gztar", parent, name)

def archive_name(path):
    """Name of a backup stored in the given archive path"""
    name = os.path.basename(path)
    for suffix in (ARCHIVE_SUFFIX, ".tgz", ".tar"):
        if name.endswith(suffix):
            return name[:-len(suffix)]
    return name

def _top_level(members):
    names = set()
    for member in members:
        name = member.name
        if name.startswith('/') or '..' in name.split('/'):
            raise LabError("Unsafe path '{}' in archive".format(name))
        if member.issym() or member.islnk() or member.isdev():
            raise LabError("Unsupported entry '{}' in archive".format(name))

        top = name.split('/', 1)[0]
        if top not in ('', '.'):
            names.add(top)

    if len(names) != 1:
        raise LabError("Archive must contain exactly one top level directory, found {}".format(len(names)))
    return names.pop()

def extract_directory(path, destination):
    """Extract an archive created by archive_directory() into destination.

    The archive is first unpacked into a temporary directory next to
    destination, then moved into place, so a failed extraction never leaves
    a partial destination behind.

    Args:
        path (str): Archive to extract
        destination (str): Directory to create, must not exist

    Returns:
        (str): The top level directory name stored in the archive
    """
    if os.path.exists(destination):
        raise LabError("'{}' already exists".format(destination))

    parent = os.path.dirname(os.path.realpath(destination))
    os.makedirs(parent, exist_ok = True)

    try:
        with tarfile.open(path, 'r:*') as tar:
            members = tar.getmembers()
            top = _top_level(members)

            staging = tempfile.mkdtemp(prefix=".import-", dir=parent)
            try:
                kwargs = {}
                if hasattr(tarfile, 'data_filter'):
                    kwargs['filter'] = 'data'
                tar.extractall(staging, members=members, **kwargs)
                os.rename(os.path.join(staging, top), destination)
            finally:
                shutil.rmtree(staging, ignore_errors=True)
    except (tarfile.TarError, OSError) as ex:
        raise LabError("Failed to extract '{}': {}".format(path, ex))

    return top
