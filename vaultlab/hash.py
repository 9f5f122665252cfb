"""Checksum manifests for backup directories.

The manifest uses the `sha256sum` text format (`<digest>  <path>`), with
paths relative to the backup directory and sorted, so that a backup can
also be checked by hand with `sha256sum -c`.
"""

import os
import hashlib

CHUNK_SIZE = 1024 * 1024

def file_sha256(path) -> str:
    """
    Returns:
        Hexidecimal sha256 of the file's contents.
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()

def list_files(directory, exclude=()):
    """Sorted relative paths (always using '/') of every file under directory"""
    files = []
    for root, dirs, names in os.walk(directory):
        dirs.sort()
        for name in names:
            full = os.path.join(root, name)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            rel = os.path.relpath(full, directory).replace(os.sep, '/')
            if rel in exclude:
                continue
            files.append(rel)
    return sorted(files)

def build_manifest(directory, exclude=()):
    """
    Returns:
        list[tuple(str, str)]: Sorted (relative path, sha256) pairs
    """
    return [(rel, file_sha256(os.path.join(directory, rel)))
            for rel in list_files(directory, exclude)]

def write_manifest(directory, manifest_name):
    """Hash every file in directory (except the manifest) and write the manifest"""
    entries = build_manifest(directory, exclude=(manifest_name,))
    with open(os.path.join(directory, manifest_name), 'w') as fh:
        for rel, digest in entries:
            fh.write("{}  {}\n".format(digest, rel))
    return entries

def read_manifest(path):
    entries = []
    with open(path, 'r') as fh:
        for line in fh:
            line = line.rstrip('\n')
            if len(line) == 0:
                continue
            digest, rel = line.split(None, 1)
            # sha256sum marks binary mode with a leading '*'
            rel = rel.lstrip('*').strip()
            if rel.startswith('./'):
                rel = rel[2:]
            entries.append((rel, digest))
    return entries

def verify_manifest(directory, manifest_name):
    """Compare the files in directory against its manifest.

    A file is reported when its digest differs, when it is listed but
    missing, or when it exists but is not listed.

    Returns:
        list[str]: Relative paths that failed verification, empty if all match
    """
    expected = dict(read_manifest(os.path.join(directory, manifest_name)))
    actual = set(list_files(directory, exclude=(manifest_name,)))

    bad = []
    for rel, digest in sorted(expected.items()):
        full = os.path.join(directory, *rel.split('/'))
        if rel not in actual or file_sha256(full) != digest:
            bad.append(rel)

    bad.extend(sorted(actual - set(expected)))
    return bad
