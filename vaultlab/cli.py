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

"""Command line for deploying and managing a local Vault lab.

COMMANDS : A dictionary of available commands and the functions to call
"""

import sys
import inspect
import logging
import argparse
import traceback

import hvac
import requests

from . import console
from .backup import BackupManager
from .configuration import LabConfig, load_context, BACKENDS, CLUSTER_MODES, CONSUL, MULTI
from .exceptions import LabError, LabCanceled, StatusCheckError
from .lifecycle import LabController, resolve_config
from .lock import LabLock
from .utils import tail

def lab_start(lab, args):
    """Start the lab, asking for any choice not given on the command line"""
    lab.ctx.config = resolve_config(lab.ctx, args.backend, args.cluster, args.tls)
    lab.start(clean = args.clean)

def lab_stop(lab, args):
    lab.stop()

def lab_restart(lab, args):
    lab.restart()

def lab_reset(lab, args):
    lab.ctx.config = resolve_config(lab.ctx, args.backend, args.cluster, args.tls)
    lab.reset()

def lab_status(lab, args):
    lab.status()

def lab_cleanup(lab, args):
    lab.cleanup()

def lab_shell(lab, args):
    return lab.shell()

def lab_smoke_test(lab, args):
    lab.smoke_test()

def backup_create(lab, args, name = None, description = None):
    """Create a backup

    Args:
        name (None|string) : Backup name, a timestamp based name if None
        description (None|string) : Free text description
    """
    BackupManager(lab.ctx, lab).create(name, description)

def backup_restore(lab, args, name):
    BackupManager(lab.ctx, lab).restore(name, force = args.force)

def backup_list(lab, args):
    BackupManager(lab.ctx, lab).print_list()

def backup_verify(lab, args, name):
    BackupManager(lab.ctx, lab).verify(name)

def backup_delete(lab, args, name):
    BackupManager(lab.ctx, lab).delete(name, force = args.force)

def backup_export(lab, args, name, path = None):
    BackupManager(lab.ctx, lab).export(name, path)

def backup_import(lab, args, path, name = None):
    BackupManager(lab.ctx, lab).import_(path, name)

COMMANDS = {
    "start": lab_start,
    "stop": lab_stop,
    "restart": lab_restart,
    "reset": lab_reset,
    "status": lab_status,
    "cleanup": lab_cleanup,
    "shell": lab_shell,
    "smoke-test": lab_smoke_test,
    "backup": backup_create,
    "restore": backup_restore,
    "list-backups": backup_list,
    "verify-backup": backup_verify,
    "delete-backup": backup_delete,
    "export-backup": backup_export,
    "import-backup": backup_import,
}

# Commands that change the lab and are serialized by the lab lock
MUTATING = ("start", "stop", "restart", "reset", "cleanup", "restore", "backup")

# Commands that decide the lab configuration themselves
CONFIGURING = ("start", "reset")

def create_help(header, options):
    """Create formated help."""
    return "\n" + header + "\n" + \
           "\n".join(map(lambda x: "  " + x, options)) + "\n"

def build_parser():
    commands = list(COMMANDS.keys())
    commands_help = create_help("command supports the following:", commands)
    examples_help = create_help("examples:", [
        "vault-lab --tls start",
        "vault-lab --cluster multi --backend consul start",
        "vault-lab backup my-config \"Working KV setup\"",
        "vault-lab restore my-config",
        "vault-lab delete-backup --force my-config",
        "vault-lab export-backup my-config ./my-backup.tar.gz",
    ])

    parser = argparse.ArgumentParser(description = "Deploy and manage a local HashiCorp Vault lab",
                                     formatter_class=argparse.RawDescriptionHelpFormatter,
                                     epilog=commands_help + examples_help)
    parser.add_argument("-c", "--clean",
                        action = "store_true",
                        help = "Force a clean setup before start")
    parser.add_argument("-v", "--verbose",
                        action = "store_true",
                        help = "Verbose output")
    parser.add_argument("--no-color",
                        action = "store_true",
                        help = "Disable colored output")
    parser.add_argument("--backend",
                        choices = BACKENDS,
                        help = "Storage backend")
    parser.add_argument("--cluster",
                        choices = CLUSTER_MODES,
                        help = "Start a single node or a 3-node cluster")
    parser.add_argument("--tls",
                        action = "store_true",
                        default = None,
                        help = "Enable TLS/SSL encryption")
    parser.add_argument("--base-dir",
                        metavar = "<dir>",
                        help = "Directory holding the lab (default: $VAULT_LAB_BASE_DIR or the current directory)")
    parser.add_argument("--vault-version",
                        metavar = "<version>",
                        help = "Vault version to run (default: latest)")
    parser.add_argument("--consul-version",
                        metavar = "<version>",
                        help = "Consul version to run (default: latest)")
    parser.add_argument("--no-fallback",
                        action = "store_true",
                        help = "Fail instead of using an existing local binary when a download fails")
    parser.add_argument("-y", "--yes",
                        action = "store_true",
                        help = "Take the default answer for every prompt")
    parser.add_argument("--force",
                        action = "store_true",
                        help = "Skip the typed confirmation of restore / delete-backup")
    parser.add_argument("command",
                        choices = commands,
                        metavar = "command",
                        nargs = "?",
                        default = "start",
                        help = "Command to execute (default: start)")
    parser.add_argument("arguments",
                        nargs = "*",
                        help = "Arguments to pass to the command")
    return parser

def apply_flags(ctx, args):
    """Let explicit flags override the saved configuration of an existing lab"""
    if args.backend is None and args.cluster is None and args.tls is None:
        return

    config = ctx.config
    cluster = args.cluster or config.cluster_mode
    backend = args.backend or (CONSUL if cluster == MULTI else config.backend_type)
    tls = config.tls_enabled if args.tls is None else args.tls
    ctx.config = LabConfig(backend, cluster, tls)

def build_context(args):
    kwargs = {'assume_yes': args.yes}
    if args.no_fallback:
        kwargs['fallback'] = False

    ctx = load_context(args.base_dir, **kwargs)
    if args.vault_version:
        ctx.settings['VAULT_VERSION'] = args.vault_version
    if args.consul_version:
        ctx.settings['CONSUL_VERSION'] = args.consul_version

    if args.command not in CONFIGURING:
        apply_flags(ctx, args)
    return ctx

def run_command(args):
    """Execute the selected command

    Returns:
        (int) : Exit code
    """
    ctx = build_context(args)
    lab = LabController(ctx)
    fn = COMMANDS[args.command]

    if args.command in MUTATING:
        with LabLock(ctx.paths.lock_file):
            rtn = fn(lab, args, *args.arguments)
    else:
        rtn = fn(lab, args, *args.arguments)

    return rtn if isinstance(rtn, int) else 0

def main(argv = None):
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)

    try:
        inspect.signature(COMMANDS[args.command]).bind(None, args, *args.arguments)
    except TypeError:
        parser.error("wrong number of arguments for '{}'".format(args.command))

    console.init(color = not args.no_color, verbose = args.verbose)
    logging.basicConfig(level = logging.DEBUG if args.verbose else logging.WARNING,
                        format = "%(levelname)s:%(name)s:%(message)s")

    try:
        return run_command(args)
    except LabCanceled as ex:
        console.info(str(ex))
        return 0
    except StatusCheckError as ex:
        console.error(str(ex))
        if ex.log_path is not None:
            lines = tail(ex.log_path)
            if lines:
                console.yellow("Last {} lines of {}:".format(len(lines), ex.log_path), file=sys.stderr)
                for line in lines:
                    print("  " + line, file=sys.stderr)
        return 1
    except LabError as ex:
        console.error(str(ex))
        return 1
    except hvac.exceptions.VaultError as ex:
        console.error("Vault error: {}".format(str(ex).strip()))
        return 1
    except requests.RequestException as ex:
        console.error("Communication error: {}".format(ex))
        return 1
    except KeyboardInterrupt:
        print()
        console.error("Interrupted")
        return 1
    except Exception:
        print()
        # suppress the printing of multiple chained exceptions, just the current one
        traceback.print_exc(chain=False)
        return 1

if __name__ == '__main__':
    sys.exit(main())
