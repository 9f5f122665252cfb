#!/usr/bin/env python3

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

"""A script for manipulating the Vault of a running lab.

Tokens and keys are read from the lab's vault-data directory.

COMMANDS : A dictionary of available commands and the functions to call
"""

import argparse
import sys

import alter_path
from vaultlab import console
from vaultlab.configuration import load_context
from vaultlab.exceptions import LabError
from vaultlab.vault import Vault

def vault_init(vault):
    """Initialize the lab Vault, if it is not already initialized

    Args:
        vault (Vault) : Vault connection to use
    """
    vault.initialize()

def vault_configure(vault):
    """Apply the lab's demo configuration

    Args:
        vault (Vault) : Vault connection to use
    """
    vault.configure()

def vault_unseal(vault):
    """Unseal every node of the lab Vault

    Args:
        vault (Vault) : Vault connection to use
    """
    vault.unseal()

def vault_seal(vault):
    """Seal the lab Vault

    Args:
        vault (Vault) : Vault connection to use
    """
    vault.seal()

def vault_status(vault):
    """Print the status of the lab Vault

    Args:
        vault (Vault) : Vault connection to use
    """
    vault.status()

def vault_shell(vault):
    """Drop into a Python REPL session with a Vault connection

    Args:
        vault (Vault) : Vault connection to use
    """
    vault.shell()

def vault_approle_login(vault):
    """Log in with the AppRole role_id / secret_id saved by the lab

    Args:
        vault (Vault) : Vault connection to use
    """
    print(vault.approle_login())

COMMANDS = {
    "vault-init": vault_init,
    "vault-configure": vault_configure,
    "vault-unseal": vault_unseal,
    "vault-seal": vault_seal,
    "vault-status": vault_status,
    "vault-shell":vault_shell,
    "vault-approle-login": vault_approle_login,
}

if __name__ == '__main__':
    def create_help(header, options):
        """Create formated help."""
        return "\n" + header + "\n" + \
               "\n".join(map(lambda x: "  " + x, options)) + "\n"

    commands = list(COMMANDS.keys())
    commands_help = create_help("command supports the following:", commands)

    parser = argparse.ArgumentParser(description = "Script for manipulating the Vault of a lab",
                                     formatter_class=argparse.RawDescriptionHelpFormatter,
                                     epilog=commands_help)
    parser.add_argument("--base-dir", "-b",
                        metavar = "<dir>",
                        help = "Directory holding the lab (default: $VAULT_LAB_BASE_DIR or the current directory)")
    parser.add_argument("--url",
                        metavar = "<url>",
                        help = "Vault address to use instead of the lab's first node")
    parser.add_argument("command",
                        choices = commands,
                        metavar = "command",
                        help = "Command to execute")
    parser.add_argument("arguments",
                        nargs = "*",
                        help = "Arguments to pass to the command")

    args = parser.parse_args()
    console.init()

    if args.command not in COMMANDS:
        parser.print_usage()
        sys.exit(1)

    try:
        ctx = load_context(args.base_dir)
        COMMANDS[args.command](Vault(ctx, url = args.url), *args.arguments)
    except LabError as ex:
        console.error(str(ex))
        sys.exit(1)
