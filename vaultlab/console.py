# Copyright 2019 The Johns Hopkins University Applied Physics Laboratory
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
A library for interacting with the user and their terminal. All methods in this
library can detect when output is being piped or redirected and will change their
behavior so they don't emit escape codes.

Informational lines are written to stdout, warnings and errors to stderr, using
the same `[LEVEL]` prefixes as the original lab scripts.
"""

import sys
import signal
import colorama
from colorama import Fore, Style

_state = {
    'color': True,
    'verbose': False,
}

def init(color=True, verbose=False):
    colorama.init()
    set_color(color)
    set_verbose(verbose)

def set_color(enabled):
    _state['color'] = bool(enabled)

def set_verbose(enabled):
    _state['verbose'] = bool(enabled)

def _use_color(stream):
    if not _state['color']:
        return False
    try:
        return stream.isatty()
    except AttributeError:
        return False

def _colorize(color, *msg, **kwargs):
    stream = kwargs.get('file') or sys.stdout
    if _use_color(stream):
        print(color, *msg, Style.RESET_ALL, sep='', **kwargs)
    else:
        print(*msg, sep='', **kwargs)

def yellow(msg, **kwargs):
    return _colorize(Fore.YELLOW, msg, **kwargs)

def _prefixed(color, level, msg, stream):
    if _use_color(stream):
        line = "{}[{}]{} {}".format(color, level, Style.RESET_ALL, msg)
    else:
        line = "[{}] {}".format(level, msg)
    print(line, file=stream, flush=True)

def fail(msg):
    _prefixed(Fore.RED, 'FAIL', msg, sys.stdout)

def passed(msg):
    _prefixed(Fore.GREEN, 'PASS', msg, sys.stdout)

def error(msg):
    _prefixed(Fore.RED, 'ERROR', msg, sys.stderr)

def warning(msg):
    _prefixed(Fore.YELLOW, 'WARN', msg, sys.stderr)

def info(msg):
    _prefixed(Fore.GREEN, 'INFO', msg, sys.stdout)

def debug(msg):
    if _state['verbose']:
        _prefixed(Fore.CYAN, 'DEBUG', msg, sys.stdout)

def header(msg):
    """Print a section banner, the way the lab marks the start of each step"""
    info(msg.upper())

def dot():
    """Print a single progress dot without a newline"""
    print('.', end='', flush=True)

def _raise_timeout(signum, frame):
    """Signal handler that always raises a TimeoutError"""
    raise TimeoutError()

def _input(message, timeout):
    # SIGALRM is not available on Windows
    use_alarm = timeout is not None and hasattr(signal, 'SIGALRM')
    if use_alarm:
        signal.signal(signal.SIGALRM, _raise_timeout)
        signal.alarm(timeout)

    try:
        resp = input(message)
        if not sys.stdin.isatty():
            # If stdin is piped (often from `yes`) then print the response so
            # that is shows up in the logs (as it was not typed in the screen)
            print(resp)
        return resp
    except (TimeoutError, EOFError):
        print(" (no answer)") # since user didn't hit <enter>
        return None
    finally:
        if use_alarm:
            signal.alarm(0)

def confirm(message, default = False, timeout = None):
    """
    General method to warn the user to read the message before proceeding
    and prompt a yes or no answer.

    If stdout is piped a timeout will be set (if not provided) so that the
    script doesn't hang waiting for input, and the default is taken.

    Args:
        message (str): The message which will be showed to the user.
        default (bool): Denoting if yes or no should be the default response
        timeout (optional[int]): Number of seconds to wait before returning the
                                 default value

    Returns:
        returns True if user confirms with yes
    """
    if not sys.stdout.isatty() and timeout is None:
        timeout = 3

    suffix = " [{}/{}]: ".format("Y" if default else "y",
                                "n" if default else "N")
    resp = _input(message + suffix, timeout)

    if not resp:
        return default
    else:
        return resp[0] in ('y', 'Y')

def confirm_typed(message, word = 'yes'):
    """Ask the user to type a full word before a destructive action.

    Unlike confirm() there is no timeout and no default: anything other than
    the exact word (case insensitive) is a refusal.

    Args:
        message (str): Warning shown before the prompt
        word (str): Word that must be typed to continue

    Returns:
        (bool): True if the user typed the word
    """
    yellow(message)
    resp = _input("Are you sure you want to continue? ({}/NO): ".format(word), None)
    return resp is not None and resp.strip().lower() == word.lower()

def choose(message, choices, default):
    """Prompt for one of a fixed set of values.

    An empty answer selects the default. An invalid answer is asked again.

    Args:
        message (str): Question to display
        choices (list[str]): Accepted answers
        default (str): Value used for an empty answer or no input

    Returns:
        (str): The selected choice
    """
    prompt = "{} ({}) [{}]: ".format(message, "/".join(choices), default)
    while True:
        resp = _input(prompt, None)
        if resp is None:
            return default

        resp = resp.strip().lower()
        if len(resp) == 0:
            return default
        if resp in choices:
            return resp

        warning("'{}' is not one of {}".format(resp, ", ".join(choices)))
