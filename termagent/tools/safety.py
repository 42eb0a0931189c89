"""Default dangerous-command predicate for the shell tool.

Deliberately conservative: a command is safe only when every segment is a
known read-only program and the line has no redirection, substitution or
chaining.  Callers can swap in their own predicate.
"""

from __future__ import annotations

import re
import shlex

READ_ONLY_COMMANDS = frozenset(
    {
        "cat", "cd", "date", "df", "du", "echo", "env", "file", "find", "grep", "head",
        "less", "ls", "pwd", "rg", "stat", "tail", "tree", "uname", "wc", "which", "whoami",
    }
)

READ_ONLY_GIT = frozenset({"status", "log", "diff", "show", "branch", "blame", "rev-parse"})

_SHELL_OPERATORS = re.compile(r"(>|<|;|&|\||`|\$\(|\n)")
_FIND_WRITES = frozenset({"-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fprintf"})


def is_dangerous_command(command: str) -> bool:
    """True unless *command* is a single read-only invocation."""
    if not command or not command.strip():
        return True
    if _SHELL_OPERATORS.search(command):
        return True
    try:
        tokens = shlex.split(command)
    except ValueError:
        return True
    if not tokens:
        return True

    program, args = tokens[0], tokens[1:]
    if program == "git":
        return not args or args[0] not in READ_ONLY_GIT
    if program == "find":
        return any(arg in _FIND_WRITES for arg in args)
    return program not in READ_ONLY_COMMANDS
