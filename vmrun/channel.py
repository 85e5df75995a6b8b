# -*- mode: python -*-
# channel: Hand a command to the guest and get its exit status back
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

"""
The guest sees the host filesystem, so the command travels as a shell script
on the host and the exit status comes back as a file next to it.  The guest
init runs ``$SCRIPT``; the script writes its status to ``$SCRIPT.ret``.
"""

from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import enum
import os
import re
import shlex
import tempfile

# The guest mounts fresh filesystems here, host contents are not visible.
GUEST_FRESH_DIRS = ("/dev/shm", "/run")
TMP_VARS = ("TMPDIR", "TMP", "TEMP", "TEMPDIR")

EXCLUDED_VARS = {"_", "SHLVL", "PWD", "OLDPWD", "LD_PRELOAD", "FAKED_MODE"}

SBIN_PATH = "/sbin:/usr/sbin:/usr/local/sbin"
RESULT_SUFFIX = ".ret"

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class CommandChannel(NamedTuple):
    script_path: str
    result_path: str


class ResultState(enum.Enum):
    VALUE = "value"
    EMPTY = "empty"
    ABSENT = "absent"


class ChannelResult(NamedTuple):
    state: ResultState
    value: Optional[int] = None


def default_command(env: Mapping[str, str]) -> List[str]:
    return [env.get("SHELL") or "/bin/sh"]


def is_guest_fresh(path) -> bool:
    path = os.path.normpath(path)
    return any(path == d or path.startswith(d + "/") for d in GUEST_FRESH_DIRS)


def exported_env(env: Mapping[str, str]) -> List[Tuple[str, str]]:
    ret: Dict[str, str] = {}
    for name, value in env.items():
        if name in EXCLUDED_VARS or name.startswith("FAKEROOT"):
            continue
        if not _IDENT_RE.match(name):
            continue
        ret[name] = value

    # The command runs as the guest's root.
    ret["USER"] = "root"
    ret["LOGNAME"] = "root"
    return sorted(ret.items())


def generate_script(
    command: Sequence[str],
    cwd: str,
    env: Mapping[str, str],
    sbin: bool,
    result_path: str,
) -> str:
    if not command:
        command = default_command(env)
        sbin = True

    lines = ["#!/bin/sh"]
    for name, value in exported_env(env):
        lines.append(f"export {name}={shlex.quote(value)}")

    if sbin:
        lines.append(f'export PATH="{SBIN_PATH}:$PATH"')

    for name in TMP_VARS:
        if name in env and is_guest_fresh(env[name]):
            lines.append(f"export {name}=/tmp")

    ret = shlex.quote(result_path)
    # A failed cd is still a command status.
    lines.append(f"cd {shlex.quote(cwd)} || {{ echo 1 > {ret}; sync; exit 1; }}")
    lines.append(" ".join(shlex.quote(arg) for arg in command))
    lines.append("rc=$?")
    lines.append("[ -t 0 ] && stty sane")
    lines.append(f"echo $rc > {ret}")
    lines.append("sync")
    lines.append("exit $rc")
    return "\n".join(lines) + "\n"


def script_dir(env: Mapping[str, str]) -> str:
    """A host directory the guest can see too."""
    tmpdir = env.get("TMPDIR")
    if tmpdir and os.path.isdir(tmpdir) and not is_guest_fresh(tmpdir):
        return tmpdir
    return "/tmp"


def make_channel(
    command: Sequence[str],
    cwd: str,
    env: Mapping[str, str],
    sbin: bool = False,
    directory: Optional[str] = None,
) -> CommandChannel:
    if directory is None:
        directory = script_dir(env)

    fd, script_path = tempfile.mkstemp(prefix="vm-run.", suffix=".sh", dir=directory)
    result_path = script_path + RESULT_SUFFIX

    script = generate_script(command, cwd, env, sbin, result_path)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(script)

    # Created up front so the guest writes into an existing host file.
    with open(result_path, "w", encoding="utf-8"):
        pass

    return CommandChannel(script_path, result_path)


def remove_result(channel: CommandChannel) -> None:
    if os.path.lexists(channel.result_path):
        os.unlink(channel.result_path)


def read_result(channel: CommandChannel) -> ChannelResult:
    try:
        with open(channel.result_path, encoding="utf-8") as f:
            data = f.read().strip()
    except FileNotFoundError:
        return ChannelResult(ResultState.ABSENT)

    remove_result(channel)

    try:
        value = int(data)
    except ValueError:
        return ChannelResult(ResultState.EMPTY)
    return ChannelResult(ResultState.VALUE, value & 0xFF)
