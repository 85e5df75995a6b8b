# -*- mode: python -*-
# modfinder: A simple tool to resolve required modules
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

"""
This is a poor man's module resolver.  It asks modprobe what it would do for
each alias and collects the result in load order.  The guest then loads
everything from the initramfs; there is no hotplug.
"""

from typing import Iterable, List, NamedTuple, Tuple

import itertools
import re
import subprocess

from . import util

_INSMOD_RE = re.compile("^insmod (.*[^ ]) *$")
_BUILTIN_RE = re.compile(r"^builtin (\S+)")


class ModuleDeps(NamedTuple):
    files: List[str]
    builtins: List[str]


def resolve_dep(modalias, root, kver) -> ModuleDeps:
    # /usr/sbin might not be in the path, and modprobe is usually in /usr/sbin
    modprobe = util.find_binary_or_raise(["modprobe"])
    args = [modprobe, "--show-depends", "-C", "/var/empty"]
    args += ["-d", root, "-S", kver, "--", modalias]

    proc = subprocess.run(args, capture_output=True, check=False)
    if proc.returncode != 0:
        msg = proc.stderr.decode("utf-8", errors="replace").strip()
        raise util.ToolError(
            f"modprobe cannot resolve '{modalias}' for {kver}"
            + (f": {msg}" if msg else "")
            + "\n(stale module metadata can be regenerated with --depmod)"
        )

    files = []
    builtins = []
    for line in proc.stdout.decode("utf-8", errors="replace").split("\n"):
        m = _INSMOD_RE.match(line)
        if m:
            files.append(m.group(1))
            continue
        m = _BUILTIN_RE.match(line)
        if m:
            builtins.append(m.group(1))

    return ModuleDeps(files, builtins)


def merge_mods(lists: Iterable[Iterable[str]]) -> List[str]:
    found: set = set()
    mods = []
    for mod in itertools.chain(*lists):
        if mod not in found:
            found.add(mod)
            mods.append(mod)
    return mods


def find_modules(aliases, root, kver) -> Tuple[List[str], List[str]]:
    """Return the module files to load, in order, and the built-in names."""
    deps = [resolve_dep(a, root, kver) for a in aliases]
    return (
        merge_mods(d.files for d in deps),
        merge_mods(d.builtins for d in deps),
    )
