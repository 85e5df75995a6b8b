# -*- mode: python -*-
# limits: Guest memory and CPU sizing
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

"""Pick -m and -smp values from what the host has and what the guest can use."""

import os
import re
from typing import List, Optional

from .util import ConfigError

# Below this QEMU's own default is the better choice.
MIN_MEMORY_MB = 256

_MEMORY_RE = re.compile(r"^\d+[KMGT]?$")


def has_memory_suffix(string):
    pattern = r"\d+[KMGT]$"
    return re.match(pattern, string) is not None


def parse_memory(value: str) -> str:
    """Validate a --mem value.  A bare number is megabytes."""
    value = value.strip().upper()
    if not _MEMORY_RE.match(value):
        raise ConfigError(f"invalid memory size '{value}'")
    if not has_memory_suffix(value):
        value += "M"
    return value


def host_available_memory(meminfo="/proc/meminfo") -> Optional[int]:
    """Return MemAvailable in MB, or None if it can't be read."""
    try:
        with open(meminfo, encoding="utf-8") as fd:
            for line in fd:
                if line.startswith("MemAvailable:"):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        pass
    return None


def guest_memory(available, arch, minimum=MIN_MEMORY_MB) -> Optional[int]:
    if available is None:
        return None
    mem = available
    if arch.max_memory is not None:
        mem = min(mem, arch.max_memory)
    if mem < minimum:
        return None
    return mem


def guest_cpus(override, host, arch) -> Optional[int]:
    cpus = override if override is not None else host
    if cpus is None:
        return None
    if arch.max_cpus is not None:
        cpus = min(cpus, arch.max_cpus)
    # A single CPU is what QEMU does anyway.
    if cpus <= 1:
        return None
    return cpus


def qemu_limit_args(arch, mem=None, cpus=None, minimum=MIN_MEMORY_MB) -> List[str]:
    """Return the -m and -smp arguments, omitting what QEMU should default."""
    ret = []

    if mem is not None:
        ret.extend(["-m", mem])
    else:
        size = guest_memory(host_available_memory(), arch, minimum)
        if size is not None:
            ret.extend(["-m", f"{size}M"])

    smp = guest_cpus(cpus, os.cpu_count(), arch)
    if smp is not None:
        ret.extend(["-smp", str(smp)])

    return ret
