# -*- mode: python -*-
# util.py: Misc helpers and the vm-run error hierarchy
# Copyright © 2014-2019 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

from typing import Optional, Sequence

import os
import shutil
import itertools


class VmRunError(Exception):
    """Base class for failures that end the run with a diagnostic."""

    exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(VmRunError):
    """Unknown architecture, accel mode, unavailable firmware, bad option."""


class DiscoveryError(VmRunError):
    """No kernel found, or none matching the requested string."""


class ToolError(VmRunError):
    """depmod, modprobe or make returned non-zero."""


class ResultMissingError(VmRunError):
    """QEMU exited cleanly but the guest never recorded a result."""

    exit_code = 255


class GracefulSkip(VmRunError):
    """Hardware acceleration is required by policy but unavailable."""

    exit_code = 0


def under_fakeroot() -> bool:
    return "FAKEROOTKEY" in os.environ


def is_real_root() -> bool:
    return os.geteuid() == 0 and not under_fakeroot()


def can_access_file(path):
    if not os.path.exists(path):
        return False
    try:
        fd = os.open(path, os.O_RDWR | os.O_CLOEXEC)
        os.close(fd)
        return True

    except OSError:
        return False


def find_binary(
    names: Sequence[str],
    root: str = "/",
    use_path: bool = True,
) -> Optional[str]:
    dirs = [
        os.path.join(*i)
        for i in itertools.product(["usr/local", "usr", ""], ["bin", "sbin"])
    ]

    for n in names:
        if use_path:
            # Search PATH first
            path = shutil.which(n)
            if path is not None:
                return path

        for d in dirs:
            path = os.path.join(root, d, n)
            if os.path.isfile(path):
                return path

    # We give up.
    return None


def find_binary_or_raise(
    names: Sequence[str], root: str = "/", use_path: bool = True
) -> str:
    ret = find_binary(names, root=root, use_path=use_path)
    if ret is None:
        raise ConfigError("could not find %s" % " or ".join(names))
    return ret
