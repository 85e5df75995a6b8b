# -*- mode: python -*-
# Copyright 2023 Andrea Righi

"""vm-run version"""

import os
from importlib import metadata
from subprocess import check_output, DEVNULL, CalledProcessError

PKG_VERSION = "1.0"


def get_package_version():
    try:
        return metadata.version("vm-run")
    except metadata.PackageNotFoundError:
        return PKG_VERSION


def get_version_string():
    if os.environ.get("VM_RUN_PACKAGE"):
        return PKG_VERSION

    if not os.environ.get("__VM_RUN_LOCAL"):
        return get_package_version()

    try:
        # Get the version from `git describe`, but only if the parent of this
        # directory is a vm-run checkout; otherwise fall back to PKG_VERSION.
        version = (
            check_output(
                "cd %s && [ -e ../.git ] && git describe --always --long --dirty"
                % os.path.dirname(__file__),
                shell=True,
                stderr=DEVNULL,
            )
            .decode("utf-8")
            .strip()
        )

        # Remove the 'v' prefix if present
        if version.startswith("v"):
            version = version[1:]

        # Replace hyphens with plus sign for build metadata
        return version.replace("-", "+", 1).replace("-", ".")
    except CalledProcessError:
        return PKG_VERSION


VERSION = get_version_string()

if __name__ == "__main__":
    print(VERSION)
