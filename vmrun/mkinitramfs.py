# -*- mode: python -*-
# mkinitramfs: Generate the boot archive for vm-run
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

"""
The archive is deliberately tiny: the guest init program plus the handful of
modules needed to reach the host filesystem over 9p.  Everything else comes
from the host once the guest has mounted it.

Layout::

    init
    lib/modules/<name>.ko
    lib/modules/modules.load
"""

from typing import FrozenSet, List, NamedTuple, Sequence

import gzip
import lzma
import os
import shutil
import subprocess
import sys

from . import cpiowriter
from . import modfinder
from . import util
from .modindex import module_root

GUEST_INIT_NAMES = ["vm-init", "vm-init.static"]
GUEST_INIT_DIRS = ["/usr/lib/vm-run", "/usr/libexec/vm-run"]

_MODULE_SUFFIXES = (".ko.gz", ".ko.xz", ".ko.zst", ".ko")


class BootPayload(NamedTuple):
    kernel_version: str
    module_set: FrozenSet[str]
    archive_path: str


def module_name(path) -> str:
    name = os.path.basename(path)
    for suffix in _MODULE_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return name.replace("-", "_")


def find_guest_init(override=None, configured=None) -> str:
    for path in (override, configured):
        if path and os.path.isfile(path):
            return path

    for d in GUEST_INIT_DIRS:
        for name in GUEST_INIT_NAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path

    path = util.find_binary(GUEST_INIT_NAMES)
    if path is not None:
        return path

    raise util.ConfigError(
        "cannot find the guest init program (%s), use --init=PATH"
        % " or ".join(GUEST_INIT_NAMES)
    )


def install_module(src, destdir) -> str:
    """Copy one module into `destdir`, uncompressed.  Returns its file name."""
    name = module_name(src) + ".ko"
    dst = os.path.join(destdir, name)

    if src.endswith(".gz"):
        with gzip.open(src, "rb") as i, open(dst, "wb") as o:
            shutil.copyfileobj(i, o)
    elif src.endswith(".xz"):
        with lzma.open(src, "rb") as i, open(dst, "wb") as o:
            shutil.copyfileobj(i, o)
    elif src.endswith(".zst"):
        zstd = util.find_binary_or_raise(["zstd"])
        with open(dst, "wb") as o:
            ret = subprocess.call([zstd, "-dc", src], stdout=o)
        if ret != 0:
            raise util.ToolError(f"failed to decompress {src}")
    else:
        shutil.copyfile(src, dst)

    os.chmod(dst, 0o644)
    return name


def install_modules(archive_root, modfiles: Sequence[str]) -> List[str]:
    destdir = os.path.join(archive_root, "lib", "modules")
    os.makedirs(destdir, exist_ok=True)

    names = [install_module(mod, destdir) for mod in modfiles]

    with open(os.path.join(destdir, "modules.load"), "w", encoding="utf-8") as f:
        for name in names:
            f.write(name + "\n")
    return names


def install_init(archive_root, guest_init) -> None:
    dst = os.path.join(archive_root, "init")
    shutil.copyfile(guest_init, dst)
    os.chmod(dst, 0o755)


def build_payload(
    kver,
    moddir,
    aliases,
    guest_init,
    workdir,
    verbose=False,
) -> BootPayload:
    root = module_root(moddir)
    modfiles, builtins = modfinder.find_modules(aliases, root, kver)
    module_set = frozenset(
        [module_name(m) for m in modfiles] + [module_name(b) for b in builtins]
    )

    archive_root = os.path.join(workdir, "initramfs")
    os.makedirs(archive_root)
    install_modules(archive_root, modfiles)
    install_init(archive_root, guest_init)

    archive_path = os.path.join(workdir, "initramfs.cpio.gz")
    cpiowriter.write_gzip_archive(archive_root, archive_path)

    if verbose:
        sys.stderr.write(
            "vm-run: initramfs with %d modules (%s)\n"
            % (len(modfiles), " ".join(sorted(module_set)))
        )
    return BootPayload(kver, module_set, archive_path)
