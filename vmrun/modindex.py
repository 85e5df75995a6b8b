# -*- mode: python -*-
# modindex: Keep the depmod metadata of the selected kernel usable
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

"""
modprobe needs an up to date modules.dep to resolve anything.  Package build
roots often ship a stale one (or none at all), so it's regenerated on the fly.
A build root is not ours to modify, though: in that case the depmod output is
saved beforehand and put back when vm-run exits, no matter how it exits.
"""

from typing import Optional

import atexit
import os
import shutil
import subprocess
import sys
import tarfile
import tempfile

from .kernels import Tier
from .util import ToolError, find_binary_or_raise

# Everything depmod (re)writes.
DEPMOD_FILES = (
    "modules.dep",
    "modules.dep.bin",
    "modules.alias",
    "modules.alias.bin",
    "modules.softdep",
    "modules.weakdep",
    "modules.symbols",
    "modules.symbols.bin",
    "modules.builtin.bin",
    "modules.builtin.alias.bin",
    "modules.devname",
)

# Build inputs, never touched here.
TREE_INPUT_FILES = ("modules.order", "modules.builtin", "modules.builtin.modinfo")

PRIVATE_DIR = ".vm-run"


def is_file_more_recent(a, b) -> bool:
    return os.stat(a).st_mtime > os.stat(b).st_mtime


def module_dir(cand, kver) -> str:
    if cand.tier == Tier.BUILD_DIR:
        return os.path.join(cand.tree, PRIVATE_DIR, "lib", "modules", kver)
    for sub in ("lib/modules", "usr/lib/modules"):
        path = os.path.join(cand.root, sub, kver)
        if os.path.isdir(path):
            return path
    return os.path.join(cand.root, "lib", "modules", kver)


def module_root(moddir) -> str:
    """Return the directory to pass to depmod -b / modprobe -d."""
    root = os.path.dirname(os.path.dirname(os.path.dirname(moddir)))
    # /usr/lib/modules lives under the same root as /lib/modules.
    if root.endswith("/usr"):
        root = os.path.dirname(root)
    return root or "/"


def prepare_tree_mods(tree, moddir) -> None:
    """Lay out a module directory for an in-tree kernel build."""
    os.makedirs(moddir, exist_ok=True)

    link = os.path.join(moddir, "kernel")
    if not os.path.islink(link) or os.readlink(link) != tree:
        if os.path.lexists(link):
            os.unlink(link)
        os.symlink(tree, link)

    for name in TREE_INPUT_FILES:
        src = os.path.join(tree, name)
        dst = os.path.join(moddir, name)
        if not os.path.exists(src):
            continue
        if not os.path.exists(dst) or is_file_more_recent(src, dst):
            shutil.copy2(src, dst)


def is_stale(moddir) -> bool:
    dep = os.path.join(moddir, "modules.dep")
    order = os.path.join(moddir, "modules.order")
    if not os.path.exists(dep):
        return True
    if os.path.exists(order):
        if os.path.getsize(dep) == 0 and os.path.getsize(order) > 0:
            return True
        if is_file_more_recent(order, dep):
            return True
    return False


def looks_disposable(root, buildroot=None) -> bool:
    """True if `root` is somebody else's tree that we must leave unchanged."""
    root = os.path.abspath(root)
    if buildroot and root == os.path.abspath(buildroot):
        return True
    if root == "/":
        return False
    return os.path.basename(root) != PRIVATE_DIR


class ModuleIndexSnapshot:
    """Saves the depmod output of a module directory and restores it once.

    Usable as a context manager.  An atexit hook covers the paths where the
    context is never left normally.
    """

    def __init__(self, moddir):
        self.moddir = moddir
        self.archive: Optional[str] = None
        self._restored = False

    def take(self) -> None:
        fd, self.archive = tempfile.mkstemp(prefix="vm-run-depmod.", suffix=".tar")
        os.close(fd)
        with tarfile.open(self.archive, "w") as tar:
            for name in DEPMOD_FILES:
                path = os.path.join(self.moddir, name)
                if os.path.lexists(path):
                    tar.add(path, arcname=name)
        atexit.register(self.restore)

    def restore(self) -> None:
        if self._restored or self.archive is None:
            return
        self._restored = True

        for name in DEPMOD_FILES:
            path = os.path.join(self.moddir, name)
            if os.path.lexists(path):
                os.unlink(path)
        with tarfile.open(self.archive, "r") as tar:
            # Extraction filters only exist in security-patched releases.
            if hasattr(tarfile, "tar_filter"):
                tar.extractall(self.moddir, filter="tar")
            else:
                tar.extractall(self.moddir)
        os.unlink(self.archive)

    def __enter__(self):
        self.take()
        return self

    def __exit__(self, *exc_info):
        self.restore()
        atexit.unregister(self.restore)


def run_depmod(root, kver, verbose=False) -> None:
    depmod = find_binary_or_raise(["depmod"])
    args = [depmod, "-a", "-b", root, kver]
    if verbose:
        sys.stderr.write("vm-run: running %s\n" % " ".join(args))
    ret = subprocess.call(args)
    if ret != 0:
        raise ToolError(f"depmod failed with status {ret} for {root} {kver}")


def ensure_index(
    stack, moddir, kver, permanent=False, buildroot=None, verbose=False
) -> Optional[ModuleIndexSnapshot]:
    """Regenerate stale module metadata.

    Returns the snapshot bound to `stack` when the regeneration has to be
    undone on exit, None otherwise.
    """
    if not is_stale(moddir):
        return None

    root = module_root(moddir)
    if not os.access(moddir, os.W_OK):
        raise ToolError(
            f"module metadata in {moddir} is stale and the directory is not "
            f"writable: run 'depmod -a -b {root} {kver}' as root, or use --depmod"
        )

    snapshot = None
    if not permanent and looks_disposable(root, buildroot):
        snapshot = stack.enter_context(ModuleIndexSnapshot(moddir))

    run_depmod(root, kver, verbose=verbose)
    return snapshot
