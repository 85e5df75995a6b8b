# -*- mode: python -*-
# kernels: Find, rank and select the kernel image to boot
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

"""Kernel discovery.

Candidates come from three places, best first:

1. the package build root (``$RPM_BUILD_ROOT/boot``), i.e. the kernel that is
   being packaged right now;
2. built kernel source trees found under ``$RPM_BUILD_DIR``;
3. the host's ``/boot``.

A build root kernel always wins over the others no matter how old it is.
Inside one tier the most recently modified image wins.
"""

import enum
import glob
import os
import re
import subprocess
import sys
from typing import Iterable, List, NamedTuple, Optional

from .util import DiscoveryError, ToolError

# Present in every kernel source tree, see also virtme's check_kernel_repo().
TREE_MARKER = "scripts/kconfig/merge_config.sh"
TREE_SEARCH_DEPTH = 2

BOOT_DIR = "/boot"

NO_KERNEL_EXIT = 1
NO_MATCH_EXIT = 2

_RELEASE_RE = re.compile(r"^vmlinu[xz]-(\S+)$")
_MODULES_RELEASE_RE = re.compile(r"/lib/modules/([^/]+)/vmlinu[xz]$")


class Tier(enum.IntEnum):
    BUILDROOT = 0
    BUILD_DIR = 1
    INSTALLED = 2


class KernelCandidate(NamedTuple):
    path: str
    tier: Tier
    mtime: float
    tree: Optional[str] = None
    # Build root, source tree or root filesystem the image belongs to.
    root: str = "/"


def is_kernel_tree(path) -> bool:
    return os.path.isfile(os.path.join(path, TREE_MARKER))


def find_kernel_trees(build_dir, depth=TREE_SEARCH_DEPTH) -> List[str]:
    trees = []
    base_depth = build_dir.rstrip("/").count("/")
    for dirpath, dirnames, _ in os.walk(build_dir):
        if is_kernel_tree(dirpath):
            trees.append(dirpath)
            # Nothing interesting below a kernel tree.
            dirnames.clear()
            continue
        if dirpath.rstrip("/").count("/") - base_depth >= depth:
            dirnames.clear()
        dirnames.sort()
    return trees


def _candidate(path, tier, root, tree=None) -> Optional[KernelCandidate]:
    if not os.path.isfile(path):
        return None
    path = os.path.realpath(path)
    return KernelCandidate(
        path=path, tier=tier, mtime=os.stat(path).st_mtime, tree=tree, root=root
    )


def _boot_images(bootdir, prefixes, tier, root) -> List[KernelCandidate]:
    ret = []
    for prefix in prefixes:
        for path in glob.glob(os.path.join(bootdir, f"{prefix}-*")):
            cand = _candidate(path, tier, root)
            if cand is not None:
                ret.append(cand)
    return ret


def tree_image(tree, arch) -> Optional[str]:
    for name in arch.kimg_names:
        path = os.path.join(tree, name)
        if os.path.isfile(path):
            return path
    return None


def rank(candidates: Iterable[KernelCandidate]) -> List[KernelCandidate]:
    return sorted(candidates, key=lambda c: (c.tier, -c.mtime, c.path))


def find_kernels(arch, buildroot=None, build_dir=None, bootdir=None):
    if bootdir is None:
        bootdir = BOOT_DIR
    candidates = []

    if buildroot:
        candidates += _boot_images(
            os.path.join(buildroot, "boot"),
            ("vmlinuz", "vmlinux"),
            Tier.BUILDROOT,
            buildroot,
        )

    if build_dir and os.path.isdir(build_dir):
        for tree in find_kernel_trees(build_dir):
            path = tree_image(tree, arch)
            if path is not None:
                candidates.append(_candidate(path, Tier.BUILD_DIR, tree, tree))

    candidates += _boot_images(bootdir, arch.img_prefixes, Tier.INSTALLED, "/")

    # /boot/vmlinuz is often a symlink to one of the others.
    seen = set()
    unique = []
    for cand in candidates:
        if cand.path not in seen:
            seen.add(cand.path)
            unique.append(cand)
    return rank(unique)


def match_kernel(candidates, pattern) -> Optional[KernelCandidate]:
    """Pick the best candidate for a --kernel string.

    An exact path suffix beats a whole-word match, which beats any
    substring.  Candidates are expected in ranked order.
    """
    for cand in candidates:
        if cand.path.endswith(pattern):
            return cand
    word = re.compile(r"\b" + re.escape(pattern) + r"\b")
    for cand in candidates:
        if word.search(cand.path):
            return cand
    for cand in candidates:
        if pattern in cand.path:
            return cand
    return None


def find_tree_for(path) -> Optional[str]:
    path = os.path.dirname(os.path.abspath(path))
    while path != "/":
        if is_kernel_tree(path):
            return path
        path = os.path.dirname(path)
    return None


def get_rootfs_from_kernel_path(path):
    while path and path != "/" and not os.path.exists(path + "/lib/modules"):
        path, _ = os.path.split(path)
    # If a distro has /lib symlinked to /usr/lib, the rootfs may be
    # mistakenly identified as /usr.  In such cases, go one level higher.
    if path.endswith("/usr"):
        path, _ = os.path.split(path)
    return os.path.abspath(path or "/")


def classify(path, buildroot=None) -> KernelCandidate:
    """Make a candidate out of an explicitly given image file."""
    path = os.path.abspath(path)
    if buildroot:
        buildroot = os.path.abspath(buildroot)
        if path.startswith(buildroot.rstrip("/") + "/"):
            return _candidate(path, Tier.BUILDROOT, buildroot)
    tree = find_tree_for(path)
    if tree is not None:
        return _candidate(path, Tier.BUILD_DIR, tree, tree)
    return _candidate(path, Tier.INSTALLED, get_rootfs_from_kernel_path(path))


def format_listing(candidates) -> str:
    if not candidates:
        return "no kernels found\n"
    lines = ["available kernels (best first):"]
    for cand in candidates:
        lines.append(f"  {cand.path}  [{cand.tier.name.lower()}]")
    return "\n".join(lines) + "\n"


def list_kernels(arch, env=None) -> List[KernelCandidate]:
    if env is None:
        env = os.environ
    return find_kernels(
        arch,
        buildroot=env.get("RPM_BUILD_ROOT"),
        build_dir=env.get("RPM_BUILD_DIR"),
    )


def select_kernel(arch, selection=None, env=None) -> KernelCandidate:
    """Resolve --kernel into a single candidate.

    `selection` is None to take the best kernel available, a path to an
    existing image, or a string to match against the candidates.
    """
    if env is None:
        env = os.environ

    if selection and os.path.isfile(selection):
        return classify(selection, env.get("RPM_BUILD_ROOT"))

    candidates = list_kernels(arch, env)
    if not candidates:
        sys.stderr.write("vm-run: " + format_listing(candidates))
        raise DiscoveryError("no kernel to boot", NO_KERNEL_EXIT)

    if not selection:
        return candidates[0]

    cand = match_kernel(candidates, selection)
    if cand is None:
        sys.stderr.write(format_listing(candidates))
        raise DiscoveryError(f"no kernel matching '{selection}'", NO_MATCH_EXIT)
    return cand


def kernel_release(cand: KernelCandidate) -> str:
    if cand.tier == Tier.BUILD_DIR:
        try:
            return (
                subprocess.check_output(
                    ["make", "-s", "-C", cand.tree, "kernelrelease"],
                    stderr=subprocess.DEVNULL,
                )
                .decode("utf-8")
                .strip()
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ToolError(
                f"cannot query kernel release of {cand.tree}: {exc}"
            ) from exc

    m = _RELEASE_RE.match(os.path.basename(cand.path))
    if m:
        return m.group(1)
    m = _MODULES_RELEASE_RE.search(cand.path)
    if m:
        return m.group(1)
    raise DiscoveryError(f"cannot tell kernel release from {cand.path}")
