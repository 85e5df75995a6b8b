# -*- mode: python -*-
# virtmods: Module aliases needed to boot onto the host filesystem
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

from typing import List

from .architectures import VirtioBus

# Portable across all architectures.
BASE_ALIASES = [
    "9p",
    "9pnet_virtio",
]

BUS_ALIASES = {
    VirtioBus.PCI: "virtio_pci",
    VirtioBus.DEVICE: "virtio_mmio",
}

FAT_ALIASES = [
    "vfat",
    "nls_cp437",  # default codepage
    "nls_iso8859_1",  # default iocharset
]


def transport_modules(bus, overlay=False, drives=False, fat=False) -> List[str]:
    aliases = list(BASE_ALIASES)
    aliases.append(BUS_ALIASES[bus])
    if overlay:
        aliases.append("overlay")
    if drives or fat:
        aliases.append("virtio_blk")
    if fat:
        aliases.extend(FAT_ALIASES)
    return aliases
