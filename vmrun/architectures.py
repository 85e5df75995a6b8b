# -*- mode: python -*-
# architectures: Host architecture profiles, firmware and accelerator selection
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

import enum
import fcntl
import os
import platform
import shutil
from typing import List, NamedTuple, Optional, Tuple

from .util import ConfigError, GracefulSkip, can_access_file


class VirtioBus(enum.Enum):
    PCI = "pci"
    DEVICE = "device"


class AccelMode(enum.Enum):
    TRY = "try"
    CONDITIONAL = "conditional"
    FORCED_ON = "forced_on"
    ANY = "any"
    FORCED_OFF = "forced_off"
    # Leave the accelerator choice to QEMU.
    DISABLED = "disabled"


_ACCEL_ALIASES = {
    AccelMode.TRY: ("try", "detect", "auto"),
    AccelMode.CONDITIONAL: ("if", "cond", "conditional"),
    AccelMode.FORCED_ON: ("only", "force", "enable", "on", "yes", "true", "kvm"),
    AccelMode.ANY: ("any", "all"),
    AccelMode.FORCED_OFF: ("no", "off", "false", "tcg", ""),
    AccelMode.DISABLED: ("default",),
}

ACCEL_MODES = {
    alias: mode for mode, aliases in _ACCEL_ALIASES.items() for alias in aliases
}

# linux/kvm.h
KVM_CHECK_EXTENSION = 0xAE03
KVM_CAP_ARM_EL1_32BIT = 79

KVM_DEVICE = "/dev/kvm"

QEMU_DATA_DIRS = (
    "/usr/share/qemu",
    "/usr/share/seabios",
    "/usr/share/qemu-efi",
)


class Arch(NamedTuple):
    name: str
    qemuname: str
    linuxname: str
    console: str
    machine: Tuple[str, ...] = ()
    bus: VirtioBus = VirtioBus.PCI
    # Images inside a built source tree, bootable/compressed ones first.
    kimg_names: Tuple[str, ...] = ()
    img_prefixes: Tuple[str, ...] = ("vmlinuz",)
    firmware: Tuple[str, ...] = ()
    uefi: Tuple[str, ...] = ()
    secureboot: Tuple[str, ...] = ()
    secureboot_vars: Tuple[str, ...] = ()
    max_memory: Optional[int] = None
    max_cpus: Optional[int] = None

    def virtio_dev_type(self, virtiotype) -> str:
        return f"virtio-{virtiotype}-{self.bus.value}"

    def qemuargs(self, kvm_ok) -> List[str]:
        _ = kvm_ok
        return list(self.machine)

    def needs_compat_probe(self) -> bool:
        return False


class Arch_x86(Arch):
    __slots__ = ()

    def qemuargs(self, kvm_ok):
        ret = Arch.qemuargs(self, kvm_ok)

        if kvm_ok:
            ret.extend(["-cpu", "host"])
        elif self.name == "x86_64":
            # qemu64 lacks the baseline that current userspace expects.
            ret.extend(["-cpu", "max"])

        # Guests must never suspend: there is nobody to wake them up.
        if "q35" in self.machine_type():
            ret.extend(["-global", "ICH9-LPC.disable_s3=1"])
            ret.extend(["-global", "ICH9-LPC.disable_s4=1"])
        elif self.machine_type().startswith("pc"):
            ret.extend(["-global", "PIIX4_PM.disable_s3=1"])
            ret.extend(["-global", "PIIX4_PM.disable_s4=1"])

        return ret

    def machine_type(self) -> str:
        if len(self.machine) < 2:
            return ""
        return self.machine[1].split(",", 1)[0]


class Arch_aarch64(Arch):
    __slots__ = ()

    def qemuargs(self, kvm_ok):
        ret = Arch.qemuargs(self, kvm_ok)

        if kvm_ok:
            ret.extend(["-cpu", "host"])
        else:
            # Despite being called qemu-system-aarch64, QEMU defaults to
            # emulating a 32-bit CPU.  Override it.
            ret.extend(["-cpu", "max"])

        return ret


class Arch_aarch32(Arch):
    """32-bit guest on an aarch64 host through KVM's EL1 32-bit support."""

    __slots__ = ()

    def qemuargs(self, kvm_ok):
        ret = Arch.qemuargs(self, kvm_ok)

        if kvm_ok:
            ret.extend(["-cpu", "host,aarch64=off"])
        else:
            ret.extend(["-cpu", "cortex-a15"])

        return ret

    def needs_compat_probe(self) -> bool:
        return True


class Arch_arm(Arch):
    __slots__ = ()

    def qemuargs(self, kvm_ok):
        ret = Arch.qemuargs(self, kvm_ok)
        ret.extend(["-cpu", "max"])
        return ret


class Arch_ppc(Arch):
    __slots__ = ()


ARCHES = {
    arch.name: arch
    for arch in [
        Arch_ppc(
            "powerpc64le",
            qemuname="ppc64",
            linuxname="powerpc",
            console="hvc0",
            # TCG can't provide the spectre/ccf capabilities that pseries
            # asks for by default.
            machine=(
                "-machine",
                "pseries,cap-cfpc=broken,cap-sbbc=broken,"
                "cap-ibs=broken,cap-ccf-assist=off",
            ),
            # Apparently SLOF (QEMU's bundled firmware?) can't boot a zImage.
            kimg_names=("vmlinux",),
            img_prefixes=("vmlinuz", "vmlinux"),
        ),
        Arch_aarch64(
            "aarch64",
            qemuname="aarch64",
            linuxname="arm64",
            console="ttyAMA0",
            machine=("-machine", "virt,gic-version=max"),
            bus=VirtioBus.DEVICE,
            kimg_names=("arch/arm64/boot/Image.gz", "arch/arm64/boot/Image"),
            uefi=(
                "/usr/share/AAVMF/AAVMF_CODE.fd",
                "/usr/share/edk2/aarch64/QEMU_EFI.fd",
                "/usr/share/qemu-efi-aarch64/QEMU_EFI.fd",
            ),
        ),
        Arch_aarch32(
            "aarch32",
            qemuname="aarch64",
            linuxname="arm",
            console="ttyAMA0",
            machine=("-machine", "virt,highmem=off"),
            bus=VirtioBus.DEVICE,
            kimg_names=("arch/arm/boot/zImage", "arch/arm/boot/Image"),
            max_memory=3072,
            max_cpus=8,
        ),
        Arch_arm(
            "armh",
            qemuname="arm",
            linuxname="arm",
            console="ttyAMA0",
            machine=("-machine", "virt,highmem=off"),
            bus=VirtioBus.DEVICE,
            kimg_names=("arch/arm/boot/zImage", "arch/arm/boot/Image"),
            max_memory=2047,
            max_cpus=4,
        ),
        Arch_x86(
            "i586",
            qemuname="i386",
            linuxname="x86",
            console="ttyS0",
            machine=("-machine", "pc"),
            kimg_names=("arch/x86/boot/bzImage",),
            firmware=("/usr/share/seabios/bios.bin",),
            max_memory=3072,
        ),
        Arch_x86(
            "x86_64",
            qemuname="x86_64",
            linuxname="x86",
            console="ttyS0",
            machine=("-machine", "q35"),
            kimg_names=("arch/x86/boot/bzImage",),
            firmware=("/usr/share/seabios/bios-256k.bin",),
            uefi=(
                "/usr/share/OVMF/OVMF.fd",
                "/usr/share/edk2/ovmf/OVMF_CODE.fd",
                "/usr/share/OVMF/OVMF_CODE.fd",
                "/usr/share/OVMF/OVMF_CODE_4M.fd",
            ),
            secureboot=(
                "/usr/share/OVMF/OVMF_CODE.secboot.fd",
                "/usr/share/edk2/ovmf/OVMF_CODE.secboot.fd",
                "/usr/share/OVMF/OVMF_CODE_4M.secboot.fd",
            ),
            secureboot_vars=(
                "/usr/share/OVMF/OVMF_VARS.secboot.fd",
                "/usr/share/edk2/ovmf/OVMF_VARS.secboot.fd",
                "/usr/share/OVMF/OVMF_VARS_4M.ms.fd",
            ),
        ),
    ]
}


def get(arch: str) -> Arch:
    if arch in ARCHES:
        return ARCHES[arch]
    raise ConfigError(f"unsupported architecture: {arch}")


def can_use_aarch32() -> bool:
    """Check that KVM on this aarch64 kernel can run 32-bit guests."""
    try:
        fd = os.open(KVM_DEVICE, os.O_RDWR | os.O_CLOEXEC)
    except OSError:
        return False
    try:
        return fcntl.ioctl(fd, KVM_CHECK_EXTENSION, KVM_CAP_ARM_EL1_32BIT) > 0
    except OSError:
        return False
    finally:
        os.close(fd)


def host_arch(machine: Optional[str] = None) -> str:
    """Map a `uname -m` string onto a profile name."""
    if machine is None:
        machine = platform.machine()

    if machine in ("i386", "i486", "i586", "i686"):
        return "i586"
    if machine == "arm64":
        return "aarch64"
    if machine == "armv7l":
        return "armh"
    if machine == "armv8l":
        # 32-bit personality on an aarch64 kernel.
        return "aarch32" if can_use_aarch32() else "armh"
    if machine == "ppc64le":
        return "powerpc64le"
    return machine


def can_use_kvm(arch: Arch) -> bool:
    if not can_access_file(KVM_DEVICE):
        return False
    if arch.needs_compat_probe():
        return can_use_aarch32()
    return True


def parse_accel_mode(value: Optional[str]) -> AccelMode:
    if value is None:
        return AccelMode.TRY
    try:
        return ACCEL_MODES[value.strip().lower()]
    except KeyError:
        raise ConfigError(f"unknown --kvm mode '{value}'") from None


def resolve_accel(arch: Arch, mode: AccelMode) -> Tuple[List[str], bool]:
    """Return the accelerator arguments and whether KVM will be used."""
    if mode == AccelMode.DISABLED:
        return [], False
    if mode == AccelMode.FORCED_OFF:
        return ["-machine", "accel=tcg"], False
    if mode == AccelMode.FORCED_ON:
        return ["-machine", "accel=kvm"], True
    if mode == AccelMode.ANY:
        # Unprobed, so only CPU models that work under both accelerators.
        return ["-machine", "accel=kvm:tcg"], False

    kvm_ok = can_use_kvm(arch)
    if mode == AccelMode.CONDITIONAL:
        if not kvm_ok:
            raise GracefulSkip(
                f"hardware acceleration is not available for {arch.name}, skipping"
            )
        return ["-machine", "accel=kvm"], True

    if kvm_ok:
        return ["-machine", "accel=kvm:tcg"], True
    return ["-machine", "accel=tcg"], False


def _first_existing(paths) -> Optional[str]:
    for path in paths:
        if os.path.isfile(path):
            return path
    return None


def find_firmware_file(name: str, datadirs=()) -> Optional[str]:
    if "/" in name:
        return name if os.path.isfile(name) else None
    dirs = tuple(datadirs) + QEMU_DATA_DIRS
    return _first_existing(os.path.join(d, name) for d in dirs)


def resolve_firmware(
    arch: Arch, selector: Optional[str], tmpdir: str, datadirs=()
) -> Tuple[Arch, List[str]]:
    """Resolve a --bios/--uefi/--secureboot/--microvm selection.

    Returns the (possibly adjusted) profile and the firmware arguments.
    `datadirs` are searched before the distribution firmware directories.
    """
    if selector is None:
        default = _first_existing(arch.firmware)
        if default is None:
            return arch, []
        return arch, ["-bios", default]

    if selector == "uefi":
        path = _first_existing(arch.uefi)
        if path is None:
            raise ConfigError(f"UEFI firmware is not available for {arch.name}")
        return arch, ["-bios", path]

    if selector == "secureboot":
        code = _first_existing(arch.secureboot)
        template = _first_existing(arch.secureboot_vars)
        if code is None or template is None:
            raise ConfigError(
                f"Secure Boot firmware is not available for {arch.name}"
            )
        # pflash vars must be writable; never touch the template.
        varstore = os.path.join(tmpdir, os.path.basename(template))
        shutil.copyfile(template, varstore)
        arch = arch._replace(machine=("-machine", "q35,smm=on"))
        return arch, [
            "-global",
            "driver=cfi.pflash01,property=secure,value=on",
            "-drive",
            f"if=pflash,format=raw,unit=0,readonly=on,file={code}",
            "-drive",
            f"if=pflash,format=raw,unit=1,file={varstore}",
        ]

    if selector == "microvm":
        if arch.name != "x86_64":
            raise ConfigError(f"microvm is not supported on {arch.name}")
        qboot = find_firmware_file("qboot.rom", datadirs)
        if qboot is None:
            raise ConfigError("microvm firmware qboot.rom is not available")
        arch = arch._replace(
            machine=("-machine", "microvm,rtc=on"), bus=VirtioBus.DEVICE
        )
        return arch, ["-bios", qboot]

    path = find_firmware_file(selector, datadirs)
    if path is None:
        raise ConfigError(f"firmware '{selector}' not found")
    return arch, ["-bios", path]
