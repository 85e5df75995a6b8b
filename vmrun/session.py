# -*- mode: python -*-
# session: Boot the guest, run the command, collect its status
# Copyright © 2014-2019 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

from typing import List, NamedTuple, Optional

import contextlib
import os
import shlex
import signal
import subprocess
import sys
import tempfile

from . import architectures
from . import kernels
from . import limits
from . import modindex
from . import virtmods
from .channel import CommandChannel, ResultState, make_channel, read_result, remove_result
from .mkinitramfs import BootPayload, build_payload, find_guest_init
from .qemu_helpers import Qemu
from .util import ConfigError, ResultMissingError, find_binary

# 128 + SIGILL .. 128 + 31: QEMU itself died from a signal.
CRASH_STATUS_MIN = 132
CRASH_STATUS_MAX = 159


class RunResult(NamedTuple):
    qemu_status: int
    command_status: Optional[int] = None
    crashed: bool = False

    @property
    def exit_code(self) -> int:
        if self.command_status is not None:
            return self.command_status
        return self.qemu_status


def quote_karg(arg: str) -> str:
    if '"' in arg:
        raise ConfigError(f"cannot quote '\"' in kernel args: {arg}")

    if " " in arg:
        return f'"{arg}"'
    return arg


def kernel_cmdline(arch, config, channel: CommandChannel, notty: bool) -> str:
    kargs = [f"console={arch.console}", "mitigations=off", "panic=-1"]
    if config.quiet:
        kargs.append("quiet")
    kargs.append(f"SCRIPT={channel.script_path}")
    if config.verbose:
        kargs.append("VERBOSE=1")
    if config.udevd:
        kargs.append("UDEVD=1")
    if config.overlay:
        kargs.append(f"OVERLAY={config.overlay}")
    if notty:
        kargs.append("NOTTY=1")
    kargs.extend(config.append)
    return " ".join(quote_karg(a) for a in kargs)


def drive_args(qemu, arch, config) -> List[str]:
    ret = []
    blk = arch.virtio_dev_type("blk")
    files = list(config.drives) + ["fat:rw:" + d for d in config.fats]
    for i, fn in enumerate(files):
        driveid = f"drive{i}"
        ret.extend(
            [
                "-drive",
                f"if=none,id={driveid},format=raw,file={qemu.quote_optarg(fn)}",
                "-device",
                f"{blk},drive={driveid}",
            ]
        )
    for opts in config.drive_opts:
        ret.extend(["-drive", opts])
    return ret


def build_qemu_args(
    qemu,
    arch,
    config,
    accel_args,
    kvm_ok,
    firmware_args,
    kernel_path,
    payload: BootPayload,
    channel: CommandChannel,
    notty=False,
) -> List[str]:
    qemuargs = [
        qemu.qemubin,
        "-nodefaults",
        "-no-user-config",
        "-display",
        "none",
        "-no-reboot",
    ]
    if config.sandbox:
        qemuargs.extend(["-sandbox", config.sandbox])

    qemuargs.extend(arch.qemuargs(kvm_ok))
    qemuargs.extend(firmware_args)
    qemuargs.extend(accel_args)

    qemuargs.extend(
        limits.qemu_limit_args(arch, config.mem, config.cpus, config.min_memory)
    )

    # Export the host root read/write.
    fsdev = "local,id=root,path=/,security_model=none"
    if qemu.has_multidevs:
        fsdev += ",multidevs=remap"
    qemuargs.extend(["-fsdev", fsdev])
    qemuargs.extend(
        [
            "-device",
            f"{arch.virtio_dev_type('9p')},fsdev=root,mount_tag=/dev/root",
        ]
    )

    qemuargs.extend(["-device", arch.virtio_dev_type("rng")])

    # Console and monitor share stdio.
    qemuargs.extend(["-chardev", "stdio,id=console,mux=on,signal=off"])
    qemuargs.extend(["-serial", "chardev:console"])
    qemuargs.extend(["-mon", "chardev=console"])

    qemuargs.extend(drive_args(qemu, arch, config))

    for opt, value in config.machine_opts:
        qemuargs.extend([opt, value])

    qemuargs.extend(["-kernel", kernel_path])
    qemuargs.extend(["-initrd", payload.archive_path])
    qemuargs.extend(["-append", kernel_cmdline(arch, config, channel, notty)])

    qemuargs.extend(config.qemu_opts)
    return qemuargs


def normalize_status(returncode: int) -> int:
    if returncode < 0:
        return 128 - returncode
    return returncode


def execute(args) -> int:
    with subprocess.Popen(args) as proc:
        # ^C belongs to the guest.
        old_handler = signal.signal(signal.SIGINT, signal.SIG_IGN)
        try:
            returncode = proc.wait()
        finally:
            signal.signal(signal.SIGINT, old_handler)
            # Interrupted by SIGTERM or SIGHUP: stop the guest before cleanup.
            if proc.poll() is None:
                proc.terminate()
                proc.wait()
    return normalize_status(returncode)


def report_crash(status: int) -> None:
    try:
        signame = signal.Signals(status - 128).name
    except ValueError:
        signame = f"signal {status - 128}"
    sys.stderr.write(f"vm-run: qemu crashed (status {status}, signal {signame})\n")
    if find_binary(["coredumpctl"]) is not None:
        sys.stderr.write("vm-run: see 'coredumpctl list' for a core dump\n")


def interpret(qemu_status: int, channel: CommandChannel) -> RunResult:
    if CRASH_STATUS_MIN <= qemu_status <= CRASH_STATUS_MAX:
        report_crash(qemu_status)
        return RunResult(qemu_status, crashed=True)

    if qemu_status != 0:
        return RunResult(qemu_status)

    result = read_result(channel)
    if result.state == ResultState.VALUE:
        return RunResult(qemu_status, command_status=result.value)

    raise ResultMissingError(
        "qemu exited but the guest never recorded a result "
        "(kernel crash, or quit from the monitor?)"
    )


def run_session(config, env=None) -> int:
    if env is None:
        env = os.environ

    arch = architectures.get(architectures.host_arch())

    if config.kernel == "":
        sys.stdout.write(kernels.format_listing(kernels.list_kernels(arch, env)))
        return 0

    # May raise GracefulSkip: nothing has been started yet.
    accel_args, kvm_ok = architectures.resolve_accel(arch, config.accel)

    cand = kernels.select_kernel(arch, config.kernel, env)
    if config.verbose:
        sys.stderr.write(f"vm-run: kernel {cand.path} ({cand.tier.name.lower()})\n")

    qemu = Qemu(None, arch.qemuname, allow_kvm_wrapper=kvm_ok)
    qemu.probe()

    with contextlib.ExitStack() as stack:
        workdir = stack.enter_context(tempfile.TemporaryDirectory(prefix="vm-run."))

        arch, firmware_args = architectures.resolve_firmware(
            arch, config.firmware, workdir, [qemu.datadir()]
        )

        kver = kernels.kernel_release(cand)
        if config.initrd is not None:
            payload = BootPayload(kver, frozenset(), config.initrd)
        else:
            moddir = modindex.module_dir(cand, kver)
            if cand.tier == kernels.Tier.BUILD_DIR:
                modindex.prepare_tree_mods(cand.tree, moddir)
            modindex.ensure_index(
                stack,
                moddir,
                kver,
                permanent=config.depmod,
                buildroot=env.get("RPM_BUILD_ROOT"),
                verbose=config.verbose,
            )
            guest_init = find_guest_init(config.init, config.guest_init)
            aliases = virtmods.transport_modules(
                arch.bus,
                overlay=bool(config.overlay),
                drives=bool(config.drives or config.drive_opts),
                fat=bool(config.fats),
            )
            payload = build_payload(
                kver, moddir, aliases, guest_init, workdir, verbose=config.verbose
            )

        channel = make_channel(config.command, os.getcwd(), env, config.sbin)
        stack.callback(remove_result, channel)

        args = build_qemu_args(
            qemu,
            arch,
            config,
            accel_args,
            kvm_ok,
            firmware_args,
            cand.path,
            payload,
            channel,
            notty=not sys.stdin.isatty(),
        )
        if config.verbose:
            sys.stderr.write("vm-run: %s\n" % shlex.join(args))

        return interpret(execute(args), channel).exit_code
