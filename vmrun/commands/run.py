# -*- mode: python -*-
# vm-run: Run a command inside a throwaway kernel on the host filesystem
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

import argparse
import os
import shlex
import signal
import sys
import termios
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

from argcomplete import autocomplete

from .. import architectures
from ..architectures import AccelMode
from ..channel import default_command
from ..limits import MIN_MEMORY_MB, parse_memory
from ..session import run_session
from ..util import ConfigError, GracefulSkip, VmRunError, is_real_root
from ..utils import get_conf
from ..version import VERSION

DEFAULT_SANDBOX = "on,spawn=deny"

# Passed through to QEMU as "-<name> OPTS".
QEMU_PASSTHROUGH = ("machine", "global", "object", "device", "blockdev", "netdev", "chardev")


class RunConfig(NamedTuple):
    command: Tuple[str, ...]
    silent: bool = False
    verbose: bool = False
    quiet: bool = True
    sbin: bool = False
    udevd: bool = False
    qemu_opts: Tuple[str, ...] = ()
    append: Tuple[str, ...] = ()
    drives: Tuple[str, ...] = ()
    drive_opts: Tuple[str, ...] = ()
    fats: Tuple[str, ...] = ()
    overlay: Optional[str] = None
    firmware: Optional[str] = None
    machine_opts: Tuple[Tuple[str, str], ...] = ()
    sandbox: str = DEFAULT_SANDBOX
    accel: AccelMode = AccelMode.TRY
    mem: Optional[str] = None
    cpus: Optional[int] = None
    kernel: Optional[str] = None
    depmod: bool = False
    initrd: Optional[str] = None
    init: Optional[str] = None
    guest_init: Optional[str] = None
    min_memory: int = MIN_MEMORY_MB


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"vm-run: {message}\n")


class _HelpAction(argparse.Action):
    """Like argparse's --help, but on stderr and failing."""

    def __init__(self, option_strings, dest=argparse.SUPPRESS, help=None):
        super().__init__(
            option_strings, dest, default=argparse.SUPPRESS, nargs=0, help=help
        )

    def __call__(self, parser, namespace, values, option_string=None):
        parser.print_help(sys.stderr)
        parser.exit(1)


class _QemuOptAction(argparse.Action):
    def __call__(self, parser, namespace, values, option_string=None):
        opts = list(getattr(namespace, self.dest) or [])
        opts.append(("-" + option_string.lstrip("-"), values))
        setattr(namespace, self.dest, opts)


def make_parser() -> argparse.ArgumentParser:
    parser = ArgumentParser(
        prog="vm-run",
        usage="vm-run [OPTIONS] [--] [COMMAND [ARGS...]]",
        description="Run a command under a freshly booted kernel, "
        + "with the host filesystem as root",
        add_help=False,
        allow_abbrev=False,
    )

    g: Any

    g = parser.add_argument_group(title="General")
    g.add_argument("-h", "--help", action=_HelpAction, help="Show this help and exit")
    g.add_argument("-V", "--version", action="version", version=f"vm-run {VERSION}")
    g.add_argument(
        "-s", "--silent", action="store_true", help="Do not echo the command"
    )
    g.add_argument(
        "--verbose",
        action="store_true",
        help="Show the qemu command line and let the guest init be verbose",
    )
    g.add_argument(
        "--no-quiet",
        dest="quiet",
        action="store_false",
        help="Do not pass 'quiet' to the kernel",
    )

    g = parser.add_argument_group(title="Guest environment")
    g.add_argument(
        "--sbin", action="store_true", help="Add the sbin directories to PATH"
    )
    g.add_argument("--udevd", action="store_true", help="Start udevd in the guest")
    g.add_argument(
        "--overlay",
        action="store",
        metavar="SPEC",
        help="Ask the guest init to put an overlay over SPEC",
    )
    g.add_argument(
        "--append",
        action="append",
        default=[],
        metavar="STR",
        help="Additional kernel command line arguments",
    )
    g.add_argument(
        "--init",
        action="store",
        metavar="PATH",
        help="Guest init program to put into the initramfs",
    )

    g = parser.add_argument_group(title="Kernel selection")
    g.add_argument(
        "--kernel",
        action="store",
        nargs="?",
        const=None,
        default=None,
        metavar="MATCH",
        help="Boot the kernel matching MATCH, or the given image. "
        + "An empty MATCH lists the available kernels",
    )
    g.add_argument(
        "--depmod",
        action="store_true",
        help="Regenerate stale module metadata for good, without rollback",
    )
    g.add_argument(
        "--initrd",
        action="store",
        metavar="PATH",
        help="Use a pre-built initramfs instead of generating one",
    )

    g = parser.add_argument_group(title="Acceleration and resources")
    g.add_argument(
        "--kvm",
        dest="accel",
        action="store",
        metavar="MODE",
        help="Hardware acceleration mode: try, cond, only, any, off, default",
    )
    g.add_argument(
        "--tcg",
        dest="accel",
        action="store_const",
        const="tcg",
        help="Use software emulation only (same as --kvm=off)",
    )
    g.add_argument(
        "--mem", action="store", metavar="SIZE", help="Guest memory (default MB)"
    )
    g.add_argument("--cpu", action="store", metavar="N", help="Number of guest CPUs")

    g = parser.add_argument_group(title="Firmware").add_mutually_exclusive_group()
    g.add_argument(
        "--bios",
        dest="firmware",
        action="store",
        metavar="NAME|PATH",
        help="Firmware image to boot with",
    )
    for name, text in (
        ("uefi", "Boot with UEFI firmware"),
        ("secureboot", "Boot with Secure Boot enabled UEFI firmware"),
        ("microvm", "Use the microvm machine type (x86_64 only)"),
    ):
        g.add_argument(
            f"--{name}", dest="firmware", action="store_const", const=name, help=text
        )

    g = parser.add_argument_group(title="QEMU")
    g.add_argument(
        "--qemu",
        dest="qemu_opts",
        action="append",
        default=[],
        metavar="ARGS",
        help="Additional arguments for qemu",
    )
    g.add_argument(
        "--sandbox",
        action="store",
        default=DEFAULT_SANDBOX,
        metavar="SPEC",
        help=f"qemu -sandbox argument (default: {DEFAULT_SANDBOX})",
    )
    g.add_argument(
        "--drive",
        dest="drives",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach a raw image as a virtio disk",
    )
    g.add_argument(
        "-drive",
        dest="drive_opts",
        action="append",
        default=[],
        metavar="OPTS",
        help="Pass -drive OPTS to qemu",
    )
    g.add_argument(
        "--fat",
        dest="fats",
        action="append",
        default=[],
        metavar="DIR",
        help="Attach DIR as a virtual FAT disk",
    )
    for name in QEMU_PASSTHROUGH:
        g.add_argument(
            f"--{name}",
            dest="machine_opts",
            action=_QemuOptAction,
            default=[],
            metavar="OPTS",
            help=f"Pass -{name} OPTS to qemu",
        )

    return parser


def split_argv(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Separate vm-run's own options from the command to run."""
    for i, arg in enumerate(argv):
        if arg == "--":
            return list(argv[:i]), list(argv[i + 1 :])
        if not arg.startswith("-"):
            return list(argv[:i]), list(argv[i:])
    return list(argv), []


def parse_cpus(value) -> Optional[int]:
    if value is None:
        return None
    try:
        cpus = int(value)
    except ValueError:
        raise ConfigError(f"invalid --cpu value '{value}'") from None
    if cpus < 1:
        raise ConfigError(f"invalid --cpu value '{value}'")
    return cpus


def split_tokens(strings) -> Tuple[str, ...]:
    return tuple(tok for s in strings for tok in shlex.split(s))


def build_config(args, command: Sequence[str], conf=None) -> RunConfig:
    if conf is None:
        conf = get_conf
    if args.initrd is not None and not os.path.isfile(args.initrd):
        raise ConfigError(f"initramfs '{args.initrd}' does not exist")

    return RunConfig(
        command=tuple(command),
        silent=args.silent,
        verbose=args.verbose,
        quiet=args.quiet,
        sbin=args.sbin,
        udevd=args.udevd,
        qemu_opts=split_tokens(args.qemu_opts),
        append=split_tokens(args.append),
        drives=tuple(args.drives),
        drive_opts=tuple(args.drive_opts),
        fats=tuple(args.fats),
        overlay=args.overlay,
        firmware=args.firmware,
        machine_opts=tuple(args.machine_opts),
        sandbox=args.sandbox,
        accel=architectures.parse_accel_mode(args.accel),
        mem=parse_memory(args.mem) if args.mem is not None else None,
        cpus=parse_cpus(args.cpu),
        kernel=args.kernel,
        depmod=args.depmod,
        initrd=args.initrd,
        init=args.init,
        guest_init=conf("guest_init"),
        min_memory=int(conf("min_memory")),
    )


def parse_args(argv: Sequence[str]) -> RunConfig:
    opts, command = split_argv(argv)
    parser = make_parser()
    parser.set_defaults(**get_conf("default_opts"))
    autocomplete(parser)
    args = parser.parse_args(opts)
    return build_config(args, command)


def do_it(argv: Optional[Sequence[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    config = parse_args(argv)

    command = list(config.command) or default_command(os.environ)
    if not config.silent and config.kernel != "":
        sys.stderr.write("vm-run: %s\n" % shlex.join(command))

    # Already root for real, there is nothing to gain from a VM.
    if is_real_root() and config.kernel != "":
        os.execvp(command[0], command)

    return run_session(config)


def save_terminal_settings():
    return termios.tcgetattr(sys.stdin) if sys.stdin.isatty() else None


def restore_terminal_settings(settings):
    if settings is not None:
        termios.tcsetattr(sys.stdin, termios.TCSAFLUSH, settings)


def signal_handler(_signum, _frame):
    sys.exit(1)


def main() -> int:
    # Catch signals that may interrupt the execution (SIGTERM, SIGHUP), so
    # cleanups run and the terminal settings are restored on exit.
    settings = save_terminal_settings()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGHUP, signal_handler)
    try:
        return do_it()
    except GracefulSkip as exc:
        sys.stderr.write(f"vm-run: warning: {exc}\n")
        return exc.exit_code
    except VmRunError as exc:
        sys.stderr.write(f"vm-run: {exc}\n")
        return exc.exit_code
    finally:
        restore_terminal_settings(settings)


if __name__ == "__main__":
    sys.exit(main())
