"""Tests for modfinder.py and virtmods.py: module closure resolution."""

import subprocess

import pytest

from vmrun import modfinder, virtmods
from vmrun.architectures import VirtioBus
from vmrun.util import ToolError

SHOW_DEPENDS = {
    "9p": b"insmod /lib/modules/6.1/kernel/net/9p/9pnet.ko.xz \n"
    b"insmod /lib/modules/6.1/kernel/fs/netfs/netfs.ko.xz \n"
    b"insmod /lib/modules/6.1/kernel/fs/9p/9p.ko.xz \n",
    "9pnet_virtio": b"insmod /lib/modules/6.1/kernel/net/9p/9pnet.ko.xz \n"
    b"insmod /lib/modules/6.1/kernel/net/9p/9pnet_virtio.ko.xz \n",
    "virtio_pci": b"builtin virtio_pci\n",
}


@pytest.fixture
def fake_modprobe(monkeypatch):
    calls = []

    def run(args, **kwargs):
        calls.append(args)
        alias = args[-1]
        if alias not in SHOW_DEPENDS:
            return subprocess.CompletedProcess(args, 1, b"", b"FATAL: Module not found")
        return subprocess.CompletedProcess(args, 0, SHOW_DEPENDS[alias], b"")

    monkeypatch.setattr(modfinder.util, "find_binary_or_raise", lambda names: "modprobe")
    monkeypatch.setattr(modfinder.subprocess, "run", run)
    return calls


class TestResolveDep:
    def test_command_line(self, fake_modprobe) -> None:
        modfinder.resolve_dep("9p", "/tmp/br", "6.1")
        assert fake_modprobe == [
            [
                "modprobe",
                "--show-depends",
                "-C",
                "/var/empty",
                "-d",
                "/tmp/br",
                "-S",
                "6.1",
                "--",
                "9p",
            ]
        ]

    def test_builtin(self, fake_modprobe) -> None:
        deps = modfinder.resolve_dep("virtio_pci", "/", "6.1")
        assert deps.files == []
        assert deps.builtins == ["virtio_pci"]

    def test_failure(self, fake_modprobe) -> None:
        with pytest.raises(ToolError) as exc:
            modfinder.resolve_dep("overlay", "/", "6.1")
        assert "--depmod" in str(exc.value)
        assert "Module not found" in str(exc.value)


class TestFindModules:
    def test_merged_in_load_order(self, fake_modprobe) -> None:
        files, builtins = modfinder.find_modules(
            ["9p", "9pnet_virtio", "virtio_pci"], "/", "6.1"
        )
        assert files == [
            "/lib/modules/6.1/kernel/net/9p/9pnet.ko.xz",
            "/lib/modules/6.1/kernel/fs/netfs/netfs.ko.xz",
            "/lib/modules/6.1/kernel/fs/9p/9p.ko.xz",
            "/lib/modules/6.1/kernel/net/9p/9pnet_virtio.ko.xz",
        ]
        assert builtins == ["virtio_pci"]

    def test_merge_keeps_first(self) -> None:
        assert modfinder.merge_mods([["a", "b"], ["b", "c"], ["a"]]) == ["a", "b", "c"]


class TestTransportModules:
    def test_pci(self) -> None:
        assert virtmods.transport_modules(VirtioBus.PCI) == [
            "9p",
            "9pnet_virtio",
            "virtio_pci",
        ]

    def test_mmio(self) -> None:
        aliases = virtmods.transport_modules(VirtioBus.DEVICE)
        assert "virtio_mmio" in aliases
        assert "virtio_pci" not in aliases

    def test_options(self) -> None:
        aliases = virtmods.transport_modules(
            VirtioBus.PCI, overlay=True, drives=True, fat=True
        )
        for alias in ("overlay", "virtio_blk", "vfat", "nls_cp437", "nls_iso8859_1"):
            assert alias in aliases
        assert aliases.count("virtio_blk") == 1

    def test_fat_needs_blk(self) -> None:
        assert "virtio_blk" in virtmods.transport_modules(VirtioBus.PCI, fat=True)
