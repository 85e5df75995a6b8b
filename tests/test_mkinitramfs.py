"""Tests for mkinitramfs.py and cpiowriter.py: the boot archive."""

import gzip
import io
import lzma
import os
import stat

import pytest

from vmrun import cpiowriter, mkinitramfs
from vmrun.util import ConfigError

from tests.conftest import read_newc, touch


@pytest.fixture
def modules(tmp_path):
    d = tmp_path / "mods"
    d.mkdir()
    with open(d / "netfs.ko", "wb") as f:
        f.write(b"netfs")
    with gzip.open(d / "9pnet.ko.gz", "wb") as f:
        f.write(b"9pnet")
    with lzma.open(d / "9p.ko.xz", "wb") as f:
        f.write(b"9p")
    return [str(d / "netfs.ko"), str(d / "9pnet.ko.gz"), str(d / "9p.ko.xz")]


@pytest.fixture
def guest_init(tmp_path):
    path = touch(tmp_path / "bin" / "vm-init", "#!/bin/sh\n")
    os.chmod(path, 0o700)
    return path


class TestCpioWriter:
    def test_header_alignment(self) -> None:
        out = io.BytesIO()
        cw = cpiowriter.CpioWriter(out)
        cw.write_file(b"a", b"xyz", 0o644)
        cw.write_trailer()
        data = out.getvalue()
        assert data.startswith(b"070701")
        assert len(data) % 512 == 0

    def test_nul_in_name(self) -> None:
        cw = cpiowriter.CpioWriter(io.BytesIO())
        with pytest.raises(ValueError):
            cw.write_file(b"a\0b", b"", 0o644)

    def test_tree_owned_by_root(self, tmp_path) -> None:
        root = tmp_path / "root"
        touch(root / "lib" / "modules" / "x.ko", "x")
        (root / "lib64").symlink_to("lib")
        out = tmp_path / "out.cpio.gz"

        cpiowriter.write_gzip_archive(str(root), str(out))

        entries = read_newc(out)
        assert set(entries) == {"lib", "lib/modules", "lib/modules/x.ko", "lib64"}
        assert all(e.uid == 0 and e.gid == 0 for e in entries.values())
        assert stat.S_ISLNK(entries["lib64"].mode)
        assert entries["lib64"].data == b"lib"
        assert stat.S_ISDIR(entries["lib/modules"].mode)

    def test_parents_first(self, tmp_path) -> None:
        touch(tmp_path / "b" / "c" / "d")
        touch(tmp_path / "a")
        names = cpiowriter.list_tree(str(tmp_path))
        assert names.index("b") < names.index("b/c") < names.index("b/c/d")


class TestModules:
    def test_module_name(self) -> None:
        assert mkinitramfs.module_name("/x/9pnet_virtio.ko.zst") == "9pnet_virtio"
        assert mkinitramfs.module_name("/x/virtio-pci.ko") == "virtio_pci"
        assert mkinitramfs.module_name("9p") == "9p"

    def test_decompressed(self, tmp_path, modules) -> None:
        names = mkinitramfs.install_modules(str(tmp_path / "root"), modules)
        assert names == ["netfs.ko", "9pnet.ko", "9p.ko"]
        moddir = tmp_path / "root" / "lib" / "modules"
        assert (moddir / "9pnet.ko").read_bytes() == b"9pnet"
        assert (moddir / "9p.ko").read_bytes() == b"9p"
        assert (moddir / "modules.load").read_text() == "netfs.ko\n9pnet.ko\n9p.ko\n"


class TestBuildPayload:
    def test_archive(self, monkeypatch, tmp_path, modules, guest_init) -> None:
        monkeypatch.setattr(
            mkinitramfs.modfinder,
            "find_modules",
            lambda aliases, root, kver: (modules, ["virtio_pci"]),
        )
        workdir = tmp_path / "work"
        workdir.mkdir()

        payload = mkinitramfs.build_payload(
            "6.1.0",
            "/lib/modules/6.1.0",
            ["9p", "9pnet_virtio", "virtio_pci"],
            guest_init,
            str(workdir),
        )

        assert payload.kernel_version == "6.1.0"
        assert payload.module_set == frozenset(["netfs", "9pnet", "9p", "virtio_pci"])
        assert payload.archive_path.startswith(str(workdir))

        entries = read_newc(payload.archive_path)
        assert entries["init"].data == b"#!/bin/sh\n"
        assert stat.S_IMODE(entries["init"].mode) == 0o755
        assert entries["lib/modules/modules.load"].data == b"netfs.ko\n9pnet.ko\n9p.ko\n"
        assert entries["lib/modules/9p.ko"].data == b"9p"
        assert all(e.uid == 0 and e.gid == 0 for e in entries.values())


class TestGuestInit:
    def test_override_first(self, guest_init, tmp_path) -> None:
        other = touch(tmp_path / "other-init")
        assert mkinitramfs.find_guest_init(guest_init, other) == guest_init

    def test_configured(self, guest_init) -> None:
        assert mkinitramfs.find_guest_init(None, guest_init) == guest_init

    def test_search_dirs(self, monkeypatch, tmp_path) -> None:
        found = touch(tmp_path / "libexec" / "vm-init.static")
        monkeypatch.setattr(mkinitramfs, "GUEST_INIT_DIRS", [str(tmp_path / "libexec")])
        assert mkinitramfs.find_guest_init() == found

    def test_missing(self, monkeypatch, tmp_path) -> None:
        monkeypatch.setattr(mkinitramfs, "GUEST_INIT_DIRS", [str(tmp_path)])
        monkeypatch.setattr(mkinitramfs.util, "find_binary", lambda names: None)
        with pytest.raises(ConfigError):
            mkinitramfs.find_guest_init(str(tmp_path / "nope"))
