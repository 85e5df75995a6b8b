"""Shared pytest fixtures for vm-run tests."""

import gzip
import os
from typing import Dict, NamedTuple

import pytest

from vmrun import architectures, utils


class CpioEntry(NamedTuple):
    mode: int
    uid: int
    gid: int
    data: bytes


def read_newc(path) -> Dict[str, CpioEntry]:
    """Parse a gzip-compressed newc archive into {name: entry}."""
    with gzip.open(path, "rb") as f:
        blob = f.read()

    entries = {}
    pos = 0
    while True:
        hdr = blob[pos : pos + 110]
        assert hdr[:6] == b"070701"
        fields = [int(hdr[6 + 8 * i : 14 + 8 * i], 16) for i in range(13)]
        mode, uid, gid = fields[1], fields[2], fields[3]
        filesize, namesize = fields[6], fields[11]
        pos += 110
        name = blob[pos : pos + namesize - 1].decode()
        pos += namesize
        pos += (-pos) % 4
        data = blob[pos : pos + filesize]
        pos += filesize
        pos += (-pos) % 4
        if name == "TRAILER!!!":
            return entries
        entries[name] = CpioEntry(mode, uid, gid, data)


@pytest.fixture
def x86_64():
    return architectures.get("x86_64")


@pytest.fixture
def no_user_config(monkeypatch):
    """Make the configuration layer ignore files on the test host."""
    monkeypatch.setattr(utils, "get_conf_obj", lambda: utils.CONF_DEFAULT)


def touch(path, content="", mtime=None):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)
