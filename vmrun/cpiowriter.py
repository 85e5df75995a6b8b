# -*- mode: python -*-
# cpiowriter: A barebones newc cpio writer for the boot archive
# Copyright © 2014 Andy Lutomirski
# Licensed under the GPLv2, which is available in the virtme distribution
# as a file called LICENSE with SHA-256 hash:
# 8177f97513213526df2cf6184d8ff986c675afb514d4e68a404010521b880643

from typing import Iterable, List

import gzip
import os
import stat

NEWC_MAGIC = "070701"
TRAILER = b"TRAILER!!!"


class CpioWriter:
    TYPE_DIR = 0o0040000
    TYPE_REG = 0o0100000
    TYPE_SYMLINK = 0o0120000
    TYPE_MASK = 0o0170000

    def __init__(self, f):
        self.__f = f
        self.__totalsize = 0
        self.__next_ino = 1

    def __write(self, data):
        self.__f.write(data)
        self.__totalsize += len(data)

    def write_object(self, name, body, mode, mtime=0, ino=None, nlink=None):
        """Write one entry.  Owner and group are always root."""
        if b"\0" in name:
            raise ValueError("Filename cannot contain a NUL")

        if nlink is None:
            nlink = 2 if (mode & CpioWriter.TYPE_MASK) == CpioWriter.TYPE_DIR else 1
        if ino is None:
            ino = self.__next_ino
            self.__next_ino += 1

        namesize = len(name) + 1
        if isinstance(body, bytes):
            filesize = len(body)
        else:
            filesize = body.seek(0, 2)
            body.seek(0)

        fields = [
            ino,
            mode,
            0,  # uid
            0,  # gid
            nlink,
            int(mtime),
            filesize,
            0,  # devmajor
            0,  # devminor
            0,  # rdevmajor
            0,  # rdevminor
            namesize,
            0,  # check
        ]
        hdr = (NEWC_MAGIC + "".join(f"{f:08X}" for f in fields)).encode("ascii")

        self.__write(hdr)
        self.__write(name)
        self.__write(b"\0")
        self.__write(((2 - namesize) % 4) * b"\0")

        if isinstance(body, bytes):
            self.__write(body)
        else:
            while True:
                buf = body.read(65536)
                if buf == b"":
                    break
                self.__write(buf)

        self.__write(((-filesize) % 4) * b"\0")

    def write_trailer(self):
        self.write_object(name=TRAILER, body=b"", mode=0, ino=0, nlink=1)
        self.__write(((-self.__totalsize) % 512) * b"\0")

    def mkdir(self, name, mode, mtime=0):
        self.write_object(name, b"", CpioWriter.TYPE_DIR | mode, mtime=mtime)

    def symlink(self, src, dst, mtime=0):
        self.write_object(dst, src, CpioWriter.TYPE_SYMLINK | 0o777, mtime=mtime)

    def write_file(self, name, body, mode, mtime=0):
        self.write_object(name, body, CpioWriter.TYPE_REG | mode, mtime=mtime)

    def add_path(self, root, relpath):
        """Copy `root/relpath` into the archive as `relpath`."""
        path = os.path.join(root, relpath)
        st = os.lstat(path)
        name = os.fsencode(relpath)
        perm = stat.S_IMODE(st.st_mode)

        if stat.S_ISDIR(st.st_mode):
            self.mkdir(name, perm, mtime=st.st_mtime)
        elif stat.S_ISLNK(st.st_mode):
            self.symlink(os.fsencode(os.readlink(path)), name, mtime=st.st_mtime)
        elif stat.S_ISREG(st.st_mode):
            with open(path, "rb") as f:
                self.write_file(name, f, perm, mtime=st.st_mtime)
        else:
            raise ValueError(f"cannot archive {path}: unsupported file type")

    def write_tree(self, root, names: Iterable[str]):
        for relpath in names:
            self.add_path(root, relpath)
        self.write_trailer()


def list_tree(root) -> List[str]:
    """Every path below `root`, relative to it, parents before children."""
    names = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        rel = os.path.relpath(dirpath, root)
        if rel != ".":
            names.append(rel)
        # os.walk() doesn't descend into symlinked dirs, archive the links.
        links = [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]
        for entry in sorted(filenames + links):
            names.append(os.path.normpath(os.path.join(rel, entry)))
    return names


def write_gzip_archive(root, out_path) -> None:
    with gzip.open(out_path, "wb") as out:
        CpioWriter(out).write_tree(root, list_tree(root))
