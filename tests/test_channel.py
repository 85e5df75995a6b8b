"""Tests for channel.py: command script generation and result recovery."""

import os
import shlex
import subprocess

import pytest

from vmrun import channel
from vmrun.channel import ChannelResult, CommandChannel, ResultState


def script_lines(command, cwd="/home/user", env=None, sbin=False, ret="/tmp/x.ret"):
    if env is None:
        env = {"HOME": "/home/user", "PATH": "/usr/bin:/bin"}
    return channel.generate_script(command, cwd, env, sbin, ret).splitlines()


class TestGenerateScript:
    def test_shape(self) -> None:
        lines = script_lines(["make", "check"])
        assert lines[0] == "#!/bin/sh"
        assert lines[-7:] == [
            "cd /home/user || { echo 1 > /tmp/x.ret; sync; exit 1; }",
            "make check",
            "rc=$?",
            "[ -t 0 ] && stty sane",
            "echo $rc > /tmp/x.ret",
            "sync",
            "exit $rc",
        ]

    def test_metacharacters_quoted(self) -> None:
        nasty = ["sh", "-c", "echo $HOME; rm -rf / && `id` | cat > f"]
        cwd = "/tmp/dir with 'quotes' and $x"
        lines = script_lines(nasty, cwd=cwd)
        cd_line = next(l for l in lines if l.startswith("cd "))
        assert cd_line.startswith(f"cd {shlex.quote(cwd)} || ")
        cmd_line = lines[lines.index(cd_line) + 1]
        assert shlex.split(cmd_line) == nasty

    def test_environment_filtered(self) -> None:
        env = {
            "HOME": "/root",
            "_": "/usr/bin/vm-run",
            "SHLVL": "2",
            "PWD": "/x",
            "OLDPWD": "/y",
            "LD_PRELOAD": "libfakeroot.so",
            "FAKEROOTKEY": "1234",
            "FAKEROOTDONTTRYCHOWN": "1",
            "FAKED_MODE": "unknown-is-root",
            "BASH_FUNC_foo%%": "() { :; }",
            "USER": "builder",
            "LOGNAME": "builder",
            "WEIRD": "it's",
        }
        lines = script_lines(["true"], env=env)
        exported = [l for l in lines if l.startswith("export ")]
        names = [l.split()[1].split("=", 1)[0] for l in exported]
        assert sorted(names) == ["HOME", "LOGNAME", "USER", "WEIRD"]
        assert "export USER=root" in lines
        assert "export LOGNAME=root" in lines
        assert "export WEIRD='it'\"'\"'s'" in lines

    def test_sbin(self) -> None:
        lines = script_lines(["true"], sbin=True)
        assert 'export PATH="/sbin:/usr/sbin:/usr/local/sbin:$PATH"' in lines
        assert not any("sbin" in l for l in script_lines(["true"]))

    def test_empty_command_is_shell_with_sbin(self) -> None:
        env = {"SHELL": "/bin/bash"}
        lines = script_lines([], env=env)
        assert "/bin/bash" in lines
        assert 'export PATH="/sbin:/usr/sbin:/usr/local/sbin:$PATH"' in lines

    def test_default_shell(self) -> None:
        assert channel.default_command({}) == ["/bin/sh"]

    @pytest.mark.parametrize("value", ["/dev/shm", "/dev/shm/build", "/run/user/1000"])
    def test_tmpdir_relocated(self, value) -> None:
        lines = script_lines(["true"], env={"TMPDIR": value, "TMP": "/var/tmp"})
        assert "export TMPDIR=/tmp" in lines
        assert "export TMP=/tmp" not in lines

    def test_tmpdir_kept(self) -> None:
        lines = script_lines(["true"], env={"TMPDIR": "/runner/tmp"})
        assert "export TMPDIR=/tmp" not in lines


class TestMakeChannel:
    def test_files(self, tmp_path) -> None:
        ch = channel.make_channel(["true"], "/", {}, directory=str(tmp_path))
        name = os.path.basename(ch.script_path)
        assert name.startswith("vm-run.") and name.endswith(".sh")
        assert ch.result_path == ch.script_path + ".ret"
        assert os.path.getsize(ch.result_path) == 0
        with open(ch.script_path, encoding="utf-8") as f:
            assert shlex.quote(ch.result_path) in f.read()

    def test_script_dir(self, tmp_path) -> None:
        assert channel.script_dir({"TMPDIR": str(tmp_path)}) == str(tmp_path)
        assert channel.script_dir({"TMPDIR": "/dev/shm"}) == "/tmp"
        assert channel.script_dir({}) == "/tmp"


class TestRunScript:
    """Run the generated script with the host shell, as the guest would."""

    def run(self, tmp_path, command, cwd):
        env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}
        ch = channel.make_channel(command, str(cwd), env, directory=str(tmp_path))
        proc = subprocess.run(
            ["/bin/sh", ch.script_path], stdin=subprocess.DEVNULL, check=False
        )
        return proc.returncode, channel.read_result(ch)

    def test_command_status_recorded(self, tmp_path) -> None:
        rc, result = self.run(tmp_path, ["sh", "-c", "exit 7"], tmp_path)
        assert rc == 7
        assert result == ChannelResult(ResultState.VALUE, 7)

    def test_failed_cd_recorded(self, tmp_path) -> None:
        rc, result = self.run(tmp_path, ["true"], tmp_path / "gone")
        assert rc == 1
        assert result == ChannelResult(ResultState.VALUE, 1)


class TestReadResult:
    @pytest.fixture
    def ch(self, tmp_path):
        return CommandChannel(str(tmp_path / "s.sh"), str(tmp_path / "s.sh.ret"))

    def test_absent(self, ch) -> None:
        assert channel.read_result(ch) == ChannelResult(ResultState.ABSENT)

    @pytest.mark.parametrize("content", ["", "\n", "garbage\n"])
    def test_empty(self, ch, content) -> None:
        with open(ch.result_path, "w", encoding="utf-8") as f:
            f.write(content)
        assert channel.read_result(ch).state == ResultState.EMPTY

    @pytest.mark.parametrize("content,value", [("0\n", 0), ("42\n", 42), ("300", 44)])
    def test_value(self, ch, content, value) -> None:
        with open(ch.result_path, "w", encoding="utf-8") as f:
            f.write(content)
        assert channel.read_result(ch) == ChannelResult(ResultState.VALUE, value)
        assert not os.path.exists(ch.result_path)
