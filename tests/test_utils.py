"""Tests for utils.py: the JSON configuration layer."""

import json

from vmrun import utils


def test_defaults_without_files(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(utils, "conf_paths", lambda: (tmp_path / "missing.conf",))
    assert utils.get_conf("default_opts") == {}
    assert utils.get_conf("min_memory") == 256


def test_first_existing_file_wins(monkeypatch, tmp_path) -> None:
    first = tmp_path / "first.conf"
    second = tmp_path / "second.conf"
    first.write_text(json.dumps({"default_opts": {"sbin": True}}))
    second.write_text(json.dumps({"default_opts": {"udevd": True}}))
    monkeypatch.setattr(utils, "conf_paths", lambda: (tmp_path / "none", first, second))
    assert utils.get_conf("default_opts") == {"sbin": True}


def test_missing_key_falls_back(monkeypatch, tmp_path) -> None:
    conf = tmp_path / "vm-run.conf"
    conf.write_text(json.dumps({"guest_init": "/opt/init"}))
    monkeypatch.setattr(utils, "conf_paths", lambda: (conf,))
    assert utils.get_conf("guest_init") == "/opt/init"
    assert utils.get_conf("min_memory") == 256
