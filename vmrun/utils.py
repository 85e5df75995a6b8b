# -*- mode: python -*-
# Copyright 2023 Andrea Righi

"""vm-run: configuration path."""

import json
from pathlib import Path

CONF_PATH = Path(Path.home(), ".config", "vm-run")
CONF_FILE = Path(CONF_PATH, "vm-run.conf")

# NOTE: this must stay in sync with README.md
CONF_DEFAULT = {
    "default_opts": {},
    "guest_init": None,
    "min_memory": 256,
}


def conf_paths():
    return (
        CONF_FILE,
        Path(Path.home(), ".vm-run.conf"),
        Path("/etc", "vm-run.conf"),
    )


def get_conf_obj():
    """Return vm-run main configuration, returning the default if not found."""

    # First check if there is a config file in the user's home config
    # directory, then check for a single config file in ~/.vm-run.conf and
    # finally check for /etc/vm-run.conf. If none of them exist, return the
    # default configuration.
    for conf_path in conf_paths():
        if conf_path.exists():
            with open(conf_path, encoding="utf-8") as conf_fd:
                conf = json.loads(conf_fd.read())
                return conf
    return CONF_DEFAULT


def get_conf(key_path):
    """Return a configured value for a key_path, which might be nested

    >>> get_conf("default_opts")
    {}
    >>> get_conf("min_memory")
    256
    """
    keys = key_path.split(".")
    conf = get_conf_obj()
    try:
        for key in keys:
            conf = conf[key]
        return conf
    except (KeyError, TypeError):
        conf = CONF_DEFAULT
        for key in keys:
            conf = conf[key]
        return conf
