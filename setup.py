#!/usr/bin/env python3

import os

from setuptools import setup

from vmrun.version import get_version_string

os.environ["__VM_RUN_LOCAL"] = "1"
VERSION = get_version_string()


packages = [
    "vmrun",
    "vmrun.commands",
]

setup(
    name="vm-run",
    version=VERSION,
    description="Run a command inside a throwaway kernel on the host filesystem",
    license="GPLv2",
    long_description=open(
        os.path.join(os.path.dirname(__file__), "README.md"), encoding="utf-8"
    ).read(),
    long_description_content_type="text/markdown",
    python_requires=">=3.9",
    install_requires=[
        "argcomplete",
        "setuptools",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "vm-run = vmrun.commands.run:main",
        ]
    },
    packages=packages,
    include_package_data=True,
    classifiers=[
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: GNU General Public License v2 (GPLv2)",
        "Operating System :: POSIX :: Linux",
    ],
    zip_safe=False,
)
