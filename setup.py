# Copyright (C) 2007 Giampaolo Rodola' <g.rodola@gmail.com>.
# Use of this source code is governed by MIT license that can be
# found in the LICENSE file.

"""ftpkit installer.

$ python -m pip install .[test]
"""

import os
import re
import sys

HERE = os.path.abspath(os.path.dirname(__file__))

# asyncore and asynchat left the standard library in 3.12
INSTALL_DEPS = [
    "pyasyncore;python_version>='3.12'",
    "pyasynchat;python_version>='3.12'",
]

# `pip install .[test]`
TEST_DEPS = [
    "psutil",
    "pytest",
    "pytest-instafail",
    "pytest-xdist",
]

# `pip install .[dev]`
DEV_DEPS = [
    *TEST_DEPS,
    "black",
    "coverage",
    "pylint",
    "pytest-cov",
    "ruff",
    "twine",
]


def read(*parts):
    with open(os.path.join(HERE, *parts)) as f:
        return f.read()


def get_version():
    m = re.search(
        r'^__ver__ = "(\d+\.\d+\.\d+)"$',
        read("ftpkit", "__init__.py"),
        re.MULTILINE,
    )
    if m is None:
        raise ValueError("couldn't find version string")
    return m.group(1)


def main():
    from setuptools import setup  # noqa: PLC0415

    setup(
        name="ftpkit",
        version=get_version(),
        description=(
            "Asynchronous FTP client and server engine with an in-memory "
            "filesystem"
        ),
        long_description=read("README.rst"),
        long_description_content_type="text/x-rst",
        license="MIT",
        author="Giampaolo Rodola'",
        author_email="g.rodola@gmail.com",
        packages=[
            "ftpkit",
            "ftpkit.client",
            "ftpkit.handlers",
            "ftpkit.test",
        ],
        keywords=[
            "ftp",
            "ftpd",
            "client",
            "server",
            "asynchronous",
            "in-memory",
            "rfc959",
        ],
        install_requires=INSTALL_DEPS,
        extras_require={"test": TEST_DEPS, "dev": DEV_DEPS},
        entry_points={"console_scripts": ["ftpkit = ftpkit.__main__:main"]},
        python_requires=">=3.8",
        zip_safe=False,
        classifiers=[
            "Development Status :: 3 - Alpha",
            "Environment :: Console",
            "Intended Audience :: Developers",
            "License :: OSI Approved :: MIT License",
            "Operating System :: OS Independent",
            "Programming Language :: Python :: 3",
            "Topic :: Internet :: File Transfer Protocol (FTP)",
            "Topic :: Software Development :: Libraries :: Python Modules",
        ],
    )


if sys.version_info < (3, 8):  # noqa: UP036
    sys.exit("ftpkit requires Python 3.8 or later")

if __name__ == "__main__":
    main()
