#!/usr/bin/env python
#
"""
Setup for this package
"""
import io
import os

import itertools

from setuptools import find_packages, setup

# Package meta-data.
NAME = "assistant_deploy"
DESCRIPTION = """
Deploy and operate the student assistant on Cloud Run or App Engine.
"""
LICENSE = "Proprietary"
URL = ""
EMAIL = ""
AUTHOR = ""
# https://devguide.python.org/versions/#branchstatus
REQUIRES_PYTHON = ">=3.10.0"
VERSION = "1.0.0"
CLASSIFIERS = [
    # Trove classifiers
    # Full list: https://pypi.python.org/pypi?%3Aaction=list_classifiers
    "License :: Other/Proprietary License",
    "Development Status :: 4 - Beta",
    "Programming Language :: Python",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Operating System :: OS Independent",
    "Environment :: Console",
]

HERE = os.path.abspath(os.path.dirname(__file__))

# What packages are required for this module to be executed?
INSTALL_REQUIRED = []
with io.open(os.path.join(HERE, "requirements.txt"), encoding="UTF-8") as f:
    for line in f.readlines():
        line = line.strip()
        if line and not line.startswith("#"):
            INSTALL_REQUIRED.append(line)

DEBUG_REQUIRED = [
    "ipython>=8.4.0",
]

CODE_QUALITY_REQUIRED = [
    "black>=22.6",
    "pylint>=2.14.5",
    "pytest>=7.1.2",
    "pytest-asyncio>=0.19.0",
    "pytest-cov>=3.0.0",
    "pytest-mock>=3.8.2",
]

EXTRA_REQUIRED = {
    "tools": DEBUG_REQUIRED,
    "tests": CODE_QUALITY_REQUIRED,
}
ALL_REQUIRED = list(itertools.chain(*EXTRA_REQUIRED.values(), INSTALL_REQUIRED))
EXTRA_REQUIRED["all"] = ALL_REQUIRED

# Long description
try:
    with io.open(os.path.join(HERE, "README.md"), encoding="UTF-8") as f:
        LONG_DESCRIPTION = "\n" + f.read()
except FileNotFoundError:
    LONG_DESCRIPTION = DESCRIPTION


# Where the magic happens:
setup(
    name=NAME,
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    author=AUTHOR,
    author_email=EMAIL,
    python_requires=REQUIRES_PYTHON,
    url=URL,
    install_requires=INSTALL_REQUIRED,
    extras_require=EXTRA_REQUIRED,
    include_package_data=True,
    license=LICENSE,
    packages=find_packages(exclude=("tests", "tests.*")),
    entry_points={
        "console_scripts": [
            "assistant-deploy=assistant_deploy.main:cli",
        ],
    },
    classifiers=CLASSIFIERS,
)
