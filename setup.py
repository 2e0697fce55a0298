import os
import re
from codecs import open

from setuptools import find_packages
from setuptools import setup

# Based on https://github.com/pypa/sampleproject/blob/main/setup.py
# and https://python-packaging-user-guide.readthedocs.org/

here = os.path.abspath(os.path.dirname(__file__))

with open(os.path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()
long_description_content_type = "text/markdown"

with open(os.path.join(here, "safestarttls/version.py")) as f:
    match = re.search(r'VERSION = "(.+?)"', f.read())
    assert match
    VERSION = match.group(1)

setup(
    name="safestarttls",
    version=VERSION,
    description="STARTTLS protocol scripts and an executor that upgrades plaintext connections to TLS without leaking buffered plaintext.",
    long_description=long_description,
    long_description_content_type=long_description_content_type,
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Development Status :: 3 - Alpha",
        "Operating System :: MacOS",
        "Operating System :: POSIX",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Security",
        "Topic :: Communications :: Email",
        "Topic :: Internet",
        "Typing :: Typed",
    ],
    packages=find_packages(
        include=[
            "safestarttls",
            "safestarttls.*",
        ]
    ),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "certifi>=2019.9.11",  # no semver here - this should always be on the last release!
        "cryptography>=41.0",
        "pyOpenSSL>=23.2",
        "ruamel.yaml>=0.16",
    ],
    extras_require={
        "dev": [
            "hypothesis>=5.8",
            "pytest-asyncio>=0.21",
            "pytest-timeout>=1.3.3",
            "pytest>=7.0",
        ],
    },
)
