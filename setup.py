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

with open(os.path.join(here, "tapproxy/version.py")) as f:
    match = re.search(r'VERSION = "(.+?)"', f.read())
    assert match
    VERSION = match.group(1)

setup(
    name="tapproxy",
    version=VERSION,
    description="An SSL/TLS-capable intercepting forward proxy for HTTP/1.1 and WebSockets with pluggable rules.",
    long_description=long_description,
    long_description_content_type=long_description_content_type,
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Operating System :: MacOS",
        "Operating System :: POSIX",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Security",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: Internet :: Proxy Servers",
        "Topic :: Software Development :: Testing",
        "Typing :: Typed",
    ],
    packages=find_packages(
        include=[
            "tapproxy",
            "tapproxy.*",
        ]
    ),
    include_package_data=True,
    package_data={
        "tapproxy": [
            "web/templates/*.html",
            "web/static/*",
        ],
    },
    entry_points={
        "console_scripts": [
            "tapproxy = tapproxy.tools.main:tapproxy",
            "tapproxy-ca = tapproxy.tools.main:tapproxy_ca",
        ],
    },
    python_requires=">=3.10",
    # https://packaging.python.org/en/latest/discussions/install-requires-vs-requirements/#install-requires
    # It is not considered best practice to use install_requires to pin dependencies to specific versions.
    install_requires=[
        "Brotli>=1.0",
        "certifi>=2019.9.11",  # no semver here - this should always be on the last release!
        "click>=7.0",
        "cryptography>=42.0",
        "h11>=0.14,<0.17",
        "kaitaistruct>=0.10,<0.11",
        "pyOpenSSL>=24.0",
        "ruamel.yaml>=0.17",
        "tornado>=6.2,<7",
        "wsproto>=1.2,<2",
    ],
    extras_require={
        "dev": [
            "pytest-asyncio>=0.21",
            "pytest-timeout>=1.3.3",
            "pytest>=7.0",
        ],
    },
)
