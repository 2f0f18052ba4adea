#!/usr/bin/env python
import os

from setuptools import setup

here = os.path.abspath(os.path.dirname(__file__))


def read_requirements():
    import ssl

    requires = []

    # Workaround for python3.9 on macOS which is compiled with LibreSSL
    # See https://github.com/urllib3/urllib3/issues/3020
    if not ssl.OPENSSL_VERSION.startswith("OpenSSL "):
        requires.append("urllib3<2.0.0")

    with open(os.path.join(here, "requirements.txt")) as fp:
        requires.extend([row.strip() for row in fp if row.strip()])

    return requires


about = {}
with open(os.path.join(here, "multipart_uploader", "__init__.py"), "r") as f:
    exec(f.read(), about)


def readme():
    with open(os.path.join(here, "README.md")) as f:
        return f.read()


setup(
    name="multipart_uploader",
    version=about["VERSION"],
    description="Resumable multipart uploads to S3-compatible object stores",
    long_description=readme(),
    long_description_content_type="text/markdown",
    license="BSD",
    python_requires=">=3.9",
    packages=["multipart_uploader"],
    install_requires=read_requirements(),
    extras_require={"test": ["pytest"]},
)
