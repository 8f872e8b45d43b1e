#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
"""File layout of a development TLS directory"""

import logging
import os

LOG = logging.getLogger(__name__)

CA_KEY = "dev-ca.key"
CA_CERT = "dev-ca.pem"
SERVER_KEY = "server.key"
SERVER_CERT = "server.crt"
CLIENT_KEY = "client.key"
CLIENT_CERT = "client.crt"

CA_SERIAL = "dev-ca.srl"
SAN_CONFIG = "san.cnf"
SERVER_CSR = "server.csr"
CLIENT_CSR = "client.csr"

SERVER_LOG = "server.log"
CLIENT_LOG = "client_test.log"

# What a successful gen leaves behind.
GENERATED = (CA_KEY, CA_CERT, SERVER_KEY, SERVER_CERT, CLIENT_KEY, CLIENT_CERT)
# Made and removed again during gen.
TRANSIENT = (SERVER_CSR, CLIENT_CSR, SAN_CONFIG, CA_SERIAL)
LOGS = (SERVER_LOG, CLIENT_LOG)

# Order matches what the shell tooling removed; nothing else is ever touched.
CLEANABLE = (
    CA_KEY,
    CA_CERT,
    SERVER_KEY,
    SERVER_CERT,
    CLIENT_KEY,
    CLIENT_CERT,
    CA_SERIAL,
    SERVER_LOG,
    CLIENT_LOG,
    SAN_CONFIG,
    SERVER_CSR,
    CLIENT_CSR,
)


class ArtifactDir(object):
    """A directory holding the CA, server and client key pairs"""

    def __init__(self, directory="."):
        self.directory = directory or "."

    def __str__(self):
        return self.directory

    def path(self, name):
        if self.directory == ".":
            return name
        return os.path.join(self.directory, name)

    def ensure(self):
        os.makedirs(self.directory, exist_ok=True)

    def exists(self, name):
        return os.path.exists(self.path(name))

    def present(self, names=CLEANABLE):
        """Names from `names` that currently exist"""
        return tuple(name for name in names if self.exists(name))

    def remove(self, names):
        """Best-effort removal, errors are only logged"""
        for name in names:
            path = self.path(name)
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as error:
                LOG.debug("Could not remove %s: %s", path, error)
            else:
                LOG.debug("Removed %s", path)

    def clean(self):
        self.remove(CLEANABLE)

    def remove_transient(self):
        self.remove(TRANSIENT)

    def read(self, name):
        with open(self.path(name), "rb") as f:
            return f.read()

    def write(self, name, data):
        with open(self.path(name), "wb") as f:
            f.write(data)
