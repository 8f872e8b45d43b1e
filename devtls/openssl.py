#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
"""The openssl backend: drives the `openssl` command line tool.

Every step is a separate openssl invocation; a failing invocation raises
subprocess.CalledProcessError and nothing after it runs."""

import logging
import shutil
import socket
import subprocess
import time

from devtls import artifacts as _artifacts
from devtls.handshake import log_has_marker, log_shows_rejection

LOG = logging.getLogger(__name__)

KEY_BITS = "2048"
DIGEST = "-sha256"
CA_DAYS = "3650"

SAN_CNF = b"""[ req ]
distinguished_name = req_distinguished_name
req_extensions = v3_req
[ req_distinguished_name ]
[ v3_req ]
subjectAltName = @alt_names
[ alt_names ]
DNS.1 = localhost
IP.1 = 127.0.0.1
"""

CONNECT_HOST = "localhost"
READY_TIMEOUT = 10.0
CLIENT_TIMEOUT = 30.0
POLL_INTERVAL = 0.05
SETTLE_TIMEOUT = 2.0


class OpenSSLNotFound(Exception):
    pass


def find_openssl():
    path = shutil.which("openssl")
    if path is None:
        raise OpenSSLNotFound("Cannot find an openssl executable!")
    return path


def call(*args):
    """Run one openssl command, raising CalledProcessError on failure"""
    LOG.debug("Running: openssl %s", " ".join(args))
    subprocess.check_call((find_openssl(),) + args)


def generate(artifacts, settings):
    """Create CA, server and client certs the way the shell script always did"""
    path = artifacts.path
    days = str(settings.days)

    # 1. Certificate Authority
    call("genrsa", "-out", path(_artifacts.CA_KEY), KEY_BITS)
    call(
        "req", "-x509", "-new", "-nodes",
        "-key", path(_artifacts.CA_KEY),
        DIGEST,
        "-days", CA_DAYS,
        "-out", path(_artifacts.CA_CERT),
        "-subj", "/CN={}".format(settings.ca_cn),
    )

    # 2. Subject Alternative Names for the server only
    artifacts.write(_artifacts.SAN_CONFIG, SAN_CNF)

    # 3. Server
    call("genrsa", "-out", path(_artifacts.SERVER_KEY), KEY_BITS)
    call(
        "req", "-new",
        "-key", path(_artifacts.SERVER_KEY),
        "-out", path(_artifacts.SERVER_CSR),
        "-subj", "/CN={}".format(settings.server_cn),
        "-config", path(_artifacts.SAN_CONFIG),
    )
    call(
        "x509", "-req",
        "-in", path(_artifacts.SERVER_CSR),
        "-CA", path(_artifacts.CA_CERT),
        "-CAkey", path(_artifacts.CA_KEY),
        "-CAcreateserial",
        "-out", path(_artifacts.SERVER_CERT),
        "-days", days,
        DIGEST,
        "-extfile", path(_artifacts.SAN_CONFIG),
        "-extensions", "v3_req",
    )

    # 4. Client, no SAN
    call("genrsa", "-out", path(_artifacts.CLIENT_KEY), KEY_BITS)
    call(
        "req", "-new",
        "-key", path(_artifacts.CLIENT_KEY),
        "-out", path(_artifacts.CLIENT_CSR),
        "-subj", "/CN={}".format(settings.client_cn),
    )
    call(
        "x509", "-req",
        "-in", path(_artifacts.CLIENT_CSR),
        "-CA", path(_artifacts.CA_CERT),
        "-CAkey", path(_artifacts.CA_KEY),
        "-CAcreateserial",
        "-out", path(_artifacts.CLIENT_CERT),
        "-days", days,
        DIGEST,
    )

    # 5. Cleanup
    artifacts.remove_transient()


def server_command(artifacts, port):
    path = artifacts.path
    return [
        find_openssl(), "s_server",
        "-accept", str(port),
        "-cert", path(_artifacts.SERVER_CERT),
        "-key", path(_artifacts.SERVER_KEY),
        "-CAfile", path(_artifacts.CA_CERT),
        "-Verify", "1",
        # the readiness check and the client
        "-naccept", "2",
        "-quiet",
    ]


def client_command(artifacts, host, port):
    path = artifacts.path
    return [
        find_openssl(), "s_client",
        "-connect", "{}:{}".format(host, port),
        "-cert", path(_artifacts.CLIENT_CERT),
        "-key", path(_artifacts.CLIENT_KEY),
        "-CAfile", path(_artifacts.CA_CERT),
    ]


def wait_for_port(host, port, process, timeout=READY_TIMEOUT):
    """Poll until something accepts connections on host:port.
    Gives up when `process` exits or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if process.poll() is not None:
            LOG.error("openssl s_server exited with %s", process.returncode)
            return False
        try:
            with socket.create_connection((host, port), timeout=POLL_INTERVAL):
                return True
        except OSError:
            time.sleep(POLL_INTERVAL)
    LOG.error("openssl s_server did not listen on %s:%s within %ss", host, port, timeout)
    return False


def stop(process):
    """Kill and reap a background process, whether or not it still runs"""
    try:
        process.kill()
    except ProcessLookupError:
        pass
    try:
        process.wait(timeout=READY_TIMEOUT)
    except subprocess.TimeoutExpired:
        LOG.error("openssl s_server (pid %s) did not exit", process.pid)


def settle(process, timeout=SETTLE_TIMEOUT):
    """Give s_server a moment to finish with the client and exit by itself"""
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        pass


def handshake(artifacts, port, host=CONNECT_HOST):
    """Run s_server in the background and an s_client handshake against it.

    Under TLS 1.3 s_client reports success before the server has looked at
    the client certificate, so a rejection in the server log fails the test
    too. Returns True if the client log carries the verification marker and
    the server accepted the client."""
    client_log_path = artifacts.path(_artifacts.CLIENT_LOG)
    server_log_path = artifacts.path(_artifacts.SERVER_LOG)
    server_log = open(server_log_path, "wb")
    try:
        server = subprocess.Popen(
            server_command(artifacts, port),
            stdout=server_log,
            stderr=subprocess.STDOUT,
        )
        try:
            if not wait_for_port(host, port, server):
                return False
            with open(client_log_path, "wb") as client_log:
                try:
                    subprocess.run(
                        client_command(artifacts, host, port),
                        input=b"\n",
                        stdout=client_log,
                        stderr=subprocess.STDOUT,
                        timeout=CLIENT_TIMEOUT,
                    )
                except subprocess.TimeoutExpired:
                    LOG.error("openssl s_client did not finish within %ss", CLIENT_TIMEOUT)
                    return False
            settle(server)
        finally:
            stop(server)
    finally:
        server_log.close()

    if log_shows_rejection(server_log_path):
        with open(client_log_path, "ab") as client_log:
            client_log.write(b"error: server rejected the client certificate\n")
        LOG.error("openssl s_server rejected the client certificate")
        return False
    return log_has_marker(client_log_path)
