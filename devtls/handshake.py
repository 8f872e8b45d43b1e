#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
"""Handshake smoke test of a generated directory, the native backend of
`devtls test`.

A pyOpenSSL server runs in a thread and demands a client certificate. The
client logs its side of the handshake in the format openssl s_client uses, so
both backends are judged by the same marker line."""

import logging
import socket
import threading

from OpenSSL import SSL

from devtls import artifacts as _artifacts

LOG = logging.getLogger(__name__)

VERIFY_OK_MARKER = "Verify return code: 0 (ok)"

LISTEN_HOST = "127.0.0.1"
SERVER_NAME = b"localhost"
READY_TIMEOUT = 10.0
ACCEPT_POLL = 0.1

# Subset of X509_V_ERR_* reason strings from x509_vfy.h
VERIFY_ERRORS = {
    0: "ok",
    2: "unable to get issuer certificate",
    7: "certificate signature failure",
    9: "certificate is not yet valid",
    10: "certificate has expired",
    18: "self-signed certificate",
    19: "self-signed certificate in certificate chain",
    20: "unable to get local issuer certificate",
    21: "unable to verify the first certificate",
    50: "application verification failure",
}
X509_V_ERR_APPLICATION_VERIFICATION = 50

# Lines a TLS server writes when it turns a client certificate down.
REJECTION_MARKERS = ("verify error:", "peer did not return a certificate")


def _log_contains(path, markers):
    try:
        with open(path, "rt", errors="replace") as f:
            return any(marker in line for line in f for marker in markers)
    except FileNotFoundError:
        return False


def log_has_marker(path):
    """True if the client log at `path` reports a successful verification"""
    return _log_contains(path, (VERIFY_OK_MARKER,))


def log_shows_rejection(path):
    """True if the server log at `path` reports a failed client verification"""
    return _log_contains(path, REJECTION_MARKERS)


def format_name(name):
    """A cryptography x509.Name in the 'CN = value' style openssl prints"""
    return ", ".join(
        "{} = {}".format(attribute.rfc4514_attribute_name, attribute.value)
        for attribute in name
    )


def format_subject(x509):
    return format_name(x509.to_cryptography().subject)


class VerifyLog(object):
    """Verify callback writing s_client style 'depth=' lines to a stream,
    remembering the first verification error"""

    def __init__(self, stream):
        self.stream = stream
        self.error = 0

    def __call__(self, connection, x509, errnum, depth, ok):
        self.stream.write("depth={} {}\n".format(depth, format_subject(x509)))
        if not ok:
            self.stream.write(
                "verify error:num={}:{}\n".format(errnum, reason(errnum))
            )
            if not self.error:
                self.error = errnum
        self.stream.write("verify return:{}\n".format(int(bool(ok))))
        return bool(ok)


def reason(errnum):
    return VERIFY_ERRORS.get(errnum, "certificate verify error")


def server_context(artifacts, callback):
    context = SSL.Context(SSL.TLS_METHOD)
    context.use_certificate_file(artifacts.path(_artifacts.SERVER_CERT))
    context.use_privatekey_file(artifacts.path(_artifacts.SERVER_KEY))
    context.check_privatekey()
    context.load_verify_locations(artifacts.path(_artifacts.CA_CERT))
    context.set_verify(SSL.VERIFY_PEER | SSL.VERIFY_FAIL_IF_NO_PEER_CERT, callback)
    return context


def client_context(artifacts, callback):
    context = SSL.Context(SSL.TLS_METHOD)
    context.use_certificate_file(artifacts.path(_artifacts.CLIENT_CERT))
    context.use_privatekey_file(artifacts.path(_artifacts.CLIENT_KEY))
    context.check_privatekey()
    context.load_verify_locations(artifacts.path(_artifacts.CA_CERT))
    context.set_verify(SSL.VERIFY_PEER, callback)
    return context


def close_notify(connection):
    """Send close_notify and read until the peer answers with its own.
    Reading also consumes session tickets, so the socket closes without a
    reset."""
    connection.shutdown()
    try:
        while connection.recv(1024):
            pass
    except SSL.ZeroReturnError:
        pass


class HandshakeServer(threading.Thread):
    """TLS server thread, serving connections one at a time until stopped.

    The listening socket is bound in the constructor, so a busy port or
    unreadable key material fails in the caller's thread. `ready` is set
    once the accept loop runs. `verified` turns True once a client
    completed the handshake with a certificate the CA signed; `verify_log`
    keeps the first verification error."""

    def __init__(self, artifacts, port, host=LISTEN_HOST):
        super().__init__(name="devtls-server", daemon=True)
        self.ready = threading.Event()
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._conn = None
        self.verified = False

        self.log = open(artifacts.path(_artifacts.SERVER_LOG), "wt")
        self.verify_log = VerifyLog(self.log)
        try:
            self.context = server_context(artifacts, self.verify_log)
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                self.sock.bind((host, port))
                self.sock.listen(1)
                self.sock.settimeout(ACCEPT_POLL)
            except OSError:
                self.sock.close()
                raise
        except Exception:
            self.log.close()
            raise
        self.host = host
        self.port = self.sock.getsockname()[1]

    def write(self, line):
        self.log.write(line + "\n")
        self.log.flush()

    def run(self):
        self.write("ACCEPT {}:{}".format(self.host, self.port))
        self.ready.set()
        try:
            while not self._stopping.is_set():
                try:
                    conn, peer = self.sock.accept()
                except socket.timeout:
                    continue
                self.serve(conn, peer)
        finally:
            self.sock.close()
            self.log.close()

    def serve(self, conn, peer):
        with self._lock:
            if self._stopping.is_set():
                conn.close()
                return
            self._conn = conn
        conn.setblocking(True)
        connection = SSL.Connection(self.context, conn)
        connection.set_accept_state()
        try:
            connection.do_handshake()
            peer_cert = connection.get_peer_certificate(as_cryptography=True)
            if peer_cert is not None:
                self.verified = True
                self.write(
                    "Client certificate subject={}".format(
                        format_name(peer_cert.subject)
                    )
                )
            while True:
                data = connection.recv(1024)
                self.write(data.decode("utf8", errors="replace").rstrip("\n"))
        except SSL.ZeroReturnError:
            self.write("DONE")
            try:
                connection.shutdown()
            except (SSL.Error, OSError) as error:
                self.write("ERROR {} closing {}".format(error, peer))
        except (SSL.Error, OSError) as error:
            self.write("ERROR {} from {}".format(error, peer))
        finally:
            with self._lock:
                self._conn = None
            conn.close()

    def stop(self):
        """Ask the thread to finish, unblocking a connection still open"""
        with self._lock:
            self._stopping.set()
            if self._conn is not None:
                try:
                    self._conn.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass


def client_handshake(artifacts, host, port, log):
    """Connect, handshake, send a newline, close. Writes the exchange to `log`.

    Returns the client's verify result for the server chain (0 for ok), or
    None when the handshake failed before any verification."""
    verify_log = VerifyLog(log)
    context = client_context(artifacts, verify_log)

    sock = socket.create_connection((host, port), timeout=READY_TIMEOUT)
    sock.setblocking(True)
    log.write("CONNECTED({:08X})\n".format(sock.fileno()))
    connection = SSL.Connection(context, sock)
    connection.set_tlsext_host_name(SERVER_NAME)
    connection.set_connect_state()
    try:
        try:
            connection.do_handshake()
        except SSL.Error as error:
            log.write("error: {}\n".format(error))
            if not verify_log.error:
                return None
        else:
            log.write("---\n")
            log.write("Protocol: {}\n".format(connection.get_protocol_version_name()))
            log.write("Cipher: {}\n".format(connection.get_cipher_name()))
            try:
                connection.sendall(b"\n")
                close_notify(connection)
            except SSL.Error as error:
                # TLS 1.3 servers reject client certs after our handshake is done
                log.write("closing: {}\n".format(error))
    finally:
        sock.close()
    return verify_log.error


def handshake(artifacts, port, host=LISTEN_HOST):
    """Run the server thread and a client handshake against it.

    The client log ends with the verify return code once both sides are
    known: a client certificate the server turned down replaces a good
    result with the server's error. Returns True if the client log carries
    the verification marker."""
    server = HandshakeServer(artifacts, port, host)
    server.start()
    try:
        if not server.ready.wait(READY_TIMEOUT):
            LOG.error("Handshake server did not become ready within %ss", READY_TIMEOUT)
            return False
        with open(artifacts.path(_artifacts.CLIENT_LOG), "wt") as log:
            try:
                code = client_handshake(artifacts, host, server.port, log)
            except (SSL.Error, OSError) as error:
                log.write("error: {}\n".format(error))
                LOG.error("Client handshake failed: %s", error)
                code = None
            server.stop()
            server.join(READY_TIMEOUT)
            # Under TLS 1.2 the rejection ends the client handshake, under 1.3
            # it arrives after it. Either way the server knows.
            if not server.verified and (
                code == 0 or (code is None and server.verify_log.error)
            ):
                code = server.verify_log.error or X509_V_ERR_APPLICATION_VERIFICATION
                log.write("error: server rejected the client certificate\n")
                LOG.error("Server rejected the client certificate: %s", reason(code))
            if code is not None:
                log.write("Verify return code: {} ({})\n".format(code, reason(code)))
    finally:
        server.stop()
        server.join(READY_TIMEOUT)
    return log_has_marker(artifacts.path(_artifacts.CLIENT_LOG))
