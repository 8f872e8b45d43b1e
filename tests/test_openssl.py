#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
import os
import shutil
import socket
import subprocess
import unittest
import unittest.mock

from devtls import artifacts, certlib, handshake, openssl
from devtls.config import Settings

from . import ArtifactTestCase

OPENSSL = shutil.which("openssl")


def subcommands(check_call):
    """The openssl subcommand of each recorded check_call"""
    return [call_args[0][0][1] for call_args in check_call.call_args_list]


class TestGenerateCommands(ArtifactTestCase):
    def setUp(self):
        super(TestGenerateCommands, self).setUp()
        patcher = unittest.mock.patch.object(
            openssl, "find_openssl", return_value="/usr/bin/openssl"
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_step_order(self):
        with unittest.mock.patch.object(openssl.subprocess, "check_call") as check_call:
            openssl.generate(self.artifacts, Settings())
        self.assertEqual(
            ["genrsa", "req", "genrsa", "req", "x509", "genrsa", "req", "x509"],
            subcommands(check_call),
        )

    def test_configuration_is_passed_through(self):
        settings = Settings(days="12", ca_cn="Test CA", server_cn="srv", client_cn="cli")
        with unittest.mock.patch.object(openssl.subprocess, "check_call") as check_call:
            openssl.generate(self.artifacts, settings)
        commands = [call_args[0][0] for call_args in check_call.call_args_list]

        ca_req = commands[1]
        self.assertIn("/CN=Test CA", ca_req)
        self.assertEqual("3650", ca_req[ca_req.index("-days") + 1])

        server_req, server_sign = commands[3], commands[4]
        self.assertIn("/CN=srv", server_req)
        self.assertIn(self.artifacts.path(artifacts.SAN_CONFIG), server_req)
        self.assertEqual("12", server_sign[server_sign.index("-days") + 1])
        self.assertIn("-extfile", server_sign)
        self.assertIn("-CAcreateserial", server_sign)

        client_req, client_sign = commands[6], commands[7]
        self.assertIn("/CN=cli", client_req)
        self.assertNotIn("-config", client_req)
        self.assertNotIn("-extfile", client_sign)
        self.assertEqual("12", client_sign[client_sign.index("-days") + 1])

    def test_transients_removed(self):
        def fake_openssl(args):
            # what openssl would leave behind
            if "-out" in args:
                self.artifacts.write(os.path.basename(args[args.index("-out") + 1]), b"x")
            if "-CAcreateserial" in args:
                self.artifacts.write(artifacts.CA_SERIAL, b"01")

        with unittest.mock.patch.object(
            openssl.subprocess, "check_call", side_effect=fake_openssl
        ):
            openssl.generate(self.artifacts, Settings())
        self.assertEqual(sorted(artifacts.GENERATED), sorted(os.listdir(self.tmpdir)))

    def test_fail_fast(self):
        failure = subprocess.CalledProcessError(3, ["openssl", "genrsa"])
        with unittest.mock.patch.object(
            openssl.subprocess, "check_call", side_effect=[None, None, failure]
        ) as check_call:
            with self.assertRaises(subprocess.CalledProcessError):
                openssl.generate(self.artifacts, Settings())
        self.assertEqual(3, check_call.call_count)
        # The SAN config was written before the failing step and stays.
        self.assertTrue(self.artifacts.exists(artifacts.SAN_CONFIG))


class TestFindOpenSSL(unittest.TestCase):
    def test_missing_binary(self):
        with unittest.mock.patch.object(openssl.shutil, "which", return_value=None):
            with self.assertRaises(openssl.OpenSSLNotFound):
                openssl.find_openssl()


class TestHandshakeProcesses(ArtifactTestCase):
    def setUp(self):
        super(TestHandshakeProcesses, self).setUp()
        patcher = unittest.mock.patch.object(
            openssl, "find_openssl", return_value="/usr/bin/openssl"
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_server_that_exits_is_a_failure(self):
        server = unittest.mock.Mock()
        server.poll.return_value = 1
        with unittest.mock.patch.object(openssl.subprocess, "Popen", return_value=server):
            with unittest.mock.patch.object(openssl.subprocess, "run") as run:
                self.assertFalse(openssl.handshake(self.artifacts, 8443))
        run.assert_not_called()
        server.kill.assert_called_once_with()
        server.wait.assert_called_once()

    def test_server_killed_after_client(self):
        server = unittest.mock.Mock()
        server.kill.side_effect = ProcessLookupError

        def client(args, **kwargs):
            kwargs["stdout"].write(b"Verify return code: 0 (ok)\n")

        with unittest.mock.patch.object(openssl.subprocess, "Popen", return_value=server):
            with unittest.mock.patch.object(openssl, "wait_for_port", return_value=True):
                with unittest.mock.patch.object(
                    openssl.subprocess, "run", side_effect=client
                ):
                    self.assertTrue(openssl.handshake(self.artifacts, 8443))
        server.kill.assert_called_once_with()
        self.assertEqual(2, server.wait.call_count)

    def test_server_rejection_fails(self):
        server = unittest.mock.Mock()
        server.wait.side_effect = [subprocess.TimeoutExpired("openssl", 2.0), 0]

        def start_server(args, **kwargs):
            kwargs["stdout"].write(
                b"depth=0 CN = client\n"
                b"verify error:num=20:unable to get local issuer certificate\n"
            )
            return server

        def client(args, **kwargs):
            kwargs["stdout"].write(b"Verify return code: 0 (ok)\n")

        with unittest.mock.patch.object(
            openssl.subprocess, "Popen", side_effect=start_server
        ):
            with unittest.mock.patch.object(openssl, "wait_for_port", return_value=True):
                with unittest.mock.patch.object(
                    openssl.subprocess, "run", side_effect=client
                ):
                    self.assertFalse(openssl.handshake(self.artifacts, 8443))
        server.kill.assert_called_once_with()
        log = self.artifacts.read(artifacts.CLIENT_LOG)
        self.assertIn(b"server rejected the client certificate", log)

    def test_server_command_stops_after_client(self):
        command = openssl.server_command(self.artifacts, 8443)
        self.assertEqual("2", command[command.index("-naccept") + 1])
        self.assertEqual("1", command[command.index("-Verify") + 1])

    def test_wait_for_port(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.addCleanup(listener.close)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        process = unittest.mock.Mock()
        process.poll.return_value = None
        self.assertTrue(
            openssl.wait_for_port("127.0.0.1", listener.getsockname()[1], process)
        )


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@unittest.skipUnless(OPENSSL, "needs the openssl binary")
class TestWithOpenSSL(ArtifactTestCase):
    def test_generate(self):
        openssl.generate(self.artifacts, Settings(days="20"))
        self.assertEqual(sorted(artifacts.GENERATED), sorted(os.listdir(self.tmpdir)))

        server = certlib.load_cert(self.artifacts.path(artifacts.SERVER_CERT))
        client = certlib.load_cert(self.artifacts.path(artifacts.CLIENT_CERT))
        self.assertEqual(("DNS:localhost", "IP:127.0.0.1"), certlib.san_entries(server))
        self.assertEqual((), certlib.san_entries(client))

        ca = self.artifacts.path(artifacts.CA_CERT)
        certlib.verify(self.artifacts.path(artifacts.SERVER_CERT), ca)
        certlib.verify(self.artifacts.path(artifacts.CLIENT_CERT), ca)

    def test_failing_step_raises(self):
        with self.assertRaises(subprocess.CalledProcessError):
            openssl.generate(self.artifacts, Settings(days="not a number"))
        self.assertFalse(self.artifacts.exists(artifacts.SERVER_CERT))

    def test_native_handshake_accepts_openssl_certs(self):
        openssl.generate(self.artifacts, Settings())
        self.assertTrue(handshake.handshake(self.artifacts, 0))

    def test_handshake(self):
        openssl.generate(self.artifacts, Settings())
        self.assertTrue(openssl.handshake(self.artifacts, free_port()))
        self.assertTrue(
            handshake.log_has_marker(self.artifacts.path(artifacts.CLIENT_LOG))
        )

    def test_foreign_client_rejected(self):
        openssl.generate(self.artifacts, Settings())
        other = self.make_dir()
        openssl.generate(other, Settings())
        for name in (artifacts.CLIENT_CERT, artifacts.CLIENT_KEY):
            self.artifacts.write(name, other.read(name))

        self.assertFalse(openssl.handshake(self.artifacts, free_port()))
        self.assertTrue(
            handshake.log_shows_rejection(self.artifacts.path(artifacts.SERVER_LOG))
        )
