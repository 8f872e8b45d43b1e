#!/bin/env python3
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
"""Generate, remove and test development TLS certificates."""

import argparse
import logging
import os
import subprocess
import sys

from OpenSSL import SSL

from devtls import certlib, config, handshake, openssl
from devtls.artifacts import ArtifactDir, CLIENT_LOG, SERVER_LOG

LOG = logging.getLogger(name="devtls.tool")

USAGE = """\
Usage: {prog} [gen|clean|test] [output_dir]
  gen [output_dir]   - Generate development TLS certificates and keys (to output_dir, default: current dir)
  clean [output_dir] - Remove generated certificates and keys (from output_dir, default: current dir)
  test [output_dir]  - Validate the generated certificates (in output_dir, default: current dir)

You can also override configuration with environment variables:
  DAYS       - Validity period (default: {days})
  CA_CN      - Certificate Authority Common Name (default: {ca_cn})
  SERVER_CN  - Server certificate Common Name (default: {server_cn})
  CLIENT_CN  - Client certificate Common Name (default: {client_cn})
  DEVTLS_BACKEND - native or openssl (default: {backend})
  DEVTLS_PORT    - Port used by test (default: {port})
"""


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that answers every mistake with the usage text on
    stdout and exit code 1"""

    def format_usage(self):
        return USAGE.format(
            prog=self.prog,
            days=config.DEFAULT_DAYS,
            ca_cn=config.DEFAULT_CA_CN,
            server_cn=config.DEFAULT_SERVER_CN,
            client_cn=config.DEFAULT_CLIENT_CN,
            backend=config.DEFAULT_BACKEND,
            port=config.DEFAULT_PORT,
        )

    def format_help(self):
        return self.format_usage()

    def error(self, message):
        LOG.debug("Bad command line: %s", message)
        self.print_usage(sys.stdout)
        sys.exit(1)


def cmdline(argv=None):
    """Parse commandline."""
    prog = os.path.basename(sys.argv[0])
    if prog in ("", "__main__.py"):
        prog = "devtls"
    # -h is a usage error like any other, exiting 1
    parser = UsageParser(prog=prog, add_help=False)

    config.add_verbosity_argument(parser)
    config.add_backend_argument(parser)
    config.add_port_argument(parser)
    config.add_subject_arguments(parser)

    parser.add_argument("command", choices=sorted(COMMANDS))
    parser.add_argument("output_dir", nargs="?", default=".")

    return parser.parse_args(argv)


def error_out(message, exc=None, code=1):
    """Log error message and exit with failure code."""
    LOG.error(message)
    if exc is not None:
        LOG.error(str(exc))
    sys.exit(code)


def generator_for(backend):
    if backend == "openssl":
        return openssl.generate
    return certlib.generate


def handshake_for(backend):
    if backend == "openssl":
        return openssl.handshake
    return handshake.handshake


def cmd_gen(artifacts, args, env=None):
    settings = config.get_settings(args, env)
    backend = config.get_backend(args, env)
    print(
        "Generating development CA, server, and client certificates in '{}'...".format(
            artifacts
        )
    )
    for name, value in settings.as_env().items():
        print("  {}={}".format(name, value))

    try:
        artifacts.ensure()
        generator_for(backend)(artifacts, settings)
    except subprocess.CalledProcessError as error:
        error_out("Generation failed", error, code=error.returncode or 1)
    except (openssl.OpenSSLNotFound, certlib.GenerationError, OSError) as error:
        error_out("Generation failed", error)

    print("All certificates and keys have been generated in '{}':".format(artifacts))
    print("  Root CA:      dev-ca.pem (cert), dev-ca.key (key)")
    print("  Server Cert:  server.crt (cert), server.key (key)")
    print("  Client Cert:  client.crt (cert), client.key (key)")
    return 0


def cmd_clean(artifacts, args, env=None):
    print("Cleaning generated certificates and keys in '{}'...".format(artifacts))
    artifacts.clean()
    print("Done.")
    return 0


def cmd_test(artifacts, args, env=None):
    backend = config.get_backend(args, env)
    port = config.get_port(args, env)
    print(
        "Testing certificates using {} on port {} in '{}'...".format(
            backend, port, artifacts
        )
    )
    try:
        verified = handshake_for(backend)(artifacts, port)
    except (openssl.OpenSSLNotFound, SSL.Error, OSError) as error:
        LOG.error("Could not run the handshake test: %s", error)
        verified = False

    if verified:
        print("SUCCESS: Handshake and certificate validation succeeded.")
        return 0
    print("ERROR: Handshake or certificate validation failed.")
    print(
        "See {} and {} for details.".format(
            artifacts.path(SERVER_LOG), artifacts.path(CLIENT_LOG)
        )
    )
    return 1


COMMANDS = {
    "gen": cmd_gen,
    "clean": cmd_clean,
    "test": cmd_test,
}


def main(argv=None, env=None):
    args = cmdline(argv)

    config.setup_logging()
    config.configure_log_level(args, env=env)

    try:
        config.get_backend(args, env)
        config.get_port(args, env)
    except ValueError as error:
        error_out(str(error))

    artifacts = ArtifactDir(args.output_dir)
    sys.exit(COMMANDS[args.command](artifacts, args, env))


if __name__ == "__main__":
    main()
