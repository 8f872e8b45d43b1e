#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
"""devtls.config is a helper library that standardizes and collects the logic
in one place used by the devtls CLI tool and the build helpers"""

import argparse
import logging
import os
from logging.config import dictConfig

LOG_LEVEL = {
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

DEFAULT_LOGGING_CONFIG = {
    "version": 1,
    "formatters": {
        "generic": {
            "format": "%(asctime)s %(levelname)-5.5s [%(name)s][%(threadName)s]"
            "%(message)s"
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "level": "NOTSET",
            "formatter": "generic",
        },
    },
    "loggers": {
        "": {  # root logger
            "handlers": ["console"],
            "level": "INFO",
        },
        "devtls": {
            "level": "DEBUG",
            "qualname": "devtls",
        },
    },
}

DEFAULT_DAYS = "365"
DEFAULT_CA_CN = "DevCA"
DEFAULT_SERVER_CN = "localhost"
DEFAULT_CLIENT_CN = "client"
DEFAULT_BACKEND = "native"
DEFAULT_PORT = 8443

BACKENDS = ("native", "openssl")

# The subject knobs keep the bare names the shell tooling always used.
SUBJECT_ENV = {
    "days": "DAYS",
    "ca_cn": "CA_CN",
    "server_cn": "SERVER_CN",
    "client_cn": "CLIENT_CN",
}


class Settings(object):
    """The four values a certificate run is parameterized with.
    Values are passed on as given, without validation."""

    def __init__(
        self,
        days=DEFAULT_DAYS,
        ca_cn=DEFAULT_CA_CN,
        server_cn=DEFAULT_SERVER_CN,
        client_cn=DEFAULT_CLIENT_CN,
    ):
        self.days = days
        self.ca_cn = ca_cn
        self.server_cn = server_cn
        self.client_cn = client_cn

    def as_env(self):
        """Settings as the environment variables understood by the tool"""
        return {env: str(getattr(self, name)) for name, env in SUBJECT_ENV.items()}

    def __eq__(self, other):
        if not isinstance(other, Settings):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self):
        return "Settings(days={!r}, ca_cn={!r}, server_cn={!r}, client_cn={!r})".format(
            self.days, self.ca_cn, self.server_cn, self.client_cn
        )


def add_verbosity_argument(parser):
    """Adds an argument for verbosity to a given parser, counting the amount of
    'v's and 'verbose' on the commandline"""
    parser.add_argument(
        "-v",
        "--verbose",
        help="Verbosity of root logger, increasing the more 'v's are added",
        action="count",
        default=0,
    )


def add_backend_argument(parser):
    """Adds an argument selecting how certificates are made and tested"""
    parser.add_argument(
        "--backend",
        help="native (python bindings) or openssl (the openssl binary)",
        choices=BACKENDS,
        type=str,
    )


def add_port_argument(parser):
    """Adds an argument for the port the handshake test listens on"""
    parser.add_argument(
        "--port",
        help="Port for the handshake test server",
        type=int,
    )


def add_subject_arguments(parser):
    """Adds the validity and common name arguments to a given parser"""
    parser.add_argument(
        "--days",
        help="Validity period of the server and client certs",
        type=str,
    )
    parser.add_argument(
        "--ca-cn",
        help="Certificate Authority Common Name",
        type=str,
    )
    parser.add_argument(
        "--server-cn",
        help="Server certificate Common Name",
        type=str,
    )
    parser.add_argument(
        "--client-cn",
        help="Client certificate Common Name",
        type=str,
    )


def _get_config_value(
    arguments: argparse.Namespace,
    variable,
    required=False,
    env_var=None,
    default=None,
    env=None,
):
    """Returns what value to use for a given config variable, prefer argument >
    env-variable, if a value cant be found and default is not None, default is
    returned"""
    if env is None:
        env = os.environ
    if env_var is None:
        env_var = "DEVTLS_" + variable.upper().replace("-", "_")
    result = env.get(env_var)

    arg_value = getattr(arguments, variable, result)
    result = arg_value if arg_value is not None else result

    if result is None:
        result = default

    if required and result is None:
        raise ValueError(
            f"No {variable} could be found as either an argument"
            f" or in the environment variable {env_var}",
            variable,
            env_var,
        )
    return result


def get_settings(arguments=None, env=None):
    """Returns the Settings to generate with, prefer argument > env-variable >
    default"""
    if arguments is None:
        arguments = argparse.Namespace()
    defaults = Settings()
    values = {
        name: _get_config_value(
            arguments,
            variable=name,
            env_var=env_var,
            default=getattr(defaults, name),
            env=env,
        )
        for name, env_var in SUBJECT_ENV.items()
    }
    return Settings(**values)


def get_backend(arguments=None, env=None):
    """Returns the name of the backend to use"""
    backend = _get_config_value(
        arguments or argparse.Namespace(),
        variable="backend",
        default=DEFAULT_BACKEND,
        env=env,
    )
    if backend not in BACKENDS:
        raise ValueError(
            f"Unknown backend {backend!r}, expected one of {', '.join(BACKENDS)}"
        )
    return backend


def get_port(arguments=None, env=None):
    """Returns the port the handshake test listens on"""
    port = _get_config_value(
        arguments or argparse.Namespace(),
        variable="port",
        default=DEFAULT_PORT,
        env=env,
    )
    return int(port)


def get_log_level(argument_level, logger=None, env=None):
    """Calculates the highest verbosity(here inverted) from the argument,
    environment and root, capping it to between logging.DEBUG(10)-logging.ERROR(40),
    returning the log level"""

    if env is None:
        env = os.environ
    env_level_name = env.get("DEVTLS_LOG_LEVEL", "ERROR").upper()
    env_level = LOG_LEVEL.get(env_level_name, logging.ERROR)

    if logger is None:
        logger = logging.getLogger()
    current_level = logger.level

    argument_verbosity = logging.ERROR - argument_level * 10  # level steps are 10
    verbosity = min(argument_verbosity, env_level, current_level)
    log_level = (
        verbosity if logging.DEBUG <= verbosity <= logging.ERROR else logging.ERROR
    )
    return log_level


def configure_log_level(arguments: argparse.Namespace, logger=None, env=None):
    """Sets the root loggers level to the highest verbosity from the argument
    and environment"""
    log_level = get_log_level(arguments.verbose, env=env)
    if logger is None:
        logger = logging.getLogger()
    logger.setLevel(log_level)


def setup_logging(config=None):
    """Configure logging from a dictConfig style mapping, defaults to
    DEFAULT_LOGGING_CONFIG"""
    dictConfig(config or DEFAULT_LOGGING_CONFIG)
