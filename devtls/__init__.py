#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
from .artifacts import ArtifactDir
from .config import (
    DEFAULT_BACKEND,
    DEFAULT_CA_CN,
    DEFAULT_CLIENT_CN,
    DEFAULT_DAYS,
    DEFAULT_SERVER_CN,
    Settings,
)


def build(
    output_dir,
    days=DEFAULT_DAYS,
    ca_cn=DEFAULT_CA_CN,
    server_cn=DEFAULT_SERVER_CN,
    client_cn=DEFAULT_CLIENT_CN,
    backend=DEFAULT_BACKEND,
):
    """Generate a development CA, server and client cert into output_dir and
    return the ArtifactDir. The counterpart of the flake's lib.devTlsCerts."""
    from . import certlib, openssl

    artifacts = ArtifactDir(output_dir)
    artifacts.ensure()
    settings = Settings(days=days, ca_cn=ca_cn, server_cn=server_cn, client_cn=client_cn)
    generators = {"native": certlib.generate, "openssl": openssl.generate}
    if backend not in generators:
        raise ValueError("Unknown backend {!r}".format(backend))
    generators[backend](artifacts, settings)
    return artifacts
