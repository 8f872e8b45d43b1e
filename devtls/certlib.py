#! /usr/bin/env python3
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
"""In-process certificate generation, the native backend of `devtls gen`"""

import datetime
import ipaddress
import logging

import OpenSSL.crypto as _crypto
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from devtls import artifacts as _artifacts

LOG = logging.getLogger(__name__)

KEY_BITS = 2048
PUBLIC_EXPONENT = 65537
# Bit strength => hash strength. Based on hash strenghts
HASH = {2048: hashes.SHA256, 4096: hashes.SHA512}

CA_DAYS = 3650

SERVER_SAN = ("localhost", "127.0.0.1")


class GenerationError(Exception):
    """A generation step could not be carried out"""


def CA_EXTENSIONS():
    return [
        (x509.BasicConstraints(ca=True, path_length=None), True),
        (
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            True,
        ),
    ]


def CLIENT_EXTENSIONS():
    return [
        (x509.BasicConstraints(ca=False, path_length=None), True),
        (x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), False),
    ]


def SERVER_EXTENSIONS(names=SERVER_SAN):
    return [
        (x509.BasicConstraints(ca=False, path_length=None), True),
        (x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), False),
        (subject_alt_name(names), False),
    ]


def subject_alt_name(names):
    """Build a SAN extension, IP addresses become IP entries, all else DNS"""
    general_names = []
    for name in names:
        try:
            general_names.append(x509.IPAddress(ipaddress.ip_address(name)))
        except ValueError:
            general_names.append(x509.DNSName(name))
    return x509.SubjectAlternativeName(general_names)


def validity_days(days):
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise GenerationError(f"Validity period must be a number of days, got {days!r}")
    if days < 1:
        raise GenerationError(f"Validity period must be at least one day, got {days}")
    return days


def create_key(bits=KEY_BITS):
    return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=bits)


def subject(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def sign(public_key, name, cacert, cakey, days, extensions):
    """Issue a certificate for `public_key` signed with `cakey`.
    A `cacert` of None makes the certificate self-signed."""
    now = datetime.datetime.now(datetime.timezone.utc)
    issuer = name if cacert is None else cacert.subject

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
    )
    for extension, critical in extensions:
        builder = builder.add_extension(extension, critical=critical)

    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
    )
    # The CA signs itself, so its own key identifies the authority.
    authority = public_key if cacert is None else cacert.public_key()
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(authority),
        critical=False,
    )
    return builder.sign(cakey, HASH[cakey.key_size]())


def create_ca(common_name, days=CA_DAYS):
    key = create_key()
    cert = sign(key.public_key(), subject(common_name), None, key, days, CA_EXTENSIONS())
    return key, cert


def create_leaf(common_name, cacert, cakey, days, extensions):
    key = create_key()
    cert = sign(key.public_key(), subject(common_name), cacert, cakey, days, extensions)
    return key, cert


def dump_key(key):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def dump_cert(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def write_pair(artifacts, key, keyname, cert, certname):
    artifacts.write(keyname, dump_key(key))
    LOG.debug("Wrote key %s", artifacts.path(keyname))
    artifacts.write(certname, dump_cert(cert))
    LOG.debug("Wrote cert %s", artifacts.path(certname))


def generate(artifacts, settings):
    """Create the CA, then a server and a client cert signed by it.
    Each pair is written as soon as it exists, so a failure leaves the
    earlier pairs on disk."""
    days = validity_days(settings.days)

    try:
        cakey, cacert = create_ca(settings.ca_cn)
        write_pair(artifacts, cakey, _artifacts.CA_KEY, cacert, _artifacts.CA_CERT)

        key, cert = create_leaf(
            settings.server_cn, cacert, cakey, days, SERVER_EXTENSIONS()
        )
        write_pair(artifacts, key, _artifacts.SERVER_KEY, cert, _artifacts.SERVER_CERT)

        key, cert = create_leaf(
            settings.client_cn, cacert, cakey, days, CLIENT_EXTENSIONS()
        )
        write_pair(artifacts, key, _artifacts.CLIENT_KEY, cert, _artifacts.CLIENT_CERT)
    except (ValueError, OverflowError) as error:
        # cryptography rejects empty or over-long names and impossible dates
        raise GenerationError(str(error)) from error

    # Direct signing needs no CSRs, but stale ones from an openssl run go too.
    artifacts.remove_transient()


def load_cert(path):
    with open(path, "rb") as f:
        return x509.load_pem_x509_certificate(f.read())


def san_entries(cert):
    """SAN entries of a certificate as openssl prints them, e.g. 'DNS:localhost'.
    Returns an empty tuple when there is no SAN extension."""
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    entries = []
    for name in extension.value:
        if isinstance(name, x509.IPAddress):
            entries.append("IP:{}".format(name.value))
        elif isinstance(name, x509.DNSName):
            entries.append("DNS:{}".format(name.value))
        else:
            entries.append(str(name.value))
    return tuple(entries)


def verify(certfile, cafile):
    """Verify `certfile` against the single trust root in `cafile`.
    Raises OpenSSL.crypto.X509StoreContextError on failure"""
    with open(cafile, "rt") as f:
        cacert = _crypto.load_certificate(_crypto.FILETYPE_PEM, f.read())
    with open(certfile, "rt") as f:
        cert = _crypto.load_certificate(_crypto.FILETYPE_PEM, f.read())

    store = _crypto.X509Store()
    store.add_cert(cacert)
    _crypto.X509StoreContext(store, cert).verify_certificate()
