from setuptools import setup, find_packages

requires = [
    "cryptography >= 41",
    "pyOpenSSL >= 24.3.0",
]

setup(
    name="devtls",
    version="1.0.0",
    python_requires=">=3.7",
    description="devtls",
    long_description="""
devtls makes a throwaway certificate authority, a server certificate and a
client certificate for local TLS testing, and removes them again.

The server certificate is valid for localhost and 127.0.0.1, the client
certificate is meant for mutual TLS. A handshake smoke test checks that the
three fit together. Certificates are made either in-process or by driving the
openssl command line tool.

This is development tooling. Do not issue production certificates with it.
      """,
    classifiers=[
        "Programming Language :: Python",
        "Topic :: Security :: Cryptography",
        "Topic :: Software Development :: Testing",
    ],
    keywords="x509 ca cert ssl tls openssl development",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    zip_safe=False,
    test_suite="tests",
    install_requires=requires,
    entry_points="""\
      [console_scripts]
      devtls = devtls.scripts.tool:main
      """,
)
