#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
import os
import unittest

from devtls import artifacts
from devtls.artifacts import ArtifactDir

from . import ArtifactTestCase


class TestPaths(unittest.TestCase):
    def test_current_dir_gives_bare_names(self):
        self.assertEqual("server.crt", ArtifactDir(".").path("server.crt"))
        self.assertEqual("server.crt", ArtifactDir().path("server.crt"))
        self.assertEqual("server.crt", ArtifactDir("").path("server.crt"))

    def test_other_dir_is_joined(self):
        self.assertEqual(
            os.path.join("out", "certs", "dev-ca.pem"),
            ArtifactDir(os.path.join("out", "certs")).path("dev-ca.pem"),
        )

    def test_cleanable_covers_everything_made(self):
        made = artifacts.GENERATED + artifacts.TRANSIENT + artifacts.LOGS
        self.assertEqual(sorted(made), sorted(artifacts.CLEANABLE))
        self.assertEqual(12, len(set(artifacts.CLEANABLE)))


class TestClean(ArtifactTestCase):
    def touch(self, name):
        self.artifacts.write(name, b"x")

    def test_clean_removes_all_known_names(self):
        for name in artifacts.CLEANABLE:
            self.touch(name)
        self.artifacts.clean()
        self.assertEqual((), self.artifacts.present())
        self.assertEqual([], os.listdir(self.tmpdir))

    def test_clean_leaves_unknown_files(self):
        self.touch(artifacts.SERVER_CERT)
        self.touch("server.crt.bak")
        self.touch("other.pem")
        self.artifacts.clean()
        self.assertEqual(["other.pem", "server.crt.bak"], sorted(os.listdir(self.tmpdir)))

    def test_clean_on_empty_dir(self):
        self.artifacts.clean()
        self.assertEqual([], os.listdir(self.tmpdir))

    def test_clean_on_missing_dir(self):
        ArtifactDir(os.path.join(self.tmpdir, "nowhere")).clean()

    def test_ensure_creates_dir(self):
        nested = ArtifactDir(os.path.join(self.tmpdir, "a", "b"))
        nested.ensure()
        nested.ensure()
        self.assertTrue(os.path.isdir(nested.directory))

    def test_remove_transient(self):
        for name in artifacts.TRANSIENT + artifacts.GENERATED:
            self.touch(name)
        self.artifacts.remove_transient()
        self.assertEqual(artifacts.GENERATED, self.artifacts.present())
