#! /usr/bin/env python
# vim: expandtab shiftwidth=4 softtabstop=4 tabstop=17 filetype=python :
import shutil
import tempfile
import unittest

from devtls import certlib
from devtls.artifacts import ArtifactDir
from devtls.config import Settings


class ArtifactTestCase(unittest.TestCase):
    """Every test gets a fresh, empty directory in self.artifacts"""

    def setUp(self):
        super(ArtifactTestCase, self).setUp()
        self.tmpdir = tempfile.mkdtemp(prefix="devtls-test-")
        self.addCleanup(shutil.rmtree, self.tmpdir, True)
        self.artifacts = ArtifactDir(self.tmpdir)

    def make_dir(self):
        """Another empty directory, removed after the test"""
        path = tempfile.mkdtemp(prefix="devtls-test-")
        self.addCleanup(shutil.rmtree, path, True)
        return ArtifactDir(path)

    def generate(self, artifacts=None, settings=None):
        if artifacts is None:
            artifacts = self.artifacts
        certlib.generate(artifacts, settings or Settings())
        return artifacts
