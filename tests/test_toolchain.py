import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pemex.errors import ToolchainNotFoundError
from pemex.toolchain import find_toolchain


class TestFindToolchain(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

        self.executable = self.root / "openssl"
        self.executable.write_text("#!/bin/sh\n")
        self.executable.chmod(0o755)

        self.not_executable = self.root / "openssl.txt"
        self.not_executable.write_text("")
        self.not_executable.chmod(0o644)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_explicit(self):
        self.assertEqual(find_toolchain(self.executable), self.executable)
        self.assertEqual(find_toolchain(str(self.executable)), self.executable)

    def test_explicit_invalid(self):
        for each in [self.not_executable, self.root / "missing", self.root]:
            with self.assertRaises(ToolchainNotFoundError):
                find_toolchain(each)

    @mock.patch("pemex.toolchain.shutil.which")
    def test_explicit_name(self, which):
        which.return_value = str(self.executable)
        self.assertEqual(find_toolchain("openssl3"), self.executable)
        which.assert_called_once_with("openssl3")

    @mock.patch("pemex.toolchain.shutil.which")
    def test_path_lookup(self, which):
        which.return_value = str(self.executable)
        self.assertEqual(find_toolchain(), self.executable)

    @mock.patch("pemex.toolchain.shutil.which")
    def test_known_locations(self, which):
        which.return_value = None
        self.assertEqual(find_toolchain(locations=[self.not_executable, self.executable]), self.executable)

    @mock.patch("pemex.toolchain.shutil.which")
    def test_not_found(self, which):
        which.return_value = None
        with self.assertRaises(ToolchainNotFoundError) as context:
            find_toolchain(locations=[self.not_executable])

        self.assertEqual(context.exception.stage, "Decomposing")


if __name__ == '__main__':
    unittest.main()
