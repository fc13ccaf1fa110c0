import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from unittest import mock

from pemex import cli
from pemex.store import DirectoryCertificateStore
from pemex.utils import StoreScope, OutputConflictPolicy

from tests.certificates import FakeToolchain, make_key, make_certificate, add_to_store, pem, key_pem


class TestPrompts(unittest.TestCase):

    @mock.patch("builtins.input", side_effect=["maybe", "Y"])
    def test_ask_yes_no(self, _):
        with redirect_stdout(io.StringIO()):
            self.assertTrue(cli.ask_yes_no("Continue?"))

    @mock.patch("builtins.input", side_effect=["0", "x", "2"])
    def test_ask_choice(self, _):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(cli.ask_choice("Which?", ["a", "b"]), 1)

    @mock.patch("builtins.input", side_effect=["2", "3"])
    def test_scope_and_policy(self, _):
        with redirect_stdout(io.StringIO()):
            self.assertIs(cli.get_scope(), StoreScope.MACHINE_PERSONAL)
            self.assertIs(cli.get_policy(), OutputConflictPolicy.RENAME_WITH_TIMESTAMP)

    @mock.patch("getpass.getpass", side_effect=["", "one", "two", "Test123!", "Test123!"])
    def test_get_password_safe(self, _):
        with redirect_stdout(io.StringIO()):
            self.assertEqual(cli.get_password_safe(), "Test123!")


@unittest.skipIf(os.name == "nt", "The fake toolchain is a POSIX shell script")
class TestMain(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.store_root = self.root / "store"
        self.output = self.root / "pem"

        key = make_key()
        leaf = make_certificate("www.example.test", key)
        add_to_store(self.store_root, "www", leaf, key)
        add_to_store(self.store_root, "public", make_certificate("public.example.test", make_key()))

        self.toolchain = FakeToolchain(self.root)
        self.toolchain.answer("cert", pem(leaf))
        self.toolchain.answer("key", key_pem(key))
        self.toolchain.answer("chain", b"")

        self.environment = mock.patch.dict(os.environ, {
            "PemexStore": str(self.store_root),
            "PemexOpenSSL": str(self.toolchain.path),
            "PemexHistory": str(self.root / "history.jsonl"),
        })
        self.environment.start()

    def tearDown(self):
        self.environment.stop()
        self.temp_dir.cleanup()

    def test_main(self):
        # scope, certificate, output directory, name, policy, confirmation
        answers = ["1", "1", str(self.output), "", "1", "y"]
        with mock.patch("builtins.input", side_effect=answers), \
                mock.patch("getpass.getpass", side_effect=["Test123!", "Test123!"]), \
                redirect_stdout(io.StringIO()) as stdout:
            code = cli.main()

        self.assertEqual(code, 0)
        self.assertTrue((self.output / "www.pfx").is_file())
        self.assertTrue((self.output / "www-fullchain.pem").is_file())
        self.assertIn("NOT encrypted", stdout.getvalue())
        self.assertEqual(len((self.root / "history.jsonl").read_text().splitlines()), 4)

    def test_main_declined(self):
        answers = ["1", "1", str(self.output), "", "1", "n"]
        with mock.patch("builtins.input", side_effect=answers), \
                mock.patch("getpass.getpass", side_effect=["Test123!", "Test123!"]), \
                redirect_stdout(io.StringIO()):
            code = cli.main()

        self.assertEqual(code, 1)
        self.assertFalse(self.output.exists())

    def test_main_malformed_timeout(self):
        with mock.patch.dict(os.environ, {"PemexTimeout": "thirty"}), \
                mock.patch("builtins.input", side_effect=[]) as the_input, \
                redirect_stdout(io.StringIO()) as stdout:
            code = cli.main()

        self.assertEqual(code, 2)
        self.assertIn("PemexTimeout", stdout.getvalue())
        the_input.assert_not_called()

    def test_main_no_exportable_certificate(self):
        with mock.patch("builtins.input", side_effect=["2"]), redirect_stdout(io.StringIO()):
            self.assertEqual(cli.main(), 1)

    def test_only_exportable_listed(self):
        store = DirectoryCertificateStore(self.store_root)
        with mock.patch("builtins.input", side_effect=["1"]), redirect_stdout(io.StringIO()) as stdout:
            certificate = cli.get_certificate(store, StoreScope.USER_PERSONAL)

        self.assertEqual(certificate.friendly_name, "www")
        self.assertNotIn("public.example.test", stdout.getvalue())


if __name__ == '__main__':
    unittest.main()
