import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import django

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "pemex_aip.settings")
django.setup()

from django.test import Client  # noqa: E402

from pemex_aip import settings  # noqa: E402

from tests.certificates import FakeToolchain, make_key, make_certificate, add_to_store, pem, key_pem, thumbprint  # noqa: E402

API_KEY = "a-long-and-random-api-key"


class TestApi(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.store_root = self.root / "store"
        self.output = self.root / "output"

        self.key = make_key()
        self.leaf = make_certificate("www.example.test", self.key)
        add_to_store(self.store_root, "www", self.leaf, self.key)
        self.public = make_certificate("public.example.test", make_key())
        add_to_store(self.store_root, "public", self.public)

        self.patches = [
            mock.patch.object(settings, "api_key", API_KEY),
            mock.patch.object(settings, "store", str(self.store_root)),
            mock.patch.object(settings, "output", self.output),
            mock.patch.object(settings, "openssl", None),
            mock.patch.object(settings, "history", None),
        ]
        for each in self.patches:
            each.start()

        self.client = Client()

    def tearDown(self):
        for each in self.patches:
            each.stop()
        self.temp_dir.cleanup()

    def get(self, url, key=API_KEY, **data):
        return self.client.get(url, data=data, HTTP_X_API_KEY=key)

    def export(self, payload):
        return self.client.post("/api/v1/certificates/export", data=json.dumps(payload),
                                content_type="application/json", HTTP_X_API_KEY=API_KEY)

    def test_unauthorized(self):
        self.assertEqual(self.client.get("/api/v1/certificates").status_code, 401)
        self.assertEqual(self.get("/api/v1/certificates", key="wrong").status_code, 401)

        with mock.patch.object(settings, "api_key", ""):
            response = self.get("/api/v1/certificates", key="")
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()["message"], "Unauthorized")

    def test_list_certificates(self):
        response = self.get("/api/v1/certificates", scope="UserPersonal")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], 200)
        self.assertEqual({each["thumbprint"] for each in body["data"]}, {thumbprint(self.leaf), thumbprint(self.public)})

        response = self.get("/api/v1/certificates", scope="MachinePersonal")
        self.assertEqual(response.json()["data"], [])

    def test_get_certificate(self):
        response = self.get(f"/api/v1/certificates/{thumbprint(self.leaf)}")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["data"]["has_private_key"])

        self.assertEqual(self.get(f"/api/v1/certificates/{'00' * 20}").status_code, 404)
        self.assertEqual(self.get("/api/v1/certificates/not-a-thumbprint").status_code, 400)

    def test_export_no_private_key(self):
        response = self.export({"thumbprint": thumbprint(self.public), "password": "Test123!"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["data"]["state"], "Aborted")
        self.assertFalse(self.output.exists())

    def test_export_unknown_certificate(self):
        response = self.export({"thumbprint": "00" * 20, "password": "Test123!"})
        self.assertEqual(response.status_code, 404)

    def test_export_unsafe_name(self):
        response = self.export({"thumbprint": thumbprint(self.leaf), "password": "Test123!", "name": "../etc/x"})
        self.assertEqual(response.status_code, 400)

    def test_export_invalid_toolchain(self):
        with mock.patch.object(settings, "openssl", str(self.root / "missing" / "openssl")):
            response = self.export({"thumbprint": thumbprint(self.leaf), "password": "Test123!", "name": "out"})

        self.assertEqual(response.status_code, 502)
        data = response.json()["data"]
        self.assertEqual(data["state"], "Failed")
        self.assertEqual([each["stage"] for each in data["events"]],
                         ["Validating", "Exporting", "Decomposing", "Failed"])
        self.assertTrue((self.output / "out.pfx").is_file())

    def test_export_conflict(self):
        self.output.mkdir()
        (self.output / "out.pfx").write_bytes(b"existing")

        response = self.export({"thumbprint": thumbprint(self.leaf), "password": "Test123!", "name": "out"})
        self.assertEqual(response.status_code, 409)

    @unittest.skipIf(os.name == "nt", "The fake toolchain is a POSIX shell script")
    def test_export(self):
        toolchain = FakeToolchain(self.root)
        toolchain.answer("cert", pem(self.leaf))
        toolchain.answer("key", key_pem(self.key))
        toolchain.answer("chain", b"")

        with mock.patch.object(settings, "openssl", str(toolchain.path)):
            response = self.export({"thumbprint": thumbprint(self.leaf), "password": "Test123!"})

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        self.assertEqual(data["state"], "Complete")
        self.assertEqual(data["pfx"], str(self.output / "www.pfx"))
        self.assertEqual(data["pem"]["full_chain"], str(self.output / "www-fullchain.pem"))
        self.assertNotIn("Test123!", response.content.decode("utf-8"))


if __name__ == '__main__':
    unittest.main()
