import unittest

from template_storage.bucket import InMemoryBucketClient
from template_storage.downloader import (
    archive_filename,
    build_zip,
    locate_bucket_files,
    reconstruct_template_zip,
    sanitize_folder_name,
)
from template_storage.exceptions import NoFilesFoundError
from template_storage.tests.fixtures import bucket_backend, read_zip
from template_storage.types import TemplateRecord


def _bucket(keys: dict) -> InMemoryBucketClient:
    client = InMemoryBucketClient()
    for key, body in keys.items():
        client.put_object(key, body, "application/octet-stream")
    return client


class LocateBucketFilesTests(unittest.TestCase):
    def test_recorded_storage_path_is_authoritative(self):
        client = _bucket(
            {
                "3/index.html": b"root",
                "3/source/shop/index.html": b"nested",
                "3/source/shop/css/a.css": b"css",
            }
        )
        location = locate_bucket_files(client, 3, storage_path="3/source/shop/")
        self.assertFalse(location.probed)
        self.assertEqual(location.prefix, "3/source/shop")
        self.assertEqual(
            location.files,
            [("css/a.css", "3/source/shop/css/a.css"), ("index.html", "3/source/shop/index.html")],
        )

    def test_files_at_template_root(self):
        client = _bucket(
            {
                "5/index.html": b"<html>",
                "5/css/site.css": b"css",
                "5/demo/index.html": b"demo",
            }
        )
        location = locate_bucket_files(client, 5)
        self.assertTrue(location.probed)
        self.assertIsNone(location.record_path)
        self.assertEqual(
            sorted(relative for relative, _ in location.files),
            ["css/site.css", "index.html"],
        )

    def test_standard_source_folder(self):
        client = _bucket({"6/source/index.html": b"a", "6/source/js/app.js": b"b"})
        location = locate_bucket_files(client, 6)
        self.assertEqual(location.record_path, "6/source")
        self.assertEqual(
            [relative for relative, _ in location.files], ["index.html", "js/app.js"]
        )

    def test_legacy_folder_nested_under_source(self):
        client = _bucket(
            {
                "9/source/.emptyFolderPlaceholder": b"",
                "9/source/my-template/index.html": b"<html>",
                "9/source/my-template/css/style.css": b"body {}",
                "9/source/my-template/.emptyFolderPlaceholder": b"",
            }
        )
        location = locate_bucket_files(client, 9)
        self.assertTrue(location.probed)
        self.assertEqual(
            location.files,
            [
                ("my-template/css/style.css", "9/source/my-template/css/style.css"),
                ("my-template/index.html", "9/source/my-template/index.html"),
            ],
        )
        self.assertEqual(location.record_path, "9/source")

    def test_single_folder_at_root(self):
        client = _bucket({"11/site/index.html": b"<html>", "11/screenshots/a.png": b"png"})
        location = locate_bucket_files(client, 11)
        self.assertEqual(location.files, [("site/index.html", "11/site/index.html")])
        self.assertEqual(location.record_path, "11/site")

    def test_nothing_stored(self):
        location = locate_bucket_files(InMemoryBucketClient(), 12)
        self.assertEqual(location.files, [])
        self.assertIsNone(location.record_path)


class ArchiveNamingTests(unittest.TestCase):
    def test_sanitize_folder_name(self):
        self.assertEqual(sanitize_folder_name('My: "Shop"  Template?'), "My Shop Template")
        self.assertEqual(sanitize_folder_name("???"), "template")

    def test_archive_filename(self):
        self.assertEqual(archive_filename("Shop Template 2"), "shop-template-2.zip")

    def test_build_zip_nests_files_under_root_folder(self):
        data = build_zip([("b.txt", b"2"), ("a/c.txt", b"3")], "Shop")
        self.assertEqual(read_zip(data), {"Shop/a/c.txt": b"3", "Shop/b.txt": b"2"})


class ReconstructTemplateZipTests(unittest.TestCase):
    def test_rebuilds_legacy_layout_with_monotonic_progress(self):
        client = _bucket(
            {
                "9/source/my-template/index.html": b"<html>",
                "9/source/my-template/css/style.css": b"body {}",
            }
        )
        backend = bucket_backend(client)
        progress = []
        archive = reconstruct_template_zip(
            backend, TemplateRecord(id=9, title="Landing Page"), progress.append
        )

        self.assertEqual(archive.filename, "landing-page.zip")
        self.assertEqual(archive.file_count, 2)
        self.assertTrue(archive.probed)
        self.assertEqual(archive.located_path, "9/source")
        self.assertEqual(
            read_zip(archive.data),
            {
                "Landing Page/my-template/css/style.css": b"body {}",
                "Landing Page/my-template/index.html": b"<html>",
            },
        )
        self.assertEqual(progress[0], 10)
        self.assertEqual(progress[-1], 100)
        self.assertEqual(progress, sorted(progress))
        self.assertIn(90, progress)

    def test_skips_unreadable_files(self):
        class LossyBucketClient(InMemoryBucketClient):
            def get_object(self, key):
                if key.endswith(".css"):
                    raise FileNotFoundError(key)
                return super().get_object(key)

        client = LossyBucketClient()
        client.put_object("4/source/index.html", b"<html>", "text/html")
        client.put_object("4/source/style.css", b"body {}", "text/css")

        archive = reconstruct_template_zip(bucket_backend(client), TemplateRecord(id=4, title="Shop"))
        self.assertEqual(archive.file_count, 1)
        self.assertEqual(len(archive.errors), 1)
        self.assertIn("style.css", archive.errors[0])

    def test_raises_when_nothing_found(self):
        with self.assertRaises(NoFilesFoundError):
            reconstruct_template_zip(bucket_backend(), TemplateRecord(id=1, title="Empty"))


if __name__ == "__main__":
    unittest.main()
