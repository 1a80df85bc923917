import unittest
import zipfile
from unittest import mock

from template_storage.archive import (
    MAX_FILE_COUNT,
    MAX_FILE_SIZE,
    extract_archive,
    find_index_file,
    format_file_size,
    validate_archive,
)
from template_storage.exceptions import ArchiveExtractionError, InvalidArchiveError
from template_storage.tests.fixtures import make_file, make_zero_filled_zip, make_zip


class ExtractArchiveTests(unittest.TestCase):
    def test_skips_directories_and_system_entries(self):
        data = make_zip(
            {
                "index.html": "<html></html>",
                "assets/": "",
                "css\\style.css": "body {}",
                "__MACOSX/._index.html": "junk",
                ".DS_Store": "junk",
            }
        )
        files = extract_archive(data)
        self.assertEqual([f.path for f in files], ["index.html", "css/style.css"])
        self.assertEqual(files[1].name, "style.css")
        self.assertEqual(files[0].content, b"<html></html>")
        self.assertEqual(files[0].size, len(b"<html></html>"))

    def test_corrupt_input_raises(self):
        with self.assertRaises(ArchiveExtractionError) as ctx:
            extract_archive(b"definitely not a zip")
        self.assertIn("Failed to extract ZIP file", str(ctx.exception))

    def test_parent_directory_entries_reach_validation(self):
        files = extract_archive(make_zip({"../evil.html": "<p>x</p>", "index.html": "ok"}))
        self.assertIn("../evil.html", [f.path for f in files])

        result = validate_archive(files)
        self.assertFalse(result.valid)
        self.assertIn('File "../evil.html" has an unsafe path', result.errors)

    def test_oversized_entry_rejected_before_inflating(self):
        data = make_zero_filled_zip("big.txt", MAX_FILE_SIZE + 1)
        self.assertLess(len(data), 1024 * 1024)

        with mock.patch.object(zipfile.ZipFile, "read") as read:
            with self.assertRaises(InvalidArchiveError) as ctx:
                extract_archive(data)
        read.assert_not_called()
        validation = ctx.exception.validation
        self.assertFalse(validation.valid)
        self.assertEqual(validation.errors, ['File "big.txt" exceeds maximum size of 100MB'])
        self.assertEqual(validation.total_size, MAX_FILE_SIZE + 1)

    def test_entry_count_checked_before_reading(self):
        data = make_zip({f"page{i}.html": "" for i in range(MAX_FILE_COUNT + 1)})
        with mock.patch.object(zipfile.ZipFile, "read") as read:
            with self.assertRaises(InvalidArchiveError) as ctx:
                extract_archive(data)
        read.assert_not_called()
        self.assertEqual(
            ctx.exception.validation.errors,
            [f"Too many files. Maximum 1000 files allowed, found {MAX_FILE_COUNT + 1}"],
        )

    def test_nested_git_directory_is_rejected(self):
        files = extract_archive(
            make_zip({"index.html": "ok", ".git/HEAD": "ref", "site/.git/config": "[core]"})
        )
        self.assertEqual([f.path for f in files], ["index.html", "site/.git/config"])

        result = validate_archive(files)
        self.assertFalse(result.valid)
        self.assertEqual(
            result.errors, ['File "site/.git/config" is not allowed for security reasons']
        )


class ValidateArchiveTests(unittest.TestCase):
    def test_clean_site_is_valid(self):
        files = [make_file("index.html"), make_file("LICENSE"), make_file(".gitignore")]
        result = validate_archive(files)
        self.assertTrue(result.valid)
        self.assertEqual(result.errors, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.file_count, 3)
        self.assertEqual(result.total_size, 3)

    def test_empty_archive(self):
        result = validate_archive([])
        self.assertFalse(result.valid)
        self.assertEqual(result.errors, ["ZIP file is empty"])

    def test_reports_every_violation(self):
        files = [
            make_file("index.html"),
            make_file("tools/install.sh"),
            make_file("node_modules/lib/index.js"),
            make_file("config/.env"),
            make_file("big.png", size=MAX_FILE_SIZE + 1),
        ]
        result = validate_archive(files)
        self.assertFalse(result.valid)
        self.assertIn(
            'File "tools/install.sh" is not allowed for security reasons', result.errors
        )
        self.assertIn(
            'File "node_modules/lib/index.js" is not allowed for security reasons',
            result.errors,
        )
        self.assertIn('File "config/.env" is not allowed for security reasons', result.errors)
        self.assertIn('File "big.png" exceeds maximum size of 100MB', result.errors)
        self.assertEqual(len(result.errors), 4)

    def test_env_example_is_allowed(self):
        result = validate_archive([make_file(".env.example")])
        self.assertTrue(result.valid)
        self.assertEqual(result.warnings, [])

    def test_file_count_limit(self):
        files = [make_file(f"page{i}.html") for i in range(MAX_FILE_COUNT + 1)]
        result = validate_archive(files)
        self.assertEqual(
            result.errors,
            [f"Too many files. Maximum 1000 files allowed, found {MAX_FILE_COUNT + 1}"],
        )

    def test_total_size_limit(self):
        files = [make_file(f"video{i}.png", size=MAX_FILE_SIZE) for i in range(6)]
        result = validate_archive(files)
        self.assertEqual(result.errors, ["Total size exceeds maximum of 500MB"])

    def test_uncommon_extension_is_a_warning(self):
        result = validate_archive([make_file("index.html"), make_file("photo.bmp")])
        self.assertTrue(result.valid)
        self.assertEqual(
            result.warnings,
            ['File "photo.bmp" has an uncommon extension and may not be supported'],
        )


class FindIndexFileTests(unittest.TestCase):
    def test_prefers_root_index(self):
        files = [make_file("docs/index.html"), make_file("index.html")]
        self.assertEqual(find_index_file(files), "index.html")

    def test_falls_back_to_first_nested(self):
        files = [make_file("site/INDEX.HTML"), make_file("other/index.html")]
        self.assertEqual(find_index_file(files), "site/INDEX.HTML")

    def test_none_without_index(self):
        self.assertIsNone(find_index_file([make_file("about.html")]))


class FormatFileSizeTests(unittest.TestCase):
    def test_formats(self):
        self.assertEqual(format_file_size(0), "0 Bytes")
        self.assertEqual(format_file_size(500), "500 Bytes")
        self.assertEqual(format_file_size(1024), "1 KB")
        self.assertEqual(format_file_size(1536), "1.5 KB")
        self.assertEqual(format_file_size(5 * 1024 * 1024), "5 MB")


if __name__ == "__main__":
    unittest.main()
