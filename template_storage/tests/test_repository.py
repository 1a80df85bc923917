import base64
import unittest
from unittest.mock import MagicMock

import requests

from template_storage.exceptions import (
    BackendUnavailableError,
    RepositoryApiError,
    RepositoryNotFoundError,
)
from template_storage.pool import CancelToken
from template_storage.repository import (
    GitHubRepositoryClient,
    InMemoryRepositoryClient,
    git_blob_sha,
    slugify,
)
from template_storage.tests.fixtures import make_file, repository_backend, site_files
from template_storage.types import TemplateRecord, UploadStatus

REPO = "template-42-my-cool-template"


class FlakyRepositoryClient(InMemoryRepositoryClient):
    def put_file(self, repo, path, content_b64, message, branch):
        if path.endswith("bad.js"):
            raise RepositoryApiError("conflict", 409)
        return super().put_file(repo, path, content_b64, message, branch)


class RepositoryBackendTests(unittest.TestCase):
    def setUp(self):
        self.client = InMemoryRepositoryClient(owner="acme-templates")
        self.backend = repository_backend(self.client)
        self.template = TemplateRecord(id=42, title="My Cool Template!")

    def test_repo_naming_and_urls(self):
        self.assertEqual(slugify("  Hello, World!  "), "hello-world")
        self.assertEqual(self.backend.repo_name(42, "My Cool Template!"), REPO)
        self.assertEqual(
            self.backend.repo_url(REPO), f"https://github.com/acme-templates/{REPO}"
        )
        self.assertEqual(
            self.backend.public_url(self.template, "index.html"),
            f"https://raw.githubusercontent.com/acme-templates/{REPO}/main/index.html",
        )

    def test_upload_creates_repository_and_commits_files(self):
        progress = []
        result = self.backend.upload(self.template, site_files(), on_progress=progress.append)

        self.assertTrue(result.success)
        self.assertEqual(result.uploaded_files, 4)
        self.assertEqual(result.repository_url, f"https://github.com/acme-templates/{REPO}")
        self.assertEqual(result.storage_path, f"acme-templates/{REPO}")
        self.assertEqual(result.index_file_path, "index.html")
        self.assertEqual(self.client.created, [REPO])
        self.assertEqual(
            sorted(self.client.repos[REPO]["files"]),
            ["css/style.css", "images/logo.png", "index.html", "js/app.js"],
        )
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 100)

    def test_repeat_upload_reuses_repository(self):
        self.backend.upload(self.template, site_files())
        self.backend.upload(self.template, [make_file("index.html", b"v2")])
        self.assertEqual(self.client.created, [REPO])
        sha = self.client.repos[REPO]["files"]["index.html"]
        self.assertEqual(self.client.blobs[sha], b"v2")

    def test_recorded_repo_name_wins(self):
        template = TemplateRecord(id=42, title="Renamed", github_repo_name=REPO)
        self.backend.upload(template, site_files())
        self.assertEqual(list(self.client.repos), [REPO])

    def test_list_download_and_delete(self):
        self.backend.upload(self.template, site_files())
        self.assertEqual(
            self.backend.list_files(self.template),
            ["css/style.css", "images/logo.png", "index.html", "js/app.js"],
        )
        downloaded = self.backend.download_files(self.template)
        self.assertEqual(dict(downloaded.files)["js/app.js"], b"console.log('hi');")
        self.assertEqual(downloaded.errors, [])
        self.assertFalse(downloaded.probed)

        links = self.backend.download_links(self.template)
        self.assertEqual(
            links[0].url,
            f"https://raw.githubusercontent.com/acme-templates/{REPO}/main/css/style.css",
        )

        self.backend.delete(self.template)
        self.assertFalse(self.backend.repository_exists(REPO))
        with self.assertRaises(RepositoryNotFoundError):
            self.backend.list_files(self.template)

    def test_partial_failure(self):
        backend = repository_backend(FlakyRepositoryClient(owner="acme-templates"))
        result = backend.upload(self.template, site_files() + [make_file("bad.js")])
        self.assertEqual(result.status, UploadStatus.PARTIAL)
        self.assertEqual(result.failed_files, 1)
        self.assertEqual(result.errors, ["Failed to upload bad.js: conflict"])

    def test_cancelled_upload(self):
        token = CancelToken()
        token.cancel()
        result = self.backend.upload(self.template, site_files(), cancel=token)
        self.assertEqual(result.status, UploadStatus.CANCELLED)
        self.assertEqual(result.uploaded_files, 0)
        self.assertEqual(self.client.repos[REPO]["files"], {})

    def test_storage_url_prefers_recorded_value(self):
        template = TemplateRecord(
            id=42, title="x", github_repo_url="https://github.com/acme-templates/custom"
        )
        self.assertEqual(
            self.backend.storage_url(template), "https://github.com/acme-templates/custom"
        )

    def test_blob_sha_matches_git(self):
        # `git hash-object` of an empty file.
        self.assertEqual(git_blob_sha(b""), "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391")


def _response(status_code: int, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    response.text = str(payload)
    return response


class GitHubRepositoryClientTests(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.session.headers = {}
        self.client = GitHubRepositoryClient("secret-token", "acme", session=self.session)

    def test_requires_token(self):
        with self.assertRaises(BackendUnavailableError):
            GitHubRepositoryClient(None, "acme")

    def test_sets_auth_headers(self):
        self.assertEqual(self.session.headers["Authorization"], "Bearer secret-token")
        self.assertEqual(self.session.headers["Accept"], "application/vnd.github+json")

    def test_create_repository_in_org(self):
        self.session.request.return_value = _response(201, {"name": "template-1-a"})
        self.client.create_repository("template-1-a", "Template: A")

        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://api.github.com/orgs/acme/repos"))
        self.assertTrue(kwargs["json"]["auto_init"])
        self.assertFalse(kwargs["json"]["private"])
        self.assertEqual(kwargs["timeout"], 30)

    def test_create_repository_for_user(self):
        client = GitHubRepositoryClient(
            "secret-token", "someone", owner_is_org=False, session=self.session
        )
        self.session.request.return_value = _response(201, {})
        client.create_repository("template-1-a", "Template: A")
        self.assertEqual(
            self.session.request.call_args[0][1], "https://api.github.com/user/repos"
        )

    def test_put_file_retries_with_existing_sha(self):
        self.session.request.side_effect = [
            _response(422, {"message": "sha wasn't supplied"}),
            _response(200, {"sha": "abc123"}),
            _response(200, {"content": {"path": "index.html"}}),
        ]
        self.client.put_file("repo", "index.html", "PGh0bWw+", "Add index.html", "main")

        self.assertEqual(self.session.request.call_count, 3)
        method, url = self.session.request.call_args[0]
        self.assertEqual(method, "PUT")
        self.assertEqual(url, "https://api.github.com/repos/acme/repo/contents/index.html")
        self.assertEqual(self.session.request.call_args.kwargs["json"]["sha"], "abc123")

    def test_error_mapping(self):
        self.session.request.return_value = _response(404, {"message": "Not Found"})
        with self.assertRaises(RepositoryNotFoundError):
            self.client.get_repository("missing")

        self.session.request.return_value = _response(500, {"message": "boom"})
        with self.assertRaises(RepositoryApiError) as ctx:
            self.client.get_repository("broken")
        self.assertEqual(ctx.exception.status_code, 500)

        self.session.request.side_effect = requests.ConnectionError("offline")
        with self.assertRaises(RepositoryApiError):
            self.client.get_repository("offline")

    def test_get_blob_decodes_wrapped_base64(self):
        encoded = base64.b64encode(b"hello template").decode("ascii")
        wrapped = encoded[:8] + "\n" + encoded[8:]
        self.session.request.return_value = _response(
            200, {"content": wrapped, "encoding": "base64"}
        )
        self.assertEqual(self.client.get_blob("repo", "abc"), b"hello template")

    def test_get_tree_returns_entries(self):
        self.session.request.return_value = _response(
            200, {"tree": [{"path": "index.html", "type": "blob", "sha": "1"}], "truncated": False}
        )
        tree = self.client.get_tree("repo", "main")
        self.assertEqual(tree[0]["path"], "index.html")
        self.assertEqual(self.session.request.call_args.kwargs["params"], {"recursive": "1"})


if __name__ == "__main__":
    unittest.main()
