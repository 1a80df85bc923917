"""
Source-repository backend: one public GitHub repository per template.

Files are committed one at a time through the contents API and read back
through the git tree and blob APIs.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol

import requests

from template_storage.archive import find_index_file
from template_storage.backends import DownloadedFiles, FileLink
from template_storage.config import RepositoryConfig
from template_storage.exceptions import (
    BackendUnavailableError,
    RepositoryApiError,
    RepositoryNotFoundError,
)
from template_storage.pool import (
    CancelToken,
    Counter,
    ProgressTracker,
    TaskOutcome,
    run_bounded,
)
from template_storage.types import (
    ExtractedFile,
    ProgressCallback,
    TemplateRecord,
    UploadResult,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30  # seconds
GITHUB_API_VERSION = "2022-11-28"
RAW_CONTENT_BASE = "https://raw.githubusercontent.com"
WEB_BASE = "https://github.com"


class RepositoryClient(Protocol):
    """Repository hosting operations used by the backend, scoped to one owner."""

    owner: str

    def get_repository(self, repo: str) -> dict:
        ...

    def create_repository(self, repo: str, description: str) -> dict:
        ...

    def put_file(
        self, repo: str, path: str, content_b64: str, message: str, branch: str
    ) -> dict:
        ...

    def get_tree(self, repo: str, ref: str) -> list[dict]:
        ...

    def get_blob(self, repo: str, sha: str) -> bytes:
        ...

    def list_contents(self, repo: str, path: str = "", ref: Optional[str] = None) -> list[dict]:
        ...

    def delete_repository(self, repo: str) -> None:
        ...


def git_blob_sha(content: bytes) -> str:
    header = f"blob {len(content)}\0".encode("utf-8")
    return hashlib.sha1(header + content).hexdigest()


@dataclass
class InMemoryRepositoryClient:
    """Test double holding repositories as path -> bytes maps."""

    owner: str = "example-templates"
    repos: dict = field(default_factory=dict)
    blobs: dict = field(default_factory=dict)
    created: list = field(default_factory=list)

    def get_repository(self, repo: str) -> dict:
        if repo not in self.repos:
            raise RepositoryNotFoundError(f"Repository {repo} not found", 404)
        return self.repos[repo]["meta"]

    def create_repository(self, repo: str, description: str) -> dict:
        if repo in self.repos:
            raise RepositoryApiError(f"Repository {repo} already exists", 422)
        meta = {
            "name": repo,
            "full_name": f"{self.owner}/{repo}",
            "html_url": f"{WEB_BASE}/{self.owner}/{repo}",
            "clone_url": f"{WEB_BASE}/{self.owner}/{repo}.git",
            "default_branch": "main",
            "description": description,
        }
        self.repos[repo] = {"meta": meta, "files": {}}
        self.created.append(repo)
        return meta

    def put_file(
        self, repo: str, path: str, content_b64: str, message: str, branch: str
    ) -> dict:
        files = self.repos.get(repo, {}).get("files")
        if files is None:
            raise RepositoryNotFoundError(f"Repository {repo} not found", 404)
        content = base64.b64decode(content_b64)
        sha = git_blob_sha(content)
        files[path] = sha
        self.blobs[sha] = content
        return {"content": {"path": path, "sha": sha}, "commit": {"message": message}}

    def get_tree(self, repo: str, ref: str) -> list[dict]:
        files = self.repos.get(repo, {}).get("files")
        if files is None:
            raise RepositoryNotFoundError(f"Repository {repo} not found", 404)
        tree: list[dict] = []
        seen_dirs: set[str] = set()
        for path, sha in sorted(files.items()):
            parts = path.split("/")[:-1]
            for depth in range(1, len(parts) + 1):
                directory = "/".join(parts[:depth])
                if directory not in seen_dirs:
                    seen_dirs.add(directory)
                    tree.append({"path": directory, "type": "tree"})
            tree.append(
                {"path": path, "type": "blob", "sha": sha, "size": len(self.blobs[sha])}
            )
        return tree

    def get_blob(self, repo: str, sha: str) -> bytes:
        if sha not in self.blobs:
            raise RepositoryNotFoundError(f"Blob {sha} not found", 404)
        return self.blobs[sha]

    def list_contents(self, repo: str, path: str = "", ref: Optional[str] = None) -> list[dict]:
        prefix = f"{path.strip('/')}/" if path.strip("/") else ""
        entries: dict[str, dict] = {}
        for item in self.get_tree(repo, ref or "main"):
            item_path = item["path"]
            if not item_path.startswith(prefix):
                continue
            remainder = item_path[len(prefix):]
            if "/" in remainder:
                continue
            entries[remainder] = {
                "name": remainder,
                "path": item_path,
                "sha": item.get("sha"),
                "size": item.get("size", 0),
                "type": "file" if item["type"] == "blob" else "dir",
            }
        return [entries[name] for name in sorted(entries)]

    def delete_repository(self, repo: str) -> None:
        if self.repos.pop(repo, None) is None:
            raise RepositoryNotFoundError(f"Repository {repo} not found", 404)


class GitHubRepositoryClient:
    """GitHub REST client for the repository operations the backend needs."""

    def __init__(
        self,
        token: Optional[str],
        owner: str,
        *,
        api_url: str = "https://api.github.com",
        owner_is_org: bool = True,
        session: Optional[requests.Session] = None,
    ):
        if not token:
            raise BackendUnavailableError(
                "GitHub token not configured. Set GITHUB_TOKEN to use repository storage"
            )
        self.owner = owner
        self.api_url = api_url.rstrip("/")
        self.owner_is_org = owner_is_org
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            }
        )

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.api_url}{path}"
        try:
            response = self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise RepositoryApiError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 404:
            raise RepositoryNotFoundError(f"{method} {path}: not found", 404)
        if response.status_code >= 400:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise RepositoryApiError(
                f"{method} {path} returned {response.status_code}: {message}",
                response.status_code,
            )
        return response

    def get_repository(self, repo: str) -> dict:
        return self._request("GET", f"/repos/{self.owner}/{repo}").json()

    def create_repository(self, repo: str, description: str) -> dict:
        path = f"/orgs/{self.owner}/repos" if self.owner_is_org else "/user/repos"
        payload = {
            "name": repo,
            "description": description,
            "private": False,
            "auto_init": True,
            "has_issues": False,
            "has_projects": False,
            "has_wiki": False,
        }
        return self._request("POST", path, json=payload).json()

    def _existing_sha(self, repo: str, path: str, branch: str) -> Optional[str]:
        try:
            response = self._request(
                "GET",
                f"/repos/{self.owner}/{repo}/contents/{path}",
                params={"ref": branch},
            )
        except RepositoryNotFoundError:
            return None
        data = response.json()
        return data.get("sha") if isinstance(data, dict) else None

    def put_file(
        self, repo: str, path: str, content_b64: str, message: str, branch: str
    ) -> dict:
        payload = {"message": message, "content": content_b64, "branch": branch}
        endpoint = f"/repos/{self.owner}/{repo}/contents/{path}"
        try:
            return self._request("PUT", endpoint, json=payload).json()
        except RepositoryApiError as exc:
            # Updating an existing file requires its current blob sha.
            if exc.status_code not in (409, 422):
                raise
            sha = self._existing_sha(repo, path, branch)
            if not sha:
                raise
            payload["sha"] = sha
            return self._request("PUT", endpoint, json=payload).json()

    def get_tree(self, repo: str, ref: str) -> list[dict]:
        response = self._request(
            "GET",
            f"/repos/{self.owner}/{repo}/git/trees/{ref}",
            params={"recursive": "1"},
        )
        data = response.json()
        if data.get("truncated"):
            logger.warning("Tree listing for %s/%s was truncated", self.owner, repo)
        return data.get("tree", [])

    def get_blob(self, repo: str, sha: str) -> bytes:
        data = self._request("GET", f"/repos/{self.owner}/{repo}/git/blobs/{sha}").json()
        content = data.get("content", "")
        if data.get("encoding", "base64") != "base64":
            return content.encode("utf-8")
        return base64.b64decode(content.replace("\n", ""))

    def list_contents(self, repo: str, path: str = "", ref: Optional[str] = None) -> list[dict]:
        params = {"ref": ref} if ref else None
        data = self._request(
            "GET", f"/repos/{self.owner}/{repo}/contents/{path}", params=params
        ).json()
        return data if isinstance(data, list) else [data]

    def delete_repository(self, repo: str) -> None:
        self._request("DELETE", f"/repos/{self.owner}/{repo}")


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")


class RepositoryBackend:
    """Keeps each template in its own repository named after id and title."""

    def __init__(self, client: RepositoryClient, config: RepositoryConfig):
        self.client = client
        self.config = config

    @property
    def owner(self) -> str:
        return self.config.owner

    def repo_name(self, template_id: int, title: str) -> str:
        return f"{self.config.repo_prefix}{template_id}-{slugify(title)}"

    def repo_name_for(self, template: TemplateRecord) -> str:
        return template.github_repo_name or self.repo_name(template.id, template.title)

    def repo_url(self, repo: str) -> str:
        return f"{WEB_BASE}/{self.owner}/{repo}"

    def raw_url(self, repo: str, path: str, branch: Optional[str] = None) -> str:
        branch = branch or self.config.branch
        return f"{RAW_CONTENT_BASE}/{self.owner}/{repo}/{branch}/{path.lstrip('/')}"

    def repository_exists(self, repo: str) -> bool:
        try:
            self.client.get_repository(repo)
            return True
        except RepositoryNotFoundError:
            return False

    def ensure_repository(
        self, template_id: int, title: str, description: Optional[str] = None
    ) -> dict:
        """Return the template's repository, creating it only when missing."""
        return self._ensure(self.repo_name(template_id, title), title, description)

    def _ensure(self, repo: str, title: str, description: Optional[str] = None) -> dict:
        try:
            existing = self.client.get_repository(repo)
            logger.info("Repository %s already exists", repo)
            return existing
        except RepositoryNotFoundError:
            pass
        created = self.client.create_repository(repo, description or f"Template: {title}")
        logger.info("Created repository %s", created.get("html_url", repo))
        return created

    def commit_file(self, repo: str, file: ExtractedFile) -> None:
        content_b64 = base64.b64encode(file.content).decode("ascii")
        self.client.put_file(
            repo, file.path, content_b64, f"Add {file.name}", self.config.branch
        )

    def upload_files(
        self,
        repo: str,
        files: list[ExtractedFile],
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> UploadResult:
        result = UploadResult(
            repository_url=self.repo_url(repo),
            storage_path=f"{self.owner}/{repo}",
            index_file_path=find_index_file(files),
        )
        tracker = ProgressTracker(on_progress)
        finished = Counter()

        def on_done(outcome: TaskOutcome[ExtractedFile]) -> None:
            if not outcome.skipped:
                tracker.report(finished.increment() / len(files) * 100)

        outcomes = run_bounded(
            files,
            lambda file: self.commit_file(repo, file),
            workers=self.config.workers,
            cancel=cancel,
            on_done=on_done,
        )
        for outcome in outcomes:
            if outcome.skipped:
                result.cancelled = True
            elif outcome.error is not None:
                logger.warning("Failed to upload %s to %s: %s", outcome.item.path, repo, outcome.error)
                result.record_failure(outcome.item.path, outcome.error)
            else:
                result.uploaded_files += 1

        logger.info(
            "Repository upload to %s: %d uploaded, %d failed%s",
            repo,
            result.uploaded_files,
            result.failed_files,
            " (cancelled)" if result.cancelled else "",
        )
        return result

    def list_repository_files(self, repo: str, path: str = "") -> list[dict]:
        return self.client.list_contents(repo, path, self.config.branch)

    def delete_repository(self, repo: str) -> None:
        self.client.delete_repository(repo)
        logger.info("Deleted repository %s", repo)

    # StorageBackend

    def upload(
        self,
        template: TemplateRecord,
        files: list[ExtractedFile],
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> UploadResult:
        repo = self.repo_name_for(template)
        self._ensure(repo, template.title)
        return self.upload_files(repo, files, on_progress=on_progress, cancel=cancel)

    def list_files(self, template: TemplateRecord) -> list[str]:
        tree = self.client.get_tree(self.repo_name_for(template), self.config.branch)
        return [item["path"] for item in tree if item.get("type") == "blob"]

    def delete(self, template: TemplateRecord) -> None:
        self.delete_repository(self.repo_name_for(template))

    def download_files(
        self,
        template: TemplateRecord,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> DownloadedFiles:
        repo = self.repo_name_for(template)
        blobs = [
            item
            for item in self.client.get_tree(repo, self.config.branch)
            if item.get("type") == "blob" and item.get("path")
        ]
        downloaded = DownloadedFiles(located_path=f"{self.owner}/{repo}")
        tracker = ProgressTracker(on_progress)
        finished = Counter()

        def on_done(outcome: TaskOutcome[dict]) -> None:
            tracker.report(finished.increment() / len(blobs) * 100)

        outcomes = run_bounded(
            blobs,
            lambda item: self.client.get_blob(repo, item["sha"]),
            workers=self.config.workers,
            on_done=on_done,
        )
        for outcome in outcomes:
            path = outcome.item["path"]
            if outcome.error is not None:
                logger.warning("Failed to download %s from %s: %s", path, repo, outcome.error)
                downloaded.errors.append(f"Failed to download {path}: {outcome.error}")
                continue
            downloaded.files.append((path, outcome.value))
        return downloaded

    def download_links(self, template: TemplateRecord) -> list[FileLink]:
        repo = self.repo_name_for(template)
        return [
            FileLink(path=path, url=self.raw_url(repo, path))
            for path in self.list_files(template)
        ]

    def public_url(self, template: TemplateRecord, path: str) -> str:
        return self.raw_url(self.repo_name_for(template), path)

    def storage_url(self, template: TemplateRecord) -> Optional[str]:
        return template.github_repo_url or self.repo_url(self.repo_name_for(template))
