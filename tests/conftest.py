import json
import os
import re
from typing import Dict, List, Optional

import git
import httpx
import pytest

from pages_deployer.config import Settings
from pages_deployer.github import GitHubClient
from pages_deployer.models import TaskRequest

OWNER = "octo"


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


class FakeGitHub:
    """In-process stand-in for the GitHub REST API and the evaluation endpoint.

    Repositories created through the API are bare git repos under ``remotes``,
    so pushes from the client land somewhere real.
    """

    def __init__(self, remotes_dir: str):
        self.remotes_dir = remotes_dir
        self.pages_enabled = set()
        self.requests: List[httpx.Request] = []
        self.callbacks: List[dict] = []
        self.pages_statuses: List[str] = []
        self.callback_statuses: List[int] = []
        # when set, the commits API reports this sha instead of the real head
        self.commits_head: Optional[str] = None

    def remote_path(self, name: str) -> str:
        return os.path.join(self.remotes_dir, f"{name}.git")

    def create_remote(self, name: str) -> git.Repo:
        return git.Repo.init(self.remote_path(name), bare=True, initial_branch="main")

    def head(self, name: str):
        try:
            return git.Repo(self.remote_path(name)).commit("main").hexsha
        except Exception:
            return None

    def file_at_head(self, name: str, path: str):
        try:
            return git.Repo(self.remote_path(name)).git.show(f"main:{path}")
        except (git.GitCommandError, git.NoSuchPathError, git.InvalidGitRepositoryError):
            return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if request.url.host == "example.test":
            self.callbacks.append(json.loads(request.content))
            status = self.callback_statuses.pop(0) if self.callback_statuses else 200
            return httpx.Response(status, json={"ok": status < 300})

        if method == "POST" and path == "/user/repos":
            name = json.loads(request.content)["name"]
            self.create_remote(name)
            return httpx.Response(201, json={"name": name, "html_url": f"https://github.com/{OWNER}/{name}"})

        m = re.fullmatch(rf"/repos/{OWNER}/([^/]+)(/.*)?", path)
        if not m:
            return httpx.Response(404, json={"message": "Not Found"})
        name, rest = m.group(1), m.group(2) or ""
        exists = os.path.isdir(self.remote_path(name))

        if rest == "" and method == "GET":
            if exists:
                return httpx.Response(200, json={"name": name})
            return httpx.Response(404, json={"message": "Not Found"})
        if rest == "/pages" and method == "POST":
            if name in self.pages_enabled:
                return httpx.Response(409, json={"message": "GitHub Pages is already enabled."})
            self.pages_enabled.add(name)
            return httpx.Response(201, json={"status": None})
        if rest == "/pages/builds/latest":
            status = self.pages_statuses.pop(0) if self.pages_statuses else "built"
            return httpx.Response(200, json={"status": status, "commit": self.head(name)})
        if rest == "/commits":
            sha = self.commits_head or self.head(name)
            if sha is None:
                return httpx.Response(409, json={"message": "Git Repository is empty."})
            return httpx.Response(200, json=[{"sha": sha}])
        if rest.startswith("/contents/"):
            content = self.file_at_head(name, rest[len("/contents/"):])
            if content is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, text=content)
        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        GITHUB_USERNAME=OWNER,
        GITHUB_TOKEN="test-token",
        STUDENT_SECRET="s3cret",
        STUDENT_EMAIL="bot@example.test",
        GEMINI_API_KEY="",
        REPOS_DIR=str(tmp_path / "work"),
        LOG_FILE_PATH=str(tmp_path / "logs" / "app.log"),
        _env_file=None,
    )


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_github(tmp_path) -> FakeGitHub:
    remotes = tmp_path / "remotes"
    remotes.mkdir()
    return FakeGitHub(str(remotes))


@pytest.fixture
async def http(fake_github):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_github.handler))
    yield client
    await client.aclose()


@pytest.fixture
def github_client(settings, http, sleeps, fake_github) -> GitHubClient:
    client = GitHubClient(settings, http=http, sleep=sleeps)
    client.authenticated_url = lambda identity: fake_github.remote_path(identity.name)
    return client


def make_request(**overrides) -> TaskRequest:
    data: Dict = {
        "email": "student@example.com",
        "secret": "s3cret",
        "task": "Hello World!",
        "round": 1,
        "nonce": "nonce-1",
        "brief": "Show a greeting",
        "checks": ["x"],
        "evaluation_url": "https://example.test/cb",
        "attachments": [],
    }
    data.update(overrides)
    return TaskRequest(**data)


SAMPLE_FILES = {
    "index.html": "<!DOCTYPE html><html><body>v1</body></html>",
    "LICENSE": "MIT License",
    "README.md": "# Hello",
}
