import asyncio
import os
import shutil
import stat
from typing import Dict, Optional

import git
import httpx

from .config import Settings
from .errors import GitHubError
from .logs import flush_logs, logger
from .models import DeploymentResult, RepositoryIdentity
from .retry import Sleep, retry

PUSH_ATTEMPTS = 3
PUSH_BACKOFF_SECONDS = 2
PAGES_POLL_INTERVAL = 5
PAGES_BUILT_WAIT = 10
PAGES_SAFETY_WAIT = 15
PAGES_ACTIVATION_ATTEMPTS = 3
PAGES_ACTIVATION_DELAY = 3

INITIAL_COMMIT_MESSAGE = "Initial commit: Auto-generated application"
UPDATE_COMMIT_MESSAGE = "Round 2 update"


class _BranchNotReady(Exception):
    """GitHub refused Pages activation because the branch is not visible yet."""


def remove_local_path(path: str):
    if not os.path.exists(path):
        return

    def onexc(func, path_arg, exc):
        # git marks pack files read-only
        os.chmod(path_arg, stat.S_IWUSR)
        func(path_arg)

    logger.info(f"[CLEANUP] Removing local directory: {path}")
    shutil.rmtree(path, onexc=onexc)


def write_files(root: str, files: Dict[str, str]):
    root_abs = os.path.abspath(root)
    for rel_path, content in files.items():
        file_path = os.path.abspath(os.path.join(root_abs, rel_path))
        if os.path.commonpath([root_abs, file_path]) != root_abs or file_path == root_abs:
            raise ValueError(f"Refusing to write outside the working copy: {rel_path!r}")
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(content)
        logger.info(f"   -> Wrote: {rel_path} (chars: {len(content)})")


class GitHubClient:
    """Keeps a GitHub repository and its Pages site in line with a file set.

    REST calls go through httpx; working copies are handled with GitPython in
    worker threads. Every working copy is created from scratch, so the local
    ``repos_dir`` is disposable.
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.owner = settings.GITHUB_USERNAME
        self.branch = settings.DEFAULT_BRANCH
        self.repos_dir = os.path.abspath(settings.REPOS_DIR)
        self.http = http or httpx.AsyncClient(timeout=45)
        self.sleep = sleep

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"token {self.settings.GITHUB_TOKEN}",
            "Accept": "application/vnd.github.v3+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.settings.GITHUB_API_BASE.rstrip('/')}{path}"
        headers = {**self.headers, **kwargs.pop("headers", {})}
        return await self.http.request(method, url, headers=headers, **kwargs)

    async def aclose(self):
        await self.http.aclose()

    # ------------------------- addressing -------------------------
    def identity(self, name: str) -> RepositoryIdentity:
        return RepositoryIdentity(owner=self.owner, name=name)

    def authenticated_url(self, identity: RepositoryIdentity) -> str:
        host = self.settings.GITHUB_WEB_BASE.split("://", 1)[-1].rstrip("/")
        token = self.settings.GITHUB_TOKEN
        return f"https://{self.owner}:{token}@{host}/{identity.owner}/{identity.name}.git"

    def local_path(self, identity: RepositoryIdentity) -> str:
        return os.path.join(self.repos_dir, identity.name)

    def result_for(self, identity: RepositoryIdentity, commit_sha: str) -> DeploymentResult:
        return DeploymentResult(
            repo_url=identity.repo_url(self.settings.GITHUB_WEB_BASE),
            commit_sha=commit_sha,
            pages_url=identity.pages_url(self.settings.pages_base),
        )

    # ------------------------- repository -------------------------
    async def ensure_repository(self, name: str) -> RepositoryIdentity:
        identity = self.identity(name)
        resp = await self._request("GET", f"/repos/{identity.owner}/{name}")
        if resp.status_code == 200:
            logger.warning(f"[GIT] Repository {name} already exists, reusing it")
            return identity
        if resp.status_code != 404:
            resp.raise_for_status()

        logger.info(f"[GIT] Creating remote repo '{name}'")
        payload = {
            "name": name,
            "description": f"Auto-generated application for {name}",
            "private": False,
            "auto_init": False,
            "has_issues": True,
            "has_projects": False,
            "has_wiki": False,
        }
        resp = await self._request("POST", "/user/repos", json=payload)
        resp.raise_for_status()
        logger.info(f"[GIT] Created {identity.repo_url(self.settings.GITHUB_WEB_BASE)}")
        flush_logs()
        return identity

    async def read_file(self, identity: RepositoryIdentity, path: str) -> Optional[str]:
        resp = await self._request(
            "GET",
            f"/repos/{identity.owner}/{identity.name}/contents/{path}",
            headers={"Accept": "application/vnd.github.raw+json"},
        )
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.text

    async def latest_commit_hash(self, identity: RepositoryIdentity) -> str:
        resp = await self._request(
            "GET",
            f"/repos/{identity.owner}/{identity.name}/commits",
            params={"sha": self.branch, "per_page": 1},
        )
        if resp.status_code == 409:
            raise GitHubError(f"Repository {identity.name} has no commits")
        resp.raise_for_status()
        commits = resp.json()
        if not commits:
            raise GitHubError(f"Repository {identity.name} has no commits")
        return commits[0]["sha"]

    # ------------------------- working copies -------------------------
    def _configure_author(self, repo: git.Repo):
        with repo.config_writer() as cw:
            cw.set_value("user", "name", self.owner or "pages-deployer")
            cw.set_value("user", "email", self.settings.commit_email)

    def _fresh_local_path(self, identity: RepositoryIdentity) -> str:
        local_path = self.local_path(identity)
        remove_local_path(local_path)
        os.makedirs(self.repos_dir, exist_ok=True)
        return local_path

    def _prepare_publish(self, identity: RepositoryIdentity, files: Dict[str, str]) -> git.Repo:
        local_path = self._fresh_local_path(identity)
        os.makedirs(local_path)
        repo = git.Repo.init(local_path)
        self._configure_author(repo)
        write_files(local_path, files)
        repo.create_remote("origin", self.authenticated_url(identity))
        repo.git.add(A=True)
        repo.index.commit(INITIAL_COMMIT_MESSAGE)
        repo.git.branch("-M", self.branch)
        logger.info(f"[GIT] Committed {repo.head.object.hexsha} on {self.branch}")
        return repo

    def _prepare_update(self, identity: RepositoryIdentity, files: Dict[str, str]) -> git.Repo:
        local_path = self._fresh_local_path(identity)
        logger.info(f"[GIT] Cloning {identity.repo_url(self.settings.GITHUB_WEB_BASE)}")
        repo = git.Repo.clone_from(self.authenticated_url(identity), local_path)
        self._configure_author(repo)
        write_files(local_path, files)
        repo.git.add(A=True)
        repo.index.commit(UPDATE_COMMIT_MESSAGE)
        logger.info(f"[GIT] Committed {repo.head.object.hexsha} on {repo.active_branch.name}")
        return repo

    async def _push(self, repo: git.Repo, *args, **kwargs):
        for attempt in range(1, PUSH_ATTEMPTS + 1):
            try:
                logger.info(f"[GIT] Pushing (attempt {attempt}/{PUSH_ATTEMPTS})")
                await asyncio.to_thread(repo.git.push, *args, **kwargs)
                logger.info("[GIT] Push succeeded")
                return
            except git.GitCommandError as e:
                logger.warning(f"[GIT] Push attempt {attempt} failed: {e.status}")
                if attempt == PUSH_ATTEMPTS:
                    raise
                await self.sleep(PUSH_BACKOFF_SECONDS * attempt)

    async def publish(self, identity: RepositoryIdentity, files: Dict[str, str]) -> DeploymentResult:
        logger.info(f"[GIT] Publishing {len(files)} file(s) to {identity.name}")
        repo = await asyncio.to_thread(self._prepare_publish, identity, files)
        await self._push(repo, "--set-upstream", "origin", self.branch, force=True)
        flush_logs()
        return self.result_for(identity, repo.head.object.hexsha)

    async def update(self, identity: RepositoryIdentity, files: Dict[str, str]) -> DeploymentResult:
        logger.info(f"[GIT] Updating {len(files)} file(s) in {identity.name}")
        repo = await asyncio.to_thread(self._prepare_update, identity, files)
        await self._push(repo, "origin", repo.active_branch.name)
        flush_logs()
        return self.result_for(identity, repo.head.object.hexsha)

    # ------------------------- pages -------------------------
    async def activate_static_hosting(self, identity: RepositoryIdentity):
        pages_api = f"/repos/{identity.owner}/{identity.name}/pages"
        payload = {"source": {"branch": self.branch, "path": "/"}}

        async def attempt() -> httpx.Response:
            resp = await self._request("POST", pages_api, json=payload)
            if resp.status_code == 422 and "must exist" in resp.text:
                raise _BranchNotReady(resp.text)
            return resp

        try:
            resp = await retry(
                attempt,
                PAGES_ACTIVATION_ATTEMPTS,
                PAGES_ACTIVATION_DELAY,
                label=f"enable pages for {identity.name}",
                sleep=self.sleep,
            )
        except Exception as e:
            logger.error(f"[PAGES] Could not enable Pages for {identity.name}: {e}")
            return
        if resp.status_code == 409:
            logger.info(f"[PAGES] Pages already enabled for {identity.name}")
        elif resp.is_success:
            logger.info(f"[PAGES] Pages enabled for {identity.name}")
        else:
            logger.error(f"[PAGES] Enabling Pages failed ({resp.status_code}): {resp.text}")

    async def await_live_deployment(
        self,
        identity: RepositoryIdentity,
        commit_sha: Optional[str] = None,
        max_checks: int = 15,
    ) -> bool:
        """Poll the latest Pages build until it reports ``built``.

        When ``commit_sha`` is given, only a build of that commit counts. Returns
        False once ``max_checks`` polls pass without success; that is not an error.
        """
        builds_api = f"/repos/{identity.owner}/{identity.name}/pages/builds/latest"
        logger.info(f"[PAGES] Waiting for {identity.name} to deploy {commit_sha or 'latest commit'}")
        for check in range(1, max_checks + 1):
            try:
                resp = await self._request("GET", builds_api)
                resp.raise_for_status()
                build = resp.json()
                if not isinstance(build, dict):
                    raise ValueError(f"unexpected build payload: {build!r}")
                status = build.get("status")
                built_commit = build.get("commit")
                logger.info(f"[PAGES] Check {check}/{max_checks}: status={status} commit={built_commit}")
                if status == "built" and (commit_sha is None or built_commit == commit_sha):
                    logger.info(f"[PAGES] Built, waiting {PAGES_BUILT_WAIT}s for CDN propagation")
                    await self.sleep(PAGES_BUILT_WAIT)
                    return True
                if status == "built":
                    logger.info("[PAGES] Latest build is for an older commit")
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[PAGES] Check {check} failed: {e}")
            await self.sleep(PAGES_POLL_INTERVAL)

        logger.warning(f"[PAGES] Could not confirm deployment, adding {PAGES_SAFETY_WAIT}s safety wait")
        await self.sleep(PAGES_SAFETY_WAIT)
        return False
