import asyncio
import json
from typing import Optional

from .errors import TaskValidationError
from .github import GitHubClient
from .logs import flush_logs, logger
from .models import (
    DeploymentResult,
    EvaluationPayload,
    RepositoryIdentity,
    TaskRecord,
    TaskRequest,
    TaskStatus,
)
from .naming import canonicalize
from .notifier import EvaluationNotifier
from .retry import Sleep
from .runner import BackgroundRunner
from .tracking import InMemoryStore, KeyValueStore

ROUND1_SETTLE_SECONDS = 10
ROUND2_SETTLE_SECONDS = 20

ACCEPTED = "accepted"
DUPLICATE = "duplicate"


class DeploymentOrchestrator:
    """Runs a task request from acceptance to the evaluation callback.

    ``accept`` does the synchronous part (name resolution, duplicate check) and
    hands the rest to the background runner. Failures in the background are
    logged and written to the task record, nothing is raised to the caller.

    Two rounds for the same repository submitted at the same time are not
    serialized; a round 2 update can race a round 1 publish.
    """

    def __init__(
        self,
        github: GitHubClient,
        generator,
        notifier: EvaluationNotifier,
        runner: Optional[BackgroundRunner] = None,
        tasks: Optional[KeyValueStore] = None,
        task_names: Optional[KeyValueStore] = None,
        pages_max_checks: int = 15,
        sleep: Sleep = asyncio.sleep,
    ):
        self.github = github
        self.generator = generator
        self.notifier = notifier
        self.runner = runner or BackgroundRunner()
        self.tasks = tasks if tasks is not None else InMemoryStore()
        self.task_names = task_names if task_names is not None else InMemoryStore()
        self.pages_max_checks = pages_max_checks
        self.sleep = sleep

    # ------------------------- synchronous part -------------------------
    def resolve_task_name(self, request: TaskRequest) -> str:
        task = (request.task or "").strip()
        if request.round == 1:
            if not task:
                raise TaskValidationError("Task name is required for Round 1")
            return task

        if task:
            logger.info(f"[TASK] Using provided task name for Round 2: {task}")
            return task
        tracked = self.task_names.get(request.email)
        if not tracked:
            raise TaskValidationError(
                "Cannot determine repository name for Round 2. "
                f"Task field is empty and no previous repository found for email {request.email}. "
                "Please provide the task/repository name in the request."
            )
        logger.info(f"[TASK] Using tracked repository for Round 2: {tracked}")
        return tracked

    def resolve_repo_name(self, task_name: str) -> str:
        repo_name = canonicalize(task_name)
        if not repo_name:
            raise TaskValidationError(f"Task name {task_name!r} does not produce a valid repository name")
        return repo_name

    async def accept(self, request: TaskRequest) -> str:
        task_name = self.resolve_task_name(request)
        repo_name = self.resolve_repo_name(task_name)
        if request.round == 1:
            self.task_names.set(request.email, task_name)
            logger.info(f"[TASK] Repository tracked for {request.email}: {task_name}")
        key = (repo_name, request.round)
        if not self.tasks.set_if_absent(key, TaskRecord(status=TaskStatus.PROCESSING)):
            logger.warning(f"[TASK] Duplicate task request detected: {repo_name} round {request.round}")
            return DUPLICATE

        self.runner.submit(self.process(request, task_name, repo_name), name=f"{repo_name}-r{request.round}")
        logger.info(f"[TASK] Accepted {repo_name} round {request.round}, processing in background")
        flush_logs()
        return ACCEPTED

    # ------------------------- background part -------------------------
    async def process(self, request: TaskRequest, task_name: str, repo_name: str):
        key = (repo_name, request.round)
        logger.info(f"[PROCESS START] Task: {task_name} Repo: {repo_name} Round: {request.round}")
        flush_logs()
        try:
            if request.round == 1:
                result = await self.run_round1(request, task_name, repo_name)
            else:
                result = await self.run_round2(request, task_name, repo_name)

            payload = self.build_payload(request, task_name, result)
            logger.info("[NOTIFY] Evaluation payload:\n" + json.dumps(payload.model_dump(), indent=2))
            await self.notifier.notify(request.evaluation_url, payload)

            self.tasks.set(key, TaskRecord(status=TaskStatus.COMPLETED, result=result))
            logger.info(f"[DEPLOYMENT] Success. Repo: {result.repo_url} Pages: {result.pages_url}")
        except Exception as exc:
            logger.exception(f"[CRITICAL FAILURE] Task {task_name} round {request.round} failed: {exc}")
            self.tasks.set(key, TaskRecord(status=TaskStatus.FAILED, error=str(exc)))
        finally:
            logger.info(f"[PROCESS END] Task: {task_name} Round: {request.round}")
            flush_logs()

    async def run_round1(self, request: TaskRequest, task_name: str, repo_name: str) -> DeploymentResult:
        files = await self.generator.generate(request, task_name=task_name)
        identity = await self.github.ensure_repository(repo_name)
        result = await self.github.publish(identity, files)
        result = await self._confirm_commit(identity, result)
        await self.github.activate_static_hosting(identity)
        await self.github.await_live_deployment(identity, result.commit_sha, self.pages_max_checks)
        logger.info(f"[DEPLOYMENT] Settling {ROUND1_SETTLE_SECONDS}s for initial Pages deployment")
        await self.sleep(ROUND1_SETTLE_SECONDS)
        return result

    async def run_round2(self, request: TaskRequest, task_name: str, repo_name: str) -> DeploymentResult:
        identity = self.github.identity(repo_name)
        existing_html = await self._existing_index(identity)
        files = await self.generator.generate(request, task_name=task_name, existing_html=existing_html)
        result = await self.github.update(identity, files)
        result = await self._confirm_commit(identity, result)
        await self.github.await_live_deployment(identity, result.commit_sha, self.pages_max_checks)
        logger.info(f"[DEPLOYMENT] Settling {ROUND2_SETTLE_SECONDS}s for CDN cache invalidation")
        await self.sleep(ROUND2_SETTLE_SECONDS)
        return result

    async def _existing_index(self, identity: RepositoryIdentity) -> Optional[str]:
        try:
            return await self.github.read_file(identity, "index.html")
        except Exception as e:
            logger.warning(f"[WORKFLOW] Could not read existing index.html for {identity.name}: {e}")
            return None

    async def _confirm_commit(self, identity: RepositoryIdentity, result: DeploymentResult) -> DeploymentResult:
        # the pushed hash is reported even when the commits API lags behind
        try:
            remote_sha = await self.github.latest_commit_hash(identity)
        except Exception as e:
            logger.warning(f"[GIT] Could not read latest commit of {identity.name}, using pushed {result.commit_sha}: {e}")
            return result
        if remote_sha != result.commit_sha:
            logger.warning(
                f"[GIT] Remote head {remote_sha} differs from pushed {result.commit_sha}, keeping pushed commit"
            )
        else:
            logger.info(f"[GIT] Remote head confirmed at {remote_sha}")
        return result

    @staticmethod
    def build_payload(request: TaskRequest, task_name: str, result: DeploymentResult) -> EvaluationPayload:
        return EvaluationPayload(
            email=request.email,
            task=task_name,
            round=request.round,
            nonce=request.nonce,
            repo_url=result.repo_url,
            commit_sha=result.commit_sha,
            pages_url=result.pages_url,
        )

    def snapshot(self) -> list:
        return [
            {"repo": repo, "round": rnd, **record.model_dump(mode="json")}
            for (repo, rnd), record in self.tasks.items()
        ]
