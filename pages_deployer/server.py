import os
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, settings as default_settings
from .errors import AuthError, TaskValidationError
from .generator import CodeGenerator
from .github import GitHubClient
from .llm import GeminiClient
from .logs import flush_logs, logger, setup_logging
from .models import TaskRequest
from .notifier import EvaluationNotifier
from .orchestrator import DeploymentOrchestrator
from .runner import BackgroundRunner

SERVICE_NAME = "Pages Deployer"


def verify_secret(secret_from_request: str, expected: str) -> bool:
    if not expected:
        logger.error("STUDENT_SECRET not configured; rejecting request")
        return False
    return secrets.compare_digest(secret_from_request.encode(), expected.encode())


def build_orchestrator(settings: Settings) -> DeploymentOrchestrator:
    llm = GeminiClient(settings)
    return DeploymentOrchestrator(
        github=GitHubClient(settings),
        generator=CodeGenerator(llm, license_holder=settings.GITHUB_USERNAME),
        notifier=EvaluationNotifier(
            max_attempts=settings.NOTIFY_MAX_RETRIES,
            initial_delay=settings.NOTIFY_INITIAL_DELAY,
            timeout=settings.NOTIFY_TIMEOUT,
        ),
        runner=BackgroundRunner(settings.MAX_CONCURRENT_TASKS),
        pages_max_checks=settings.PAGES_MAX_CHECKS,
    )


def _error_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        if err.get("type") == "missing":
            parts.append(f"Missing required field: {loc}")
        else:
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[DeploymentOrchestrator] = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.LOG_FILE_PATH, settings.LOG_LEVEL)
    orchestrator = orchestrator or build_orchestrator(settings)

    app = FastAPI(title=SERVICE_NAME, description="LLM-driven single-page app generation and GitHub Pages deployment")
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = _error_message(exc)
        logger.error(f"[TASK] Request validation failed: {message}")
        return JSONResponse(status_code=500, content={"error": message})

    @app.exception_handler(TaskValidationError)
    async def task_validation_handler(request: Request, exc: TaskValidationError):
        logger.error(f"[TASK] Task rejected: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(AuthError)
    async def auth_handler(request: Request, exc: AuthError):
        client = request.client.host if request.client else "unknown"
        logger.warning(f"[TASK] Unauthorized attempt from {client}: {exc}")
        return JSONResponse(status_code=401, content={"error": str(exc)})

    @app.post(settings.API_ENDPOINT_PATH, status_code=200)
    async def receive_task(task_data: TaskRequest):
        logger.info(f"[TASK] Received task request: {task_data.for_log()}")
        if not verify_secret(task_data.secret, settings.STUDENT_SECRET):
            raise AuthError("Invalid secret")
        status = await orchestrator.accept(task_data)
        flush_logs()
        return {"status": status}

    @app.get("/")
    async def root():
        return {"message": f"{SERVICE_NAME} running. POST {settings.API_ENDPOINT_PATH} to submit."}

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
        }

    @app.get("/status")
    async def get_status():
        return {
            "tasks": orchestrator.snapshot(),
            "running_background_tasks": orchestrator.runner.running,
        }

    @app.get("/logs")
    async def get_logs(lines: int = Query(200, ge=1, le=5000)):
        path = settings.LOG_FILE_PATH
        if not os.path.exists(path):
            return PlainTextResponse("Log file not found.", status_code=404)
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            file_size = f.tell()
            buffer = b""
            block_size = 4096
            # read backwards until enough lines are buffered
            while file_size > 0 and buffer.count(b"\n") <= lines:
                read_size = min(block_size, file_size)
                file_size -= read_size
                f.seek(file_size)
                buffer = f.read(read_size) + buffer
        text = buffer.decode(errors="ignore").splitlines()
        return PlainTextResponse("\n".join(text[-lines:]))

    @app.on_event("startup")
    async def startup_event():
        missing = settings.missing_required()
        if missing:
            logger.error(f"[STARTUP] Missing required settings: {', '.join(missing)}")
        if not settings.GEMINI_API_KEY:
            logger.warning("[STARTUP] No LLM API key configured; generation will use the fallback page")
        logger.info(f"[STARTUP] Endpoint: {settings.API_ENDPOINT_PATH} GitHub user: {settings.GITHUB_USERNAME or '-'}")
        flush_logs()

    @app.on_event("shutdown")
    async def shutdown_event():
        await orchestrator.runner.shutdown()
        for component in (orchestrator.github, orchestrator.generator, orchestrator.notifier):
            aclose = getattr(component, "aclose", None)
            if aclose:
                await aclose()
        llm = getattr(orchestrator.generator, "llm", None)
        if llm is not None and hasattr(llm, "aclose"):
            await llm.aclose()
        flush_logs()

    return app


app = create_app()
