import asyncio
from typing import Optional

import httpx

from .logs import flush_logs, logger
from .models import EvaluationPayload
from .retry import Sleep, retry


class EvaluationNotifier:
    """POSTs the completion payload to the evaluation callback URL."""

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 5,
        initial_delay: float = 1,
        timeout: float = 30,
        sleep: Sleep = asyncio.sleep,
    ):
        self.http = http or httpx.AsyncClient()
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.timeout = timeout
        self.sleep = sleep

    async def aclose(self):
        await self.http.aclose()

    async def notify(self, evaluation_url: str, payload: EvaluationPayload) -> httpx.Response:
        body = payload.model_dump()
        logger.info(f"[NOTIFY] Notifying evaluation server at {evaluation_url} (task={payload.task} round={payload.round})")

        async def post() -> httpx.Response:
            resp = await self.http.post(evaluation_url, json=body, timeout=self.timeout)
            # any non-2xx is worth another attempt
            resp.raise_for_status()
            return resp

        try:
            resp = await retry(
                post,
                self.max_attempts,
                self.initial_delay,
                label=f"notify {evaluation_url}",
                sleep=self.sleep,
            )
        except Exception:
            logger.error(f"[NOTIFY] Failed to notify evaluation server at {evaluation_url}")
            flush_logs()
            raise
        logger.info(f"[NOTIFY] Notification succeeded: {resp.status_code}")
        flush_logs()
        return resp
