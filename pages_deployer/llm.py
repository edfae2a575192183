import asyncio
from typing import List, Optional, Sequence

import httpx

from .config import Settings
from .errors import DeployerError
from .logs import logger
from .retry import Sleep, retry

LLM_ATTEMPTS = 3
LLM_INITIAL_DELAY = 1


class GeminiClient:
    """Single-shot text generation against the Gemini REST API."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        timeout: float = 120,
    ):
        self.settings = settings
        self.http = http or httpx.AsyncClient(timeout=timeout)
        self.sleep = sleep

    @property
    def url(self) -> str:
        base = self.settings.GEMINI_API_BASE.rstrip("/")
        return f"{base}/models/{self.settings.GEMINI_MODEL}:generateContent"

    async def aclose(self):
        await self.http.aclose()

    async def generate_text(self, prompt: str, parts: Sequence[dict] = ()) -> str:
        if not self.settings.GEMINI_API_KEY:
            raise DeployerError("GEMINI_API_KEY not configured.")
        contents: List[dict] = [{"parts": list(parts) + [{"text": prompt}]}]
        payload = {"contents": contents}

        async def call() -> str:
            resp = await self.http.post(
                self.url,
                params={"key": self.settings.GEMINI_API_KEY},
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
            candidates = resp.json().get("candidates", [])
            if not candidates:
                raise ValueError("No candidates in LLM response")
            content_parts = candidates[0].get("content", {}).get("parts", [])
            text = "".join(p.get("text", "") for p in content_parts)
            if not text:
                raise ValueError("No text in LLM response")
            return text

        logger.info(f"[LLM] Calling {self.settings.GEMINI_MODEL} (prompt chars: {len(prompt)}, parts: {len(parts)})")
        text = await retry(call, LLM_ATTEMPTS, LLM_INITIAL_DELAY, label="gemini generateContent", sleep=self.sleep)
        logger.info(f"[LLM] Generated {len(text)} chars")
        return text
