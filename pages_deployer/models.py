import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class Attachment(BaseModel):
    name: str
    url: str  # data URI or http(s) url


class TaskRequest(BaseModel):
    email: str
    secret: str
    task: Optional[str]  # may be null on round 2
    round: int
    nonce: str
    brief: str
    checks: List[str]
    evaluation_url: str
    attachments: List[Attachment]

    @field_validator("round")
    @classmethod
    def _round_is_supported(cls, value: int) -> int:
        if value not in (1, 2):
            raise ValueError("Round must be 1 or 2")
        return value

    @field_validator("email")
    @classmethod
    def _email_looks_valid(cls, value: str) -> str:
        if not EMAIL_RE.match(value):
            raise ValueError("Invalid email format")
        return value

    def for_log(self) -> dict:
        data = self.model_dump()
        data["secret"] = "***HIDDEN***"
        data["brief"] = (self.brief[:250] + "...") if len(self.brief) > 250 else self.brief
        data["attachments"] = [a.name for a in self.attachments]
        return data


class RepositoryIdentity(BaseModel):
    owner: str
    name: str

    def repo_url(self, web_base: str = "https://github.com") -> str:
        return f"{web_base.rstrip('/')}/{self.owner}/{self.name}"

    def pages_url(self, pages_base: Optional[str] = None) -> str:
        base = pages_base or f"https://{self.owner}.github.io"
        return f"{base.rstrip('/')}/{self.name}/"


class DeploymentResult(BaseModel):
    repo_url: str
    commit_sha: str
    pages_url: str


class EvaluationPayload(DeploymentResult):
    email: str
    task: str
    round: int
    nonce: str


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskRecord(BaseModel):
    status: TaskStatus
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None
    result: Optional[DeploymentResult] = None
