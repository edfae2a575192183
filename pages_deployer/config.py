from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    GEMINI_API_KEY: str = Field("", env="GEMINI_API_KEY")
    GEMINI_MODEL: str = Field("gemini-2.0-flash", env="GEMINI_MODEL")
    GEMINI_API_BASE: str = Field("https://generativelanguage.googleapis.com/v1beta", env="GEMINI_API_BASE")
    GITHUB_TOKEN: str = Field("", env="GITHUB_TOKEN")
    GITHUB_USERNAME: str = Field("", env="GITHUB_USERNAME")
    STUDENT_EMAIL: str = Field("", env="STUDENT_EMAIL")
    STUDENT_SECRET: str = Field("", env="STUDENT_SECRET")
    API_ENDPOINT_PATH: str = Field("/api/task", env="API_ENDPOINT_PATH")
    PORT: int = Field(3000, env="PORT")
    LOG_FILE_PATH: str = Field("logs/app.log", env="LOG_FILE_PATH")
    LOG_LEVEL: str = Field("INFO", env="LOG_LEVEL")
    MAX_CONCURRENT_TASKS: int = Field(4, env="MAX_CONCURRENT_TASKS")
    GITHUB_API_BASE: str = Field("https://api.github.com", env="GITHUB_API_BASE")
    GITHUB_WEB_BASE: str = Field("https://github.com", env="GITHUB_WEB_BASE")
    GITHUB_PAGES_BASE: Optional[str] = None
    DEFAULT_BRANCH: str = Field("main", env="DEFAULT_BRANCH")
    REPOS_DIR: str = Field("generated-repos", env="REPOS_DIR")
    NOTIFY_MAX_RETRIES: int = Field(5, env="NOTIFY_MAX_RETRIES")
    NOTIFY_INITIAL_DELAY: float = Field(1, env="NOTIFY_INITIAL_DELAY")
    NOTIFY_TIMEOUT: float = Field(30, env="NOTIFY_TIMEOUT")
    PAGES_MAX_CHECKS: int = Field(15, env="PAGES_MAX_CHECKS")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def pages_base(self) -> str:
        if self.GITHUB_PAGES_BASE:
            return self.GITHUB_PAGES_BASE.rstrip("/")
        return f"https://{self.GITHUB_USERNAME}.github.io"

    @property
    def commit_email(self) -> str:
        return self.STUDENT_EMAIL or f"{self.GITHUB_USERNAME}@users.noreply.github.com"

    def missing_required(self) -> List[str]:
        required = ("STUDENT_SECRET", "GITHUB_TOKEN", "GITHUB_USERNAME")
        return [name for name in required if not getattr(self, name)]


settings = Settings()
