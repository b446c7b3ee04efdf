from typing import Optional

from pydantic import BaseModel, Field, field_validator


class StatusPollingConfig(BaseModel):
    initial_delay: float = 1.0
    max_delay: float = 32.0
    backoff_factor: float = 2.0
    max_attempts: int = 10
    timeout: float = 300.0  # 5 minutes
    jitter: bool = True


class ClientConfig(BaseModel):
    base_url: str
    token: Optional[str] = None
    user_agent: str = "Job Queue Python Client"
    connect_timeout: float = 10.0
    timeout: float = 120.0
    polling: StatusPollingConfig = Field(default_factory=StatusPollingConfig)

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("base_url must not be empty")
        return value

    def headers(self) -> dict:
        headers = {
            "User-Agent": self.user_agent,
            "Content-Type": "application/json",
        }
        if self.token is not None:
            headers["X-JobQueue-InternalApi-Token"] = self.token
        return headers
