# printflow/services/generation_client.py
from dataclasses import dataclass, field
from typing import List

from printflow.utils.http import send
from printflow.utils.logging import get_logger
from printflow.utils.settings import (
    GENERATION_API_KEY,
    GENERATION_SERVICE_URL,
    GENERATION_TIMEOUT_SECONDS,
)

logger = get_logger(__name__)


@dataclass
class GenerationStatus:
    """One poll of a generation job."""

    stage: str
    state: str = "running"  # running | succeeded | failed
    progress: int = 0
    message: str | None = None
    failure_code: str | None = None
    retryable: bool = False
    preview_url: str | None = None
    mockup_urls: List[str] = field(default_factory=list)
    notes: str | None = None

    @property
    def done(self) -> bool:
        return self.state == "succeeded"

    @property
    def failed(self) -> bool:
        return self.state == "failed"


class GenerationClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = GENERATION_TIMEOUT_SECONDS,
    ):
        self.base_url = (base_url or GENERATION_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else GENERATION_API_KEY
        self.timeout = timeout

    def _headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def start_generation(
        self,
        prompt: str,
        style_hints: List[str],
        locale: str,
        idempotency_key: str,
    ) -> str:
        url = f"{self.base_url}/jobs"
        logger.info(f"GenerationClient POST {url} key={idempotency_key}")
        resp = send(
            "POST",
            url,
            timeout=self.timeout,
            headers=self._headers(idempotency_key),
            json={"prompt": prompt, "style_hints": style_hints, "locale": locale},
        )
        return str(resp.json()["job_id"])

    def poll(self, job_handle: str) -> GenerationStatus:
        url = f"{self.base_url}/jobs/{job_handle}"
        resp = send("GET", url, timeout=self.timeout, headers=self._headers())
        data = resp.json()
        failure = data.get("failure") or {}
        assets = data.get("assets") or {}
        return GenerationStatus(
            stage=data.get("stage", "generating_brief"),
            state=data.get("state", "running"),
            progress=int(data.get("progress") or 0),
            message=data.get("message"),
            failure_code=failure.get("code"),
            retryable=bool(failure.get("retryable", False)),
            preview_url=assets.get("preview_url"),
            mockup_urls=list(assets.get("mockup_urls") or []),
            notes=assets.get("notes"),
        )
