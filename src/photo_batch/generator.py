from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from photo_batch.config import settings
from photo_batch.errors import PermanentGeneratorFailure, TransientGeneratorFailure

_TRANSIENT_HTTP = {408, 425, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class GenerationResult:
    ok: bool
    artifact: Any = None
    accepted: bool = False
    error: str | None = None
    code: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls, artifact: Any) -> "GenerationResult":
        return cls(ok=True, artifact=artifact)

    @classmethod
    def pending_callback(cls) -> "GenerationResult":
        return cls(ok=True, accepted=True)

    @classmethod
    def transient(cls, code: str, error: str) -> "GenerationResult":
        return cls(ok=False, error=error, code=code, retryable=True)

    @classmethod
    def permanent(cls, code: str, error: str) -> "GenerationResult":
        return cls(ok=False, error=error, code=code, retryable=False)


def build_request(job: dict) -> dict:
    base = settings.public_base_url.rstrip("/")
    return {
        "job_id": job["job_id"],
        "user_id": job["user_id"],
        "type": job["type"],
        "batch_size": job["batch_size"],
        "payload": job["payload"],
        "callback_url": f"{base}/callback/task-complete",
        "failure_callback_url": f"{base}/callback/task-failed",
    }


def interpret_response(data: Any) -> GenerationResult:
    if not isinstance(data, dict) or "success" not in data:
        return GenerationResult.transient("MALFORMED_RESPONSE", f"malformed generator response: {str(data)[:200]}")
    if data["success"]:
        if data.get("accepted"):
            return GenerationResult.pending_callback()
        artifact = data.get("data")
        if artifact is None:
            artifact = {k: v for k, v in data.items() if k != "success"}
        return GenerationResult.success(artifact)

    error = str(data.get("error") or "generator reported failure")
    if data.get("retryable"):
        return GenerationResult.transient(TransientGeneratorFailure.code, error)
    return GenerationResult.permanent(PermanentGeneratorFailure.code, error)


class GeneratorClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.generator_base_url).rstrip("/")
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.generator_timeout_sec
        self.transport = transport

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self.transport)

    def url_for(self, job_type: str) -> str:
        return f"{self.base_url}/{settings.webhook_for(job_type)}"

    def _post(self, url: str, request: dict) -> Any:
        try:
            with self._client(self.timeout_sec) as client:
                r = client.post(url, json=request, headers={"Content-Type": "application/json"})
                r.raise_for_status()
                return r.json()
        except httpx.TimeoutException as exc:
            raise TransientGeneratorFailure(
                f"generator timed out after {self.timeout_sec}s: {exc}", code="GENERATOR_TIMEOUT"
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in _TRANSIENT_HTTP or status >= 500:
                raise TransientGeneratorFailure(f"transient_http_{status}", code=f"HTTP_{status}") from exc
            raise PermanentGeneratorFailure(f"http_{status}: {exc.response.text[:300]}", code=f"HTTP_{status}") from exc
        except httpx.HTTPError as exc:
            raise TransientGeneratorFailure(str(exc) or exc.__class__.__name__, code="GENERATOR_UNREACHABLE") from exc
        except ValueError as exc:
            raise TransientGeneratorFailure(f"invalid generator json: {exc}", code="MALFORMED_RESPONSE") from exc

    def generate(self, request: dict) -> GenerationResult:
        """One attempt against the generator. Never raises for remote failures."""
        url = self.url_for(request["type"])
        try:
            data = self._post(url, request)
        except TransientGeneratorFailure as exc:
            return GenerationResult.transient(exc.code, str(exc))
        except PermanentGeneratorFailure as exc:
            return GenerationResult.permanent(exc.code, str(exc))

        logger.bind(job_id=request["job_id"]).debug(f"generator responded for {url}")
        return interpret_response(data)

    def health(self) -> dict:
        try:
            with self._client(5.0) as client:
                r = client.get(f"{self.base_url}/health-check")
            return {"available": r.status_code < 500, "status": r.status_code}
        except httpx.HTTPError as exc:
            return {"available": False, "error": str(exc)}
