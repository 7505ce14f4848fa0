"""Kie.ai Veo rendering provider.

Submits one unit per job to the Kie.ai Veo API and polls the record-info
endpoint until the job settles. Kie reports failures two ways: as HTTP error
statuses, and as HTTP 200 responses whose JSON ``code`` field is not 200.
Both are classified into ErrorKind here.

Architecture Pattern:
    Simple HTTP client wrapper - no retry logic (handled by the row executor)
    Async-only interface using httpx.AsyncClient

API Reference:
    POST {base_url}/api/v1/veo/generate            → {"code": 200, "data": {"taskId": ...}}
    GET  {base_url}/api/v1/veo/record-info?taskId= → {"code": 200, "data": {"successFlag": 0|1|2|3,
                                                     "response": {"resultUrls": [...]}, ...}}

Usage:
    provider = KieProvider(api_key=get_kie_api_key())
    job_id = await provider.submit(request)
    status = await provider.poll(job_id)
    await provider.close()
"""

import uuid
from typing import Any

import httpx

from bulkgen.config import DEFAULT_KIE_BASE_URL
from bulkgen.exceptions import ErrorKind
from bulkgen.providers.base import (
    ProviderError,
    ProviderJobState,
    ProviderJobStatus,
    RenderingProvider,
    UnitRenderRequest,
    classify_provider_error,
)
from bulkgen.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_MODEL = "veo3_fast"
VALID_ASPECT_RATIOS = ("16:9", "9:16", "Auto")
DEFAULT_ASPECT_RATIO = "16:9"

# successFlag values reported by record-info
SUCCESS_FLAG_GENERATING = 0
SUCCESS_FLAG_SUCCESS = 1


def row_seed(row_id: uuid.UUID) -> int:
    """Deterministic Veo seed (10000-99999) shared by every unit of a row.

    Keeping the seed stable across a row's scenes keeps voice and visuals
    consistent from one unit to the next.
    """
    return (row_id.int % 90000) + 10000


class KieProvider(RenderingProvider):
    """RenderingProvider backed by the Kie.ai Veo API.

    Attributes:
        base_url: API root (KIE_BASE_URL)
        callback_url: Optional URL Kie calls when a job settles
        client: Async HTTP client for making requests
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_KIE_BASE_URL,
        callback_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @property
    def name(self) -> str:
        return "kie"

    def build_payload(self, request: UnitRenderRequest) -> dict[str, Any]:
        """Translate a unit request into the Veo generate payload."""
        options = request.options
        aspect_ratio = options.get("aspect_ratio") or DEFAULT_ASPECT_RATIO
        if aspect_ratio not in VALID_ASPECT_RATIOS:
            aspect_ratio = DEFAULT_ASPECT_RATIO

        payload: dict[str, Any] = {
            "prompt": request.prompt,
            "model": options.get("model") or DEFAULT_MODEL,
            "aspectRatio": aspect_ratio,
            "seeds": row_seed(request.row_id),
            "enableFallback": False,
            "enableTranslation": True,
        }
        image_url = options.get("image_url")
        if image_url:
            payload["generationType"] = "REFERENCE_2_VIDEO"
            payload["imageUrls"] = [image_url]
        else:
            payload["generationType"] = "TEXT_2_VIDEO"
        if options.get("watermark"):
            payload["watermark"] = options["watermark"]
        if self.callback_url:
            payload["callBackUrl"] = self.callback_url
        return payload

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, headers=self._headers, **kwargs)
        except httpx.TransportError as e:
            log.warning("kie_transport_error", url=url, error=str(e))
            raise ProviderError(ErrorKind.PROVIDER_ERROR, f"Kie.ai request failed: {e}") from e

        if response.status_code >= 400:
            message = response.text[:500]
            kind = classify_provider_error(response.status_code, message)
            log.warning("kie_http_error", url=url, status_code=response.status_code, error_kind=kind.value)
            raise ProviderError(kind, f"Kie.ai HTTP {response.status_code}: {message}", response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(ErrorKind.PROVIDER_ERROR, "Kie.ai returned a non-JSON response") from e

        code = body.get("code", 200)
        if code != 200:
            message = body.get("msg") or body.get("message") or "unknown error"
            kind = classify_provider_error(code, message)
            log.warning("kie_api_error", url=url, code=code, error_kind=kind.value, message=message)
            raise ProviderError(kind, f"Kie.ai error {code}: {message}", code)
        return body

    async def submit(self, request: UnitRenderRequest) -> str:
        body = await self._request("POST", "/api/v1/veo/generate", json=self.build_payload(request))
        data = body.get("data") or {}
        task_id = data.get("taskId") or data.get("task_id") or body.get("taskId")
        if not task_id:
            raise ProviderError(ErrorKind.PROVIDER_ERROR, "No task ID returned from Kie.ai")

        log.info(
            "kie_task_created",
            task_id=task_id,
            row_id=str(request.row_id),
            unit_ordinal=request.ordinal,
        )
        return str(task_id)

    async def poll(self, job_id: str) -> ProviderJobStatus:
        body = await self._request("GET", "/api/v1/veo/record-info", params={"taskId": job_id})
        return self.parse_record(job_id, body.get("data") or {})

    @staticmethod
    def parse_record(job_id: str, data: dict[str, Any]) -> ProviderJobStatus:
        """Normalise a record-info (or callback) ``data`` object.

        Kie nests fields inconsistently (``info``/``response``/top level), so
        each field is looked up in all known places.
        """
        info = data.get("info") or data
        response = data.get("response") or info.get("response") or {}
        result_urls = info.get("resultUrls") or response.get("resultUrls") or data.get("resultUrls") or []
        success_flag = info.get("successFlag", data.get("successFlag"))
        error_message = info.get("errorMessage") or data.get("errorMessage")
        state = str(info.get("state") or data.get("state") or "").lower()

        if success_flag == SUCCESS_FLAG_SUCCESS and result_urls:
            return ProviderJobStatus(
                job_id=job_id,
                state=ProviderJobState.SUCCEEDED,
                output_ref=result_urls[0],
                duration_seconds=response.get("duration") or info.get("duration"),
            )

        failed_flag = success_flag not in (None, SUCCESS_FLAG_GENERATING, SUCCESS_FLAG_SUCCESS)
        if error_message or state in ("failed", "error") or failed_flag:
            message = error_message or "Video generation failed"
            code = info.get("errorCode") or data.get("errorCode")
            return ProviderJobStatus(
                job_id=job_id,
                state=ProviderJobState.FAILED,
                error_kind=classify_provider_error(code if isinstance(code, int) else None, message),
                error_message=message,
            )

        # successFlag=0 with no error, or success without a URL yet
        return ProviderJobStatus(job_id=job_id, state=ProviderJobState.RUNNING)

    @staticmethod
    def parse_callback(body: dict[str, Any]) -> ProviderJobStatus | None:
        """Normalise a callBackUrl notification.

        Callbacks carry no successFlag: the envelope ``code`` is 200 on
        success (with result URLs) and anything else on failure.

        Returns:
            None when the body does not identify a task.
        """
        data = body.get("data") or {}
        job_id = data.get("taskId")
        if not job_id:
            return None

        code = body.get("code")
        if code == 200:
            info = data.get("info") or {}
            if info.get("resultUrls") or data.get("resultUrls"):
                return KieProvider.parse_record(job_id, {**data, "successFlag": SUCCESS_FLAG_SUCCESS})
            return ProviderJobStatus(job_id=job_id, state=ProviderJobState.RUNNING)

        message = body.get("msg") or "Video generation failed"
        return ProviderJobStatus(
            job_id=job_id,
            state=ProviderJobState.FAILED,
            error_kind=classify_provider_error(code if isinstance(code, int) else None, message),
            error_message=message,
        )

    async def close(self) -> None:
        """Close HTTP client connection."""
        await self.client.aclose()
