import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

import requests

if TYPE_CHECKING:
    from .quota import QuotaState

logger = logging.getLogger(__name__)

YOUTUBE_API_BASE_URL = "https://www.googleapis.com/youtube/v3"
USER_AGENT = "YouTube-API-Server/1.0"
DEFAULT_TIMEOUT_SECONDS = 15
PROBE_TIMEOUT_SECONDS = 5
PROBE_VIDEO_ID = "dQw4w9WgXcQ"
EXCERPT_LIMIT = 200
QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}


class UpstreamFailureKind(str, Enum):
    TIMEOUT = "timeout"
    NON_JSON_RESPONSE = "non_json_response"
    MALFORMED_JSON = "malformed_json"
    QUOTA_EXCEEDED = "quota_exceeded"
    UPSTREAM_ERROR = "upstream_error"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class UpstreamRequestSpec:
    resource: str
    params: dict[str, Any] = field(default_factory=dict)
    description: str = "API call"
    timeout: float | None = None


@dataclass
class UpstreamSuccess:
    body: Any
    ok = True


@dataclass
class UpstreamFailure:
    kind: UpstreamFailureKind
    message: str
    status_code: int | None = None
    ok = False


UpstreamResult = Union[UpstreamSuccess, UpstreamFailure]


@dataclass
class UpstreamErrorSignal:
    """
    Error details pulled out of a YouTube error payload:

        {"error": {"code": 403, "message": "...", "errors": [{"reason": "quotaExceeded"}]}}

    present=False means the body carried no recognizable "error" object.
    """

    present: bool
    message: str | None = None
    code: int | None = None
    reasons: tuple[str, ...] = ()

    @property
    def quota_exceeded(self) -> bool:
        return any(reason in QUOTA_REASONS for reason in self.reasons)

    @classmethod
    def absent(cls) -> "UpstreamErrorSignal":
        return cls(present=False)

    @classmethod
    def from_payload(cls, payload: Any) -> "UpstreamErrorSignal":
        if not isinstance(payload, dict):
            return cls.absent()
        error = payload.get("error")
        if not isinstance(error, dict):
            return cls.absent()

        message = error.get("message")
        code = error.get("code")
        reasons = []
        errors = error.get("errors")
        if isinstance(errors, list):
            for item in errors:
                if isinstance(item, dict) and isinstance(item.get("reason"), str):
                    reasons.append(item["reason"])
        return cls(
            present=True,
            message=message if isinstance(message, str) and message else None,
            code=code if isinstance(code, int) else None,
            reasons=tuple(reasons),
        )


def excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    return (text or "")[:limit]


class YouTubeClient:
    """
    Single-shot calls against the YouTube Data API.

    Every transport or parse problem comes back as an UpstreamFailure; nothing
    is retried here. A quota signal flips the shared QuotaState right away.
    """

    def __init__(
        self,
        api_key: str,
        quota_state: "QuotaState",
        base_url: str = YOUTUBE_API_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.api_key = api_key
        self.quota_state = quota_state
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def call(self, spec: UpstreamRequestSpec) -> UpstreamResult:
        url = f"{self.base_url}/{spec.resource}"
        params = dict(spec.params)
        params["key"] = self.api_key
        timeout = spec.timeout if spec.timeout is not None else self.timeout
        logger.info(f"Making {spec.description}: {url} {spec.params}")

        try:
            response = requests.get(
                url,
                params=params,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                timeout=timeout,
            )
        except requests.Timeout:
            return self._fail(spec, UpstreamFailureKind.TIMEOUT, f"Request timed out after {timeout}s")
        except requests.RequestException as e:
            return self._fail(spec, UpstreamFailureKind.TRANSPORT_ERROR, f"Transport error: {e}")

        content_type = (response.headers.get("content-type") or "").lower()
        if "application/json" not in content_type:
            return self._fail(
                spec,
                UpstreamFailureKind.NON_JSON_RESPONSE,
                f"Non-JSON response: {excerpt(response.text)}",
                response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            return self._fail(
                spec,
                UpstreamFailureKind.MALFORMED_JSON,
                f"Invalid JSON: {excerpt(response.text)}",
                response.status_code,
            )

        if not response.ok:
            signal = UpstreamErrorSignal.from_payload(data)
            if signal.quota_exceeded:
                self.quota_state.mark_exhausted()
                return self._fail(
                    spec,
                    UpstreamFailureKind.QUOTA_EXCEEDED,
                    signal.message or "YouTube API quota exceeded",
                    response.status_code,
                )
            return self._fail(
                spec,
                UpstreamFailureKind.UPSTREAM_ERROR,
                signal.message or f"YouTube API error: {response.status_code}",
                response.status_code,
            )

        return UpstreamSuccess(body=data)

    def _fail(
        self,
        spec: UpstreamRequestSpec,
        kind: UpstreamFailureKind,
        message: str,
        status_code: int | None = None,
    ) -> UpstreamFailure:
        logger.warning(f"{spec.description} failed ({kind.value}): {message}")
        return UpstreamFailure(kind=kind, message=message, status_code=status_code)

    def search(self, query: str, max_results: int) -> UpstreamResult:
        return self.call(
            UpstreamRequestSpec(
                resource="search",
                params={"part": "snippet", "q": query, "type": "video", "maxResults": max_results},
                description="YouTube search",
            )
        )

    def video(self, video_id: str) -> UpstreamResult:
        return self.call(
            UpstreamRequestSpec(
                resource="videos",
                params={"part": "snippet,contentDetails,statistics", "id": video_id},
                description="Video details",
            )
        )

    def channel(self, channel_id: str) -> UpstreamResult:
        return self.call(
            UpstreamRequestSpec(
                resource="channels",
                params={"part": "snippet", "id": channel_id},
                description="Channel details",
            )
        )

    def probe(self) -> UpstreamResult:
        return self.call(
            UpstreamRequestSpec(
                resource="videos",
                params={"part": "id", "id": PROBE_VIDEO_ID},
                description="Quota probe",
                timeout=PROBE_TIMEOUT_SECONDS,
            )
        )
