import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from .cache_store import TTLCacheStore
from .quota import QuotaState
from .upstream import UpstreamFailure, UpstreamFailureKind, UpstreamResult, YouTubeClient

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10
MAX_RESULTS_CEILING = 50
LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")

QUOTA_EXCEEDED_ERROR = "YouTube API quota exceeded"
QUOTA_EXCEEDED_MESSAGE = "The server has reached its YouTube API request limit. Cached data may be older."
QUOTA_RETRY_AFTER = "Try again in a few hours"

FAILURE_STATUS_CODES = {
    UpstreamFailureKind.TIMEOUT: 408,
    UpstreamFailureKind.TRANSPORT_ERROR: 502,
    UpstreamFailureKind.NON_JSON_RESPONSE: 502,
    UpstreamFailureKind.MALFORMED_JSON: 502,
}


class LookupKind(str, Enum):
    SEARCH = "search"
    VIDEO = "video"
    CHANNEL = "channel"


class LookupRequest(BaseModel):
    kind: LookupKind
    query_text: str | None = None
    max_results: int = DEFAULT_MAX_RESULTS
    id: str | None = None


class OutcomeStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass
class FulfillmentOutcome:
    status: OutcomeStatus
    status_code: int
    body: Any
    annotations: dict[str, Any] = field(default_factory=dict)

    def to_content(self) -> Any:
        """Wire body: annotations sit beside the upstream fields and never replace them."""
        if not self.annotations or not isinstance(self.body, dict):
            return self.body
        content = dict(self.body)
        for key, value in self.annotations.items():
            content.setdefault(key, value)
        return content


class RequestValidationError(Exception):
    pass


def parse_max_results(raw: Any) -> int:
    """
    Query-string maxResults, read like a leading integer ("5.5" and "5abc"
    both give 5). Missing or non-numeric falls back to the default, anything
    above the ceiling is clamped. Values below 1 are passed through so
    validation can reject them.
    """
    if raw is None:
        return DEFAULT_MAX_RESULTS
    match = LEADING_INT_RE.match(str(raw))
    if not match:
        return DEFAULT_MAX_RESULTS
    return min(int(match.group(1)), MAX_RESULTS_CEILING)


def validate_lookup(request: LookupRequest) -> None:
    if request.kind == LookupKind.SEARCH:
        if not (request.query_text or "").strip():
            raise RequestValidationError('Query parameter "q" is required.')
        if not 1 <= request.max_results <= MAX_RESULTS_CEILING:
            raise RequestValidationError(f'"maxResults" must be between 1 and {MAX_RESULTS_CEILING}.')
        return
    if not (request.id or "").strip():
        raise RequestValidationError(f'Parameter "{request.kind.value}Id" is required.')


def compute_cache_key(request: LookupRequest) -> str:
    if request.kind == LookupKind.SEARCH:
        query = (request.query_text or "").strip().lower()
        return f"search_{query}_{request.max_results}"
    return f"{request.kind.value}_{(request.id or '').strip()}"


def error_outcome(status_code: int, error: str, **extra: Any) -> FulfillmentOutcome:
    body = {"error": error, "code": status_code}
    body.update(extra)
    return FulfillmentOutcome(status=OutcomeStatus.ERROR, status_code=status_code, body=body)


class FulfillmentPipeline:
    """
    Resolves a lookup against cache, quota state and upstream, in that order.

    A live cache entry always wins. Without one, an exhausted quota serves an
    expired entry for the key if one is still stored, else short-circuits to
    429. Otherwise a single upstream call is made; on any failure an expired
    entry is served before an error is returned.
    """

    def __init__(
        self,
        cache: TTLCacheStore,
        client: YouTubeClient,
        quota_state: QuotaState,
        ttl_seconds: int | None = None,
    ) -> None:
        self.cache = cache
        self.client = client
        self.quota_state = quota_state
        self.ttl_seconds = ttl_seconds

    def fulfill(self, request: LookupRequest) -> FulfillmentOutcome:
        try:
            return self._fulfill(request)
        except RequestValidationError as e:
            return error_outcome(400, str(e))
        except Exception:
            logger.exception(f"Unexpected error fulfilling {request.kind.value} lookup")
            return error_outcome(500, "Internal server error")

    def _fulfill(self, request: LookupRequest) -> FulfillmentOutcome:
        validate_lookup(request)
        cache_key = compute_cache_key(request)

        entry = self.cache.get(cache_key)
        if entry is not None:
            return FulfillmentOutcome(
                status=OutcomeStatus.FRESH,
                status_code=200,
                body=entry.payload,
                annotations={"_fromCache": True},
            )

        if self.quota_state.exhausted:
            stale = self.cache.get_stale(cache_key)
            if stale is not None:
                logger.info(f"Quota exhausted, returning cached data for: {cache_key}")
                return FulfillmentOutcome(
                    status=OutcomeStatus.STALE,
                    status_code=200,
                    body=stale.payload,
                    annotations={"_fromCache": True, "_quotaExceeded": True},
                )
            return error_outcome(
                429,
                QUOTA_EXCEEDED_ERROR,
                quotaExceeded=True,
                message=QUOTA_EXCEEDED_MESSAGE,
                retryAfter=QUOTA_RETRY_AFTER,
                cacheAvailable=self.cache.has_entries(),
            )

        result = self._call_upstream(request)
        if isinstance(result, UpstreamFailure):
            return self._degrade(cache_key, result)

        rejection = self._check_shape(request, result.body)
        if rejection is not None:
            return rejection

        self.cache.set(cache_key, result.body, self.ttl_seconds)
        return FulfillmentOutcome(status=OutcomeStatus.FRESH, status_code=200, body=result.body)

    def _call_upstream(self, request: LookupRequest) -> UpstreamResult:
        if request.kind == LookupKind.SEARCH:
            return self.client.search(request.query_text.strip(), request.max_results)
        if request.kind == LookupKind.VIDEO:
            return self.client.video(request.id.strip())
        return self.client.channel(request.id.strip())

    def _check_shape(self, request: LookupRequest, body: Any) -> FulfillmentOutcome | None:
        items = body.get("items") if isinstance(body, dict) else None
        if not isinstance(items, list):
            return error_outcome(502, "Invalid response structure from YouTube API")
        if request.kind != LookupKind.SEARCH and not items:
            return error_outcome(404, f"{request.kind.value.capitalize()} not found")
        return None

    def _degrade(self, cache_key: str, failure: UpstreamFailure) -> FulfillmentOutcome:
        quota_hit = failure.kind == UpstreamFailureKind.QUOTA_EXCEEDED

        entry = self.cache.get_stale(cache_key)
        if entry is not None:
            if quota_hit:
                logger.info(f"Quota exceeded, returning cached data for: {cache_key}")
                annotations = {"_fromCache": True, "_quotaExceeded": True}
            else:
                logger.info(f"API failed, returning cached data for: {cache_key}")
                annotations = {"_fromCache": True, "_apiError": failure.message}
            return FulfillmentOutcome(
                status=OutcomeStatus.STALE,
                status_code=200,
                body=entry.payload,
                annotations=annotations,
            )

        if quota_hit:
            return error_outcome(
                429,
                QUOTA_EXCEEDED_ERROR,
                details="Quota exceeded and no cached data available",
                quotaExceeded=True,
                cacheAvailable=self.cache.has_entries(),
            )

        status_code = FAILURE_STATUS_CODES.get(failure.kind)
        if status_code is None:
            status_code = failure.status_code if failure.status_code and failure.status_code >= 400 else 500
        return error_outcome(status_code, "YouTube API request failed", details=failure.message)
