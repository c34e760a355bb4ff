"""Fetch orchestrator: cache check, direct fetch, then proxy fallback.

Each acquisition walks a small state machine
(validating -> cache_check -> direct_fetch -> proxy_fetch -> done|failed) and
always ends in either a ``DocumentHandle`` or a ``FailureRecord``; transport
problems are classified, never raised. A newer acquisition for the same cache
key cancels any older one still in flight, and the superseded caller gets
``None`` back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote, urlparse

import aiohttp

from ..core.keys import (
    K_CACHE_KEY,
    K_CONTENT_TYPE,
    K_IS_CACHED,
    K_ROW,
    K_SHEET,
    K_SIZE_BYTES,
    K_SOURCE,
    K_SOURCE_URL,
    K_URL,
    K_VIA_PROXY,
)
from .contract_cache import ContractCache, open_contract_cache
from .failure_classifier import FailureRecord, FailureSignals, classify_failure, validate_contract_url
from .fetch_config import (
    DEFAULT_SETTINGS,
    HDR_AUTHORIZATION,
    HDR_PROXY_FILE_SIZE,
    PipelineSettings,
)
from .fetch_utils import (
    build_cache_key,
    encode_url_spaces,
    format_size,
    has_pdf_signature,
    host_matches_allowlist,
    is_pdf_content_type,
    is_pdf_url,
    parse_content_length,
    trim_url,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


class AcquireState:
    VALIDATING = "validating"
    CACHE_CHECK = "cache_check"
    DIRECT_FETCH = "direct_fetch"
    PROXY_FETCH = "proxy_fetch"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class FetchRequest:
    url: str
    sheet_name: str
    row_index: int
    timeout_ms: Optional[int] = None

    @property
    def cache_key(self) -> str:
        return build_cache_key(self.sheet_name, self.row_index, trim_url(self.url))

    @property
    def target_url(self) -> str:
        """The URL actually requested on the wire."""

        return encode_url_spaces(trim_url(self.url))


@dataclass(frozen=True)
class DocumentHandle:
    data: bytes
    content_type: Optional[str]
    size_bytes: int
    source_url: str
    cache_key: str
    is_cached: bool = False
    via_proxy: bool = False

    @property
    def source(self) -> str:
        if self.is_cached:
            return "cache"
        return "proxy" if self.via_proxy else "direct"

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_SOURCE_URL: self.source_url,
            K_CACHE_KEY: self.cache_key,
            K_CONTENT_TYPE: self.content_type,
            K_SIZE_BYTES: self.size_bytes,
            K_IS_CACHED: self.is_cached,
            K_VIA_PROXY: self.via_proxy,
            K_SOURCE: self.source,
        }


AcquireOutcome = Union[DocumentHandle, FailureRecord]


@dataclass
class StepOutcome:
    """Result of one state-machine step: terminal (handle/failure) or continue."""

    handle: Optional[DocumentHandle] = None
    failure: Optional[FailureRecord] = None
    fallback_reason: Optional[str] = None
    thrown_message: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.handle is not None or self.failure is not None


@dataclass
class AcquireResult:
    request: FetchRequest
    handle: Optional[DocumentHandle] = None
    failure: Optional[FailureRecord] = None
    superseded: bool = False
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.handle is not None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_URL: self.request.url,
            K_SHEET: self.request.sheet_name,
            K_ROW: self.request.row_index,
            K_CACHE_KEY: self.request.cache_key,
            "ok": self.ok,
            "elapsed_ms": self.elapsed_ms,
        }
        if self.handle is not None:
            payload["document"] = self.handle.to_dict()
        if self.failure is not None:
            payload["failure"] = self.failure.to_dict()
        if self.superseded:
            payload["superseded"] = True
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class ContractFetcher:
    """Acquire contract documents for sheet rows with caching and proxy fallback."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        cache: Optional[ContractCache] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.cache = cache if cache is not None else open_contract_cache(self.settings)
        self._session = session
        self._owns_session = session is None
        self._generations: Dict[str, int] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._proxy_audit: Optional[Dict[str, Any]] = self._init_proxy_audit()

    async def __aenter__(self) -> "ContractFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        for task in list(self._inflight.values()):
            if not task.done():
                task.cancel()
        self._inflight.clear()
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        if self.cache is not None:
            self.cache.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.settings.user_agent})
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------ public API

    async def acquire(self, sheet_name: str, row_index: int, url: str) -> Optional[AcquireOutcome]:
        return await self.acquire_request(FetchRequest(url=url, sheet_name=sheet_name, row_index=row_index))

    async def acquire_request(self, request: FetchRequest) -> Optional[AcquireOutcome]:
        """Run one acquisition; returns None when a newer request superseded it."""

        key = request.cache_key
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        previous = self._inflight.get(key)
        if previous is not None and not previous.done():
            logger.info("Superseding in-flight acquisition for %s", key)
            previous.cancel()
        task = asyncio.ensure_future(self._run(request, generation))
        self._inflight[key] = task
        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._generations.get(key) != generation:
                logger.debug("Acquisition for %s (generation %d) was superseded", key, generation)
                return None
            raise
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    def cancel(self, sheet_name: str, row_index: int, url: str) -> bool:
        """Cancel the in-flight acquisition for a row; its caller receives None."""

        key = build_cache_key(sheet_name, row_index, trim_url(url))
        task = self._inflight.get(key)
        if task is None or task.done():
            return False
        self._generations[key] = self._generations.get(key, 0) + 1
        task.cancel()
        return True

    async def clear_cache_for_row(self, sheet_name: str, row_index: int) -> int:
        if self.cache is None:
            return 0
        return await self.cache.clear_for_row(sheet_name, row_index)

    async def acquire_many(
        self,
        requests: Iterable[FetchRequest],
        progress_hook: Optional[Callable[[int, int, FetchRequest, AcquireResult], None]] = None,
        concurrency: int = 4,
    ) -> Tuple[List[AcquireResult], Dict[str, Any]]:
        self._proxy_audit = self._init_proxy_audit()
        # One acquisition per cache key; later duplicates would only supersede earlier ones.
        dedup: Dict[str, FetchRequest] = {}
        for request in requests:
            dedup.setdefault(request.cache_key, request)
        unique_requests = list(dedup.values())
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _one(request: FetchRequest) -> AcquireResult:
            async with semaphore:
                started = time.perf_counter()
                outcome = await self.acquire_request(request)
                elapsed = int((time.perf_counter() - started) * 1000)
            if outcome is None:
                return AcquireResult(request, superseded=True, elapsed_ms=elapsed)
            if isinstance(outcome, DocumentHandle):
                return AcquireResult(request, handle=outcome, elapsed_ms=elapsed)
            return AcquireResult(request, failure=outcome, elapsed_ms=elapsed)

        tasks: List[asyncio.Task] = []
        for request in unique_requests:
            task = asyncio.ensure_future(_one(request))
            tasks.append(task)
        results: List[AcquireResult] = []
        total = len(tasks)
        completed = 0
        for task in asyncio.as_completed(tasks):
            result = await task
            results.append(result)
            completed += 1
            if progress_hook is not None:
                try:
                    progress_hook(completed, total, result.request, result)
                except Exception:
                    logger.debug("progress hook raised", exc_info=True)
        audit = _build_audit(results, len(unique_requests), proxy_audit=self._proxy_audit)
        return results, audit

    # ------------------------------------------------------------------ state machine

    async def _run(self, request: FetchRequest, generation: int) -> AcquireOutcome:
        url = trim_url(request.url)
        state = AcquireState.VALIDATING
        validation = validate_contract_url(url)
        if not validation.valid:
            logger.info("Rejected contract URL for %s: %s", request.cache_key, validation.message)
            return self._fail(request, state, FailureSignals(url=url, error_code="invalid_url"))

        state = AcquireState.CACHE_CHECK
        cached = await self._step_cache_check(request)
        if cached.terminal:
            return self._finish(request, state, cached)

        state = AcquireState.DIRECT_FETCH
        direct = await self._step_direct_fetch(request, generation)
        if direct.terminal:
            return self._finish(request, state, direct)

        state = AcquireState.PROXY_FETCH
        logger.info(
            "Direct fetch failed for %s (%s); trying proxy fallback",
            url,
            direct.fallback_reason,
        )
        proxied = await self._step_proxy_fetch(request, generation, direct)
        return self._finish(request, state, proxied)

    def _finish(self, request: FetchRequest, state: str, outcome: StepOutcome) -> AcquireOutcome:
        if outcome.handle is not None:
            logger.debug(
                "Acquired %s via %s (%s) at step %s",
                request.cache_key,
                outcome.handle.source,
                format_size(outcome.handle.size_bytes),
                state,
            )
            return outcome.handle
        if outcome.failure is None:
            raise RuntimeError(f"acquisition for {request.cache_key} ended without a result")
        logger.warning(
            "Acquisition failed for %s at step %s: %s (%s)",
            request.cache_key,
            state,
            outcome.failure.category,
            outcome.failure.confidence,
        )
        return outcome.failure

    def _fail(self, request: FetchRequest, state: str, signals: FailureSignals) -> FailureRecord:
        record = self._classify(signals)
        self._finish(request, state, StepOutcome(failure=record))
        return record

    def _classify(self, signals: FailureSignals) -> FailureRecord:
        return classify_failure(signals, max_bytes=self.settings.max_document_bytes)

    def _timeout(self, request: FetchRequest) -> aiohttp.ClientTimeout:
        timeout_ms = request.timeout_ms if request.timeout_ms is not None else self.settings.fetch_timeout_ms
        return aiohttp.ClientTimeout(total=max(0.001, timeout_ms / 1000.0))

    async def _step_cache_check(self, request: FetchRequest) -> StepOutcome:
        if self.cache is None:
            return StepOutcome()
        blob = await self.cache.get_cached(request.cache_key)
        if blob is None:
            return StepOutcome()
        return StepOutcome(
            handle=DocumentHandle(
                data=blob.data,
                content_type=blob.content_type,
                size_bytes=blob.size_bytes,
                source_url=blob.source_url,
                cache_key=blob.key,
                is_cached=True,
            )
        )

    async def _write_cache(
        self,
        request: FetchRequest,
        generation: int,
        data: bytes,
        content_type: Optional[str],
    ) -> None:
        if self.cache is None:
            return
        if self._generations.get(request.cache_key) != generation:
            logger.debug("Skipping cache write for superseded %s", request.cache_key)
            return
        await self.cache.cache_contract(request.cache_key, data, request.target_url, content_type)

    async def _step_direct_fetch(self, request: FetchRequest, generation: int) -> StepOutcome:
        url = request.target_url
        session = self._get_session()
        try:
            async with session.get(url, timeout=self._timeout(request), allow_redirects=True) as resp:
                status = resp.status
                content_type = resp.headers.get("Content-Type")
                declared = parse_content_length(resp.headers.get("Content-Length"))
                if status == 0:
                    return StepOutcome(fallback_reason="opaque_status")
                if not 200 <= status < 300:
                    return StepOutcome(
                        failure=self._classify(FailureSignals(url=url, error_code="http_error", http_status=status))
                    )
                if not is_pdf_content_type(content_type) and not is_pdf_url(url):
                    return StepOutcome(
                        failure=self._classify(
                            FailureSignals(
                                url=url,
                                error_code="not_pdf",
                                content_type=content_type,
                                size_bytes=declared,
                            )
                        )
                    )
                data = await resp.read()
        except asyncio.TimeoutError as exc:
            return StepOutcome(
                failure=self._classify(
                    FailureSignals(url=url, error_code="timeout", thrown_message=str(exc) or "request timed out")
                )
            )
        except aiohttp.ClientConnectionError as exc:
            # Refused connections, DNS failures and resets look the same as a
            # cross-origin block from here; let the proxy try.
            return StepOutcome(fallback_reason=type(exc).__name__, thrown_message=str(exc))
        except aiohttp.ClientError as exc:
            return StepOutcome(
                failure=self._classify(FailureSignals(url=url, error_code="network_error", thrown_message=str(exc)))
            )

        invalid = self._check_signature(url, data, content_type, used_proxy=False)
        if invalid is not None:
            return StepOutcome(failure=invalid)
        await self._write_cache(request, generation, data, content_type)
        return StepOutcome(
            handle=DocumentHandle(
                data=data,
                content_type=content_type or "application/pdf",
                size_bytes=len(data),
                source_url=url,
                cache_key=request.cache_key,
            )
        )

    def _check_signature(
        self,
        url: str,
        data: bytes,
        content_type: Optional[str],
        *,
        used_proxy: bool,
    ) -> Optional[FailureRecord]:
        if has_pdf_signature(data):
            return None
        return self._classify(
            FailureSignals(
                url=url,
                error_code="not_pdf",
                content_type=content_type,
                size_bytes=len(data),
                used_proxy=used_proxy,
                pdf_signature_valid=False,
            )
        )

    async def _probe_size(self, url: str) -> Optional[int]:
        """Best-effort HEAD request for a diagnostic size; never raises."""

        session = self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.settings.size_probe_timeout_s)
        try:
            async with session.head(url, timeout=timeout, allow_redirects=True) as resp:
                if 200 <= resp.status < 300:
                    return parse_content_length(resp.headers.get("Content-Length"))
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("Size probe failed for %s: %s", url, exc)
        return None

    async def _read_limited(self, resp: aiohttp.ClientResponse, limit: int) -> Optional[bytes]:
        buf = bytearray()
        async for chunk in resp.content.iter_chunked(_READ_CHUNK):
            buf.extend(chunk)
            if len(buf) > limit:
                return None
        return bytes(buf)

    def _proxy_url(self, url: str) -> str:
        endpoint = self.settings.proxy_endpoint or ""
        joiner = "&" if "?" in endpoint else "?"
        return f"{endpoint}{joiner}url={quote(url, safe='')}"

    async def _step_proxy_fetch(self, request: FetchRequest, generation: int, direct: StepOutcome) -> StepOutcome:
        url = request.target_url
        host = urlparse(url).hostname or ""
        if not self.settings.proxy_available or not host_matches_allowlist(host, self.settings.proxy_allowed_hosts):
            size = await self._probe_size(url)
            return StepOutcome(
                failure=self._classify(FailureSignals(url=url, error_code="cors_blocked", size_bytes=size))
            )

        reason = direct.fallback_reason or "direct_failed"
        self._proxy_audit_attempt(host, reason)
        headers: Dict[str, str] = {}
        if self.settings.proxy_token:
            headers[HDR_AUTHORIZATION] = f"Bearer {self.settings.proxy_token}"
        max_bytes = self.settings.max_document_bytes
        session = self._get_session()
        try:
            async with session.get(self._proxy_url(url), headers=headers, timeout=self._timeout(request)) as resp:
                status = resp.status
                if not 200 <= status < 300:
                    self._proxy_audit_result(status, success=False)
                    signals = await self._proxy_error_signals(resp, url)
                    return StepOutcome(failure=self._classify(signals))
                declared = parse_content_length(resp.headers.get(HDR_PROXY_FILE_SIZE)) or parse_content_length(
                    resp.headers.get("Content-Length")
                )
                content_type = resp.headers.get("Content-Type")
                if declared is not None and declared > max_bytes:
                    data = None
                else:
                    data = await self._read_limited(resp, max_bytes)
        except asyncio.TimeoutError as exc:
            self._proxy_audit_error(host, reason, url, "timeout")
            return StepOutcome(
                failure=self._classify(
                    FailureSignals(
                        url=url,
                        error_code="timeout",
                        used_proxy=True,
                        thrown_message=str(exc) or "proxy request timed out",
                    )
                )
            )
        except aiohttp.ClientError as exc:
            self._proxy_audit_error(host, reason, url, str(exc))
            return StepOutcome(
                failure=self._classify(
                    FailureSignals(url=url, error_code="proxy_failed", used_proxy=True, thrown_message=str(exc))
                )
            )

        if data is None:
            self._proxy_audit_result(status, success=False)
            return StepOutcome(
                failure=self._classify(
                    FailureSignals(
                        url=url,
                        error_code="file_too_large",
                        size_bytes=declared if declared is not None else max_bytes + 1,
                        used_proxy=True,
                    )
                )
            )
        invalid = self._check_signature(url, data, content_type, used_proxy=True)
        if invalid is not None:
            self._proxy_audit_result(status, success=False)
            return StepOutcome(failure=invalid)
        self._proxy_audit_result(status, success=True)
        await self._write_cache(request, generation, data, content_type)
        return StepOutcome(
            handle=DocumentHandle(
                data=data,
                content_type=content_type or "application/pdf",
                size_bytes=declared if declared is not None else len(data),
                source_url=url,
                cache_key=request.cache_key,
                via_proxy=True,
            )
        )

    async def _proxy_error_signals(self, resp: aiohttp.ClientResponse, url: str) -> FailureSignals:
        """Turn a non-2xx proxy response into classifier signals.

        A JSON body carries ``code``/``message``/``httpStatus``/``fileSize``;
        anything else is reported as ``proxy_failed``.
        """

        content_type = resp.headers.get("Content-Type") or ""
        if "application/json" in content_type.lower():
            try:
                body = await resp.json(content_type=None)
            except (ValueError, aiohttp.ContentTypeError, aiohttp.ClientPayloadError):
                body = None
            if isinstance(body, dict) and body.get("code"):
                http_status = body.get("httpStatus")
                file_size = body.get("fileSize")
                return FailureSignals(
                    url=url,
                    error_code=str(body.get("code")),
                    http_status=int(http_status) if isinstance(http_status, (int, float)) else None,
                    size_bytes=int(file_size) if isinstance(file_size, (int, float)) else None,
                    used_proxy=True,
                    thrown_message=str(body.get("message") or ""),
                )
        return FailureSignals(
            url=url,
            error_code="proxy_failed",
            used_proxy=True,
            thrown_message=f"Proxy returned {resp.status}",
        )

    # ------------------------------------------------------------------ proxy audit

    def _init_proxy_audit(self) -> Optional[Dict[str, Any]]:
        if not self.settings.proxy_available:
            return None
        return {
            "enabled": True,
            "endpoint": self.settings.proxy_endpoint,
            "attempted": 0,
            "success": 0,
            "failed": 0,
            "domains": {},
            "reasons": {},
            "status_counts": {},
        }

    def _proxy_audit_attempt(self, domain: str, reason: str) -> None:
        if self._proxy_audit is None:
            return
        self._proxy_audit["attempted"] = int(self._proxy_audit.get("attempted", 0)) + 1
        domains = self._proxy_audit.setdefault("domains", {})
        domains[domain] = int(domains.get(domain, 0)) + 1
        reasons = self._proxy_audit.setdefault("reasons", {})
        reasons[reason] = int(reasons.get(reason, 0)) + 1

    def _proxy_audit_result(self, status: int, *, success: bool) -> None:
        if self._proxy_audit is None:
            return
        key = "success" if success else "failed"
        self._proxy_audit[key] = int(self._proxy_audit.get(key, 0)) + 1
        counts = self._proxy_audit.setdefault("status_counts", {})
        counts[str(status)] = int(counts.get(str(status), 0)) + 1

    def _proxy_audit_error(self, domain: str, reason: str, url: str, error: str) -> None:
        if self._proxy_audit is None:
            return
        self._proxy_audit["failed"] = int(self._proxy_audit.get("failed", 0)) + 1
        errors = self._proxy_audit.setdefault("errors", [])
        if len(errors) < 20:
            errors.append({"domain": domain, "reason": reason, "url": url, "error": error})


def _build_audit(
    results: List[AcquireResult],
    target_total: int,
    *,
    proxy_audit: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    categories: Dict[str, int] = {}
    for result in results:
        if result.failure is not None:
            categories[result.failure.category] = categories.get(result.failure.category, 0) + 1
    audit: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "requested": target_total,
        "acquired": sum(1 for r in results if r.ok),
        "failed": sum(1 for r in results if r.failure is not None),
        "superseded": sum(1 for r in results if r.superseded),
        "cache_hits": sum(1 for r in results if r.handle is not None and r.handle.is_cached),
        "via_proxy": sum(1 for r in results if r.handle is not None and r.handle.via_proxy),
        "failure_categories": categories,
    }
    if proxy_audit:
        audit["proxy"] = proxy_audit
    return audit


__all__ = [
    "AcquireOutcome",
    "AcquireResult",
    "AcquireState",
    "ContractFetcher",
    "DocumentHandle",
    "FetchRequest",
    "StepOutcome",
]
