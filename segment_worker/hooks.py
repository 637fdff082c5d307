"""Best-effort notifications fired after a job has been committed as succeeded."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import random
from typing import Dict, Protocol

import httpx

from .models import AnalysisJob
from .schemas import PrimaryAnalysis

log = logging.getLogger(__name__)


class PostCommitHook(Protocol):
    async def after_success(self, job: AnalysisJob, analysis: PrimaryAnalysis) -> None:
        ...


def _build_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_payload(job: AnalysisJob, analysis: PrimaryAnalysis) -> Dict[str, object]:
    return {
        "type": "analysis",
        "job_id": job.id,
        "source_id": job.source_id,
        "source_kind": job.source_kind,
        "relative_start": job.relative_start,
        "relative_end": job.relative_end,
        "summary": analysis.summary,
        "tags": list(analysis.tags),
        "event_count": len(analysis.events),
    }


class WebhookHook:
    """POST a small JSON notification, e.g. to a search indexer's sync endpoint."""

    def __init__(
        self,
        url: str,
        secret: str | None = None,
        *,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.secret = secret
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = base_delay
        self.timeout = timeout
        self._transport = transport

    async def after_success(self, job: AnalysisJob, analysis: PrimaryAnalysis) -> None:
        body = json.dumps(
            build_payload(job, analysis), separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["X-Signature"] = _build_signature(self.secret, body)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = await client.post(self.url, content=body, headers=headers)
                except httpx.HTTPError as exc:
                    log.warning(
                        "hook.attempt.error",
                        extra={"attempt": attempt, "url": self.url, "error": str(exc)},
                    )
                else:
                    if 200 <= response.status_code < 300:
                        log.info(
                            "hook.delivered",
                            extra={"attempt": attempt, "status_code": response.status_code},
                        )
                        return
                    log.warning(
                        "hook.attempt.non_2xx",
                        extra={
                            "attempt": attempt,
                            "status_code": response.status_code,
                            "body": response.text[:200] if response.text else "",
                        },
                    )

                if attempt >= self.max_attempts:
                    break
                delay = self.base_delay * (2 ** (attempt - 1))
                await asyncio.sleep(delay + random.uniform(0, delay * 0.25))

        log.error("hook.failed", extra={"attempts": self.max_attempts, "url": self.url})
