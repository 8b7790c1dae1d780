"""Trigger builds on platforms exposing an HTTP re-run hook."""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests  # type: ignore[import]

from buildgate.errors import BuildGateError, TriggerError
from buildgate.models.identity import PackageIdentity
from buildgate.net.backoff import Backoff
from buildgate.utils.env import load_dotenv

from .base_client import BaseClient

ENV_TOKEN_KEY = "BUILDGATE_WEBHOOK_TOKEN"
DEFAULT_TIMEOUT_SECONDS = 15


class _RetryableResponse(TriggerError):
    """Hook answered with a status worth retrying."""


class WebhookCIPlatformClient(BaseClient[Dict[str, Any]]):
    """POST ``{"package": ...}`` to a URL template containing ``{package}``."""

    retryable = (_RetryableResponse, requests.ConnectionError, requests.Timeout)

    def __init__(
        self,
        url_template: str,
        *,
        job_id: Optional[str] = None,
        source_root: Optional[Path] = None,
        session: Optional[requests.Session] = None,
        backoff: Optional[Backoff] = None,
        logger: Optional[logging.Logger] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        load_dotenv()
        super().__init__(backoff, logger=logger)
        if "{package}" not in url_template:
            raise ValueError("Webhook URL template must contain '{package}'")
        self._url_template = url_template
        self._job_id = job_id
        self._source_root = source_root
        self._session = session or requests.Session()
        self._timeout = timeout
        self._api_token = os.environ.get(ENV_TOKEN_KEY)

    def current_job_id(self) -> str:
        if not self._job_id:
            raise BuildGateError(
                "No job id configured; set BUILDGATE_JOB_ID for webhook mode"
            )
        return self._job_id

    def source_root(self) -> Path:
        return self._source_root or Path.cwd()

    def start_job(self, package: PackageIdentity) -> str:
        url = self._url_template.format(package=quote(package.key, safe=""))
        payload = {
            "package": package.key,
            "ecosystem": package.ecosystem.value,
            "name": package.name,
        }
        if self._job_id:
            payload["triggered_by"] = self._job_id

        def _operation() -> Dict[str, Any]:
            response = self._session.post(
                url,
                headers=self._build_headers(),
                json=payload,
                timeout=self._timeout,
            )
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryableResponse(
                    f"Webhook returned {response.status_code}: {response.text}"
                )
            if response.status_code >= 400:
                raise TriggerError(
                    f"Webhook returned {response.status_code}: {response.text}"
                )
            try:
                body = response.json()
            except ValueError:
                return {}
            return body if isinstance(body, dict) else {}

        try:
            body = self._execute_with_retry(_operation, name="webhook.start_job")
        except requests.RequestException as error:
            raise TriggerError(f"Webhook request for {package} failed: {error}") from error

        job_id = body.get("id") or body.get("job_id") or f"webhook-{uuid.uuid4().hex}"
        self._logger.info("Triggered %s via webhook (job %s)", package, job_id)
        return str(job_id)

    def job_status(self, job_id: str) -> Optional[str]:
        return None

    def stop_job(self, job_id: str) -> None:
        raise TriggerError("Webhook platforms do not support stopping jobs")

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers
