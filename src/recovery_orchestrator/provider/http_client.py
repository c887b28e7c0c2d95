"""JSON-over-HTTP client for an RDS management gateway."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib import error, parse, request

from recovery_orchestrator.errors import ProviderError
from recovery_orchestrator.provider.base import (
    CloneRequest,
    CloneResult,
    DeleteResult,
    ProviderInstance,
    ValidationReport,
)

logger = logging.getLogger(__name__)


class HttpCloudProviderClient:
    """Blocking client; the orchestrator calls it from worker threads."""

    def __init__(self, base_url: str, *, region: str, timeout_s: float = 10.0) -> None:
        if not base_url:
            raise ValueError("RECOVERY_PROVIDER_BASE_URL is required")
        self.base_url = base_url.rstrip("/")
        self.region = region
        self.timeout_s = timeout_s

    def get_instance(self, instance_id: str) -> ProviderInstance | None:
        try:
            raw = self._request_json("GET", f"/instances/{parse.quote(instance_id)}")
        except _NotFound:
            return None
        return ProviderInstance.model_validate(raw)

    def clone_instance(self, clone_request: CloneRequest) -> CloneResult:
        body: dict[str, Any] = {
            "region": self.region,
            "target_instance_name": clone_request.target_instance_name,
            "instance_class": clone_request.instance_class,
            "storage_size": clone_request.storage_size,
            "restore_type": clone_request.backup.restore_type,
        }
        if clone_request.backup.restore_type == "BackupSet":
            body["backup_id"] = clone_request.backup.backup_id
        else:
            body["restore_time"] = clone_request.backup.restore_time.isoformat()
        source = parse.quote(clone_request.source_instance_id)
        raw = self._request_json("POST", f"/instances/{source}/clone", body=body)
        result = CloneResult.model_validate(raw)
        logger.info(
            "provider event=clone_requested source=%s target_name=%s provider_task_id=%s",
            clone_request.source_instance_id,
            clone_request.target_instance_name,
            result.provider_task_id,
        )
        return result

    def validate_data(self, instance_id: str, rules: dict[str, Any]) -> ValidationReport:
        raw = self._request_json(
            "POST",
            f"/instances/{parse.quote(instance_id)}/validate",
            body={"rules": rules},
        )
        return ValidationReport.model_validate(raw)

    def delete_instance(self, instance_id: str) -> DeleteResult:
        raw = self._request_json("DELETE", f"/instances/{parse.quote(instance_id)}")
        return DeleteResult.model_validate(raw)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        req = request.Request(
            url=f"{self.base_url}{path}",
            data=data,
            method=method,
            headers=headers,
        )

        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw_body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            if exc.code == 404 and method == "GET":
                raise _NotFound(path) from exc
            raise ProviderError(
                f"provider {method} {path} failed with status {exc.code}: {detail[:300]}"
            ) from exc
        except error.URLError as exc:
            raise ProviderError(f"provider {method} {path} failed: {exc.reason}") from exc

        if not raw_body:
            return {}
        try:
            parsed = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"provider {method} {path} returned non-JSON response.") from exc
        if isinstance(parsed, dict):
            return parsed
        raise ProviderError(f"provider returned unsupported JSON shape: {type(parsed)!r}")


class _NotFound(Exception):
    pass
