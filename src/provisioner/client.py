"""HTTP transport for the control plane API.

JSON over HTTPS through an azure-core PipelineClient:
- Basic auth with an empty user name and the API key as password
- Transport-level retries for locked (423), rate limited (429) and
  unavailable (503) responses via RetryPolicy, honouring Retry-After
- A bounded retry of the control plane's 400/409 "Timeout talking to backend"

Status code contract handed to the core:
- 2xx: success, returned as ApiResponse (204 means success without a body)
- 404/410: absence, returned as ApiResponse so callers can classify it
- anything else: RemoteOperationFailed carrying the structured error payload

Network failures surface as TransportError. The client holds no per-call
state and the underlying requests session is safe to share between threads.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any

from azure.core import PipelineClient
from azure.core.exceptions import ServiceRequestError, ServiceResponseError
from azure.core.pipeline.policies import HeadersPolicy, RetryPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest, HttpResponse

from .config import RETRY_STATUS_CODES, ClientConfig
from .errors import RemoteOperationFailed, TransportError
from .models import sanitized

logger = logging.getLogger(__name__)

NOT_FOUND_STATUS_CODES: frozenset[int] = frozenset({404, 410})

BACKEND_TIMEOUT_MESSAGE = "Timeout talking to backend"


@dataclass(frozen=True)
class ApiResponse:
    """Outcome of a request the control plane did not reject."""

    status_code: int
    body: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_not_found(self) -> bool:
        return self.status_code in NOT_FOUND_STATUS_CODES

    @property
    def has_body(self) -> bool:
        return self.body not in (None, "", {}, [])


def _basic_auth_header(api_key: str) -> str:
    token = base64.b64encode(f":{api_key}".encode()).decode("ascii")
    return f"Basic {token}"


def error_reason(payload: Any) -> str:
    """Extract the human-readable reason from an error payload."""
    if isinstance(payload, dict):
        for key in ("message", "error", "error_message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
        return str(payload)
    if payload in (None, ""):
        return "no error details returned"
    return str(payload)


class ControlPlaneClient:
    """Thin JSON client for the CloudAMQP customer API."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: Any | None = None,
        sleep: Any = time.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            config: Validated connection settings.
            transport: Optional azure-core transport (tests inject one).
            sleep: Sleep used between "Timeout talking to backend" retries.
        """
        self._config = config
        self._sleep = sleep

        policies = [
            HeadersPolicy(
                base_headers={
                    "Authorization": _basic_auth_header(config.api_key),
                    "Accept": "application/json",
                }
            ),
            UserAgentPolicy(base_user_agent=config.user_agent),
            RetryPolicy(
                retry_total=config.retry_total,
                retry_backoff_factor=config.retry_backoff_factor,
                retry_on_status_codes=list(RETRY_STATUS_CODES),
            ),
        ]
        self._pipeline = PipelineClient(
            base_url=config.base_url,
            policies=policies,
            transport=transport,
        )

    @property
    def config(self) -> ClientConfig:
        return self._config

    def close(self) -> None:
        self._pipeline.close()

    def __enter__(self) -> ControlPlaneClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def get(self, path: str, **kwargs: Any) -> ApiResponse:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, json: Any = None, **kwargs: Any) -> ApiResponse:
        return self.request("POST", path, json=json, **kwargs)

    def put(self, path: str, json: Any = None, **kwargs: Any) -> ApiResponse:
        return self.request("PUT", path, json=json, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> ApiResponse:
        return self.request("DELETE", path, **kwargs)

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResponse:
        """Send a request and map the status code.

        Raises:
            TransportError: Network failure before a status code was received.
            RemoteOperationFailed: Non-success status other than 404/410.
        """
        attempt = 1
        while True:
            response = self._send(method, path, json=json, params=params)
            body = self._parse_body(response)
            status = response.status_code

            logger.debug(
                "Control plane response",
                extra={"method": method, "path": path, "status": status, "attempt": attempt},
            )

            if 200 <= status < 300 or status in NOT_FOUND_STATUS_CODES:
                if status in NOT_FOUND_STATUS_CODES:
                    logger.info(
                        "Control plane reports object not found",
                        extra={"method": method, "path": path, "status": status},
                    )
                return ApiResponse(status_code=status, body=body)

            if self._is_backend_timeout(status, body) and attempt <= self._config.backend_timeout_retries:
                logger.warning(
                    "Timeout talking to backend, will try again",
                    extra={"method": method, "path": path, "attempt": attempt},
                )
                attempt += 1
                self._sleep(self._config.backend_timeout_sleep)
                continue

            raise RemoteOperationFailed(error_reason(body), status_code=status, payload=body)

    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any,
        params: dict[str, Any] | None,
    ) -> HttpResponse:
        logger.debug(
            "Control plane request",
            extra={
                "method": method,
                "path": path,
                "params": sanitized(json) if isinstance(json, dict) else None,
            },
        )

        request = HttpRequest(method, self._pipeline.format_url(path), json=json, params=params)
        try:
            return self._pipeline.send_request(
                request,
                connection_timeout=self._config.connection_timeout,
                read_timeout=self._config.read_timeout,
            )
        except (ServiceRequestError, ServiceResponseError) as e:
            logger.error(
                "Control plane request failed",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise TransportError(
                f"{method} {path} failed: {e}", method=method, path=path
            ) from e

    @staticmethod
    def _parse_body(response: HttpResponse) -> Any:
        text = response.text()
        if not text:
            return None
        try:
            return response.json()
        except ValueError:
            return text

    @staticmethod
    def _is_backend_timeout(status: int, body: Any) -> bool:
        return (
            status in (400, 409)
            and isinstance(body, dict)
            and body.get("error") == BACKEND_TIMEOUT_MESSAGE
        )
