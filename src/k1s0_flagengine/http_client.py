"""オリジン HTTP クライアント実装"""

from __future__ import annotations

from typing import Any

import httpx

from .breaker import CircuitBreaker
from .client import FlagsPayload, OriginClient
from .config import ApiSection
from .exceptions import FlagEngineErrorCodes, OriginUnavailableError


class HttpOriginClient(OriginClient):
    """httpx を使ったオリジン HTTP クライアント。

    すべての呼び出しはサーキットブレーカーを経由する。フラグ取得はブレーカーが開いていると
    CircuitOpenError を送出するが、テレメトリ系の送信は重要度が低いため黙ってスキップする。
    API キー未設定の場合も送信はスキップし、フラグ取得のみ失敗させる。
    """

    def __init__(
        self,
        config: ApiSection,
        breaker: CircuitBreaker | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._breaker = breaker or CircuitBreaker()
        self._transport = transport

    def _make_sync_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._config.url.rstrip("/") + "/",
            timeout=self._config.timeout_seconds,
            verify=self._config.verify_ssl,
            transport=self._transport,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {self._config.key or ''}",
            },
        )

    def fetch_flags(self) -> FlagsPayload:
        if not self._config.key:
            raise OriginUnavailableError(
                code=FlagEngineErrorCodes.API_KEY_MISSING,
                message="API key not configured",
            )
        return self._breaker.call(self._fetch_flags)

    def send_telemetry(self, events: list[dict[str, Any]]) -> None:
        self._send("api/telemetry", "events", events)

    def send_conversions(self, events: list[dict[str, Any]]) -> None:
        self._send("api/conversions", "events", events)

    def send_errors(self, events: list[dict[str, Any]]) -> None:
        self._send("api/errors", "errors", events)

    def _fetch_flags(self) -> FlagsPayload:
        resp = self._request("GET", "api/flags")
        try:
            data = resp.json()
        except ValueError as e:
            raise OriginUnavailableError(
                code=FlagEngineErrorCodes.INVALID_RESPONSE,
                message=f"Invalid JSON response from API: {e}",
                cause=e,
            ) from e
        if not isinstance(data, dict):
            raise OriginUnavailableError(
                code=FlagEngineErrorCodes.INVALID_RESPONSE,
                message="Invalid JSON response from API: expected an object",
            )
        return FlagsPayload.from_dict(data)

    def _send(self, path: str, field: str, events: list[dict[str, Any]]) -> None:
        if not self._config.key or not events:
            return
        if self._breaker.is_open():
            return
        self._breaker.call(lambda: self._request("POST", path, json={field: events}))

    def _request(self, method: str, path: str, json: Any = None) -> httpx.Response:
        try:
            with self._make_sync_client() as client:
                resp = client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise OriginUnavailableError(
                code=FlagEngineErrorCodes.CONNECTION_ERROR,
                message=f"{method} {path} failed: {e}",
                cause=e,
            ) from e
        if resp.status_code >= 400:
            raise OriginUnavailableError(
                code=FlagEngineErrorCodes.HTTP_ERROR,
                message=f"{method} {path}: HTTP {resp.status_code}: {resp.text}",
            )
        return resp
