"""1 つの処理単位（HTTP リクエスト・ジョブなど）に紐づく識別子と同意状態"""

from __future__ import annotations

import uuid
from typing import Any, Callable

SessionIdProvider = Callable[[], "str | None"]


class RequestScope:
    """リクエストスコープの状態。処理単位の終わりに必ず reset() する。

    Args:
        session_id_provider: 現在のセッション ID を返す関数。
            未指定または None を返した場合は request_id をセッション ID として使う。
    """

    def __init__(self, session_id_provider: SessionIdProvider | None = None) -> None:
        self._session_id_provider = session_id_provider
        self.request_id: str | None = None
        self.session_id: str | None = None
        self._device_id: str | None = None
        self._consent: bool | None = None
        self._initialized = False

    def initialize(self) -> None:
        self.request_id = str(uuid.uuid4())
        session_id = self._session_id_provider() if self._session_id_provider else None
        self.session_id = session_id or self.request_id
        self._initialized = True

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def device_id(self) -> str:
        """デバイス ID。未設定ならこのスコープの間だけ有効な ID を生成する。"""
        if self._device_id is None:
            self._device_id = str(uuid.uuid4())
        return self._device_id

    @device_id.setter
    def device_id(self, device_id: str) -> None:
        self._device_id = device_id

    @property
    def has_consent(self) -> bool:
        return bool(self._consent)

    def grant_consent(self) -> None:
        self._consent = True

    def revoke_consent(self) -> None:
        self._consent = False

    def reset(self) -> None:
        self.request_id = None
        self.session_id = None
        self._device_id = None
        self._consent = None
        self._initialized = False

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "request_id": self.request_id}
