"""flagengine ライブラリの例外型定義"""

from __future__ import annotations


class FlagEngineError(Exception):
    """flagengine ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagEngineErrorCodes:
    """FlagEngineError のエラーコード定数。"""

    HTTP_ERROR: str = "HTTP_ERROR"
    CONNECTION_ERROR: str = "CONNECTION_ERROR"
    INVALID_RESPONSE: str = "INVALID_RESPONSE"
    API_KEY_MISSING: str = "API_KEY_MISSING"
    CIRCUIT_OPEN: str = "CIRCUIT_OPEN"
    SYNC_FAILED: str = "SYNC_FAILED"
    CIRCULAR_DEPENDENCY: str = "CIRCULAR_DEPENDENCY"


class OriginUnavailableError(FlagEngineError):
    """オリジンサービスに到達できない場合のエラー。"""


class CircuitOpenError(OriginUnavailableError):
    """サーキットブレーカーが開いているため呼び出しを行わなかった場合のエラー。"""

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = remaining_seconds
        super().__init__(
            code=FlagEngineErrorCodes.CIRCUIT_OPEN,
            message=f"Circuit breaker is open, remaining: {remaining_seconds:.1f}s",
        )


class FlagSyncError(FlagEngineError):
    """フォールバック方式が exception のときに同期失敗を呼び出し元へ伝えるエラー。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(
            code=FlagEngineErrorCodes.SYNC_FAILED,
            message=message,
            cause=cause,
        )


class CircularDependencyError(FlagEngineError):
    """フラグ依存関係が循環している場合のエラー。"""

    def __init__(self, flag_key: str) -> None:
        self.flag_key = flag_key
        super().__init__(
            code=FlagEngineErrorCodes.CIRCULAR_DEPENDENCY,
            message=f"Circular dependency detected: {flag_key}",
        )


class ConfigError(FlagEngineError):
    """設定ファイルの読み込み・検証エラー。"""


class ConfigErrorCodes:
    """ConfigError のエラーコード定数。"""

    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    VALIDATION: str = "VALIDATION_ERROR"
