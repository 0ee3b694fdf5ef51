"""energy_sync の例外型定義"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """公開境界を越えるエラー分類。"""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    TRANSIENT = "TRANSIENT"
    NOT_FOUND = "NOT_FOUND"
    PERMANENT = "PERMANENT"


class SyncError(Exception):
    """energy_sync ライブラリのエラー基底クラス。"""

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class AuthRequiredError(SyncError):
    """No valid session is available and it could not be refreshed."""

    kind = ErrorKind.AUTH_REQUIRED

    def __init__(self, message: str = "Authentication required", cause: Exception | None = None) -> None:
        super().__init__(ErrorKindCodes.AUTH_REQUIRED, message, cause)


class TransientError(SyncError):
    """Network, timeout or rate-limit failure that outlived its retries."""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(code, message, cause)
        self.attempts = attempts


class NotFoundError(SyncError):
    """The remote operation or entity does not exist."""

    kind = ErrorKind.NOT_FOUND


class PermanentError(SyncError):
    """Validation or business-rule rejection. Never retried."""

    kind = ErrorKind.PERMANENT

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
        duplicate: bool = False,
    ) -> None:
        super().__init__(code, message, cause)
        self.duplicate = duplicate


class ConfigError(SyncError):
    """設定ファイルの読み込み・検証エラー。"""


class ErrorKindCodes:
    """SyncError のエラーコード定数。"""

    AUTH_REQUIRED: str = "AUTH_REQUIRED"
    INVALID_RESULT: str = "INVALID_RESULT"
    REPLAY_ABANDONED: str = "REPLAY_ABANDONED"
    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    VALIDATION: str = "VALIDATION_ERROR"

