"""flagsync の例外型"""

from __future__ import annotations


class FlagError(Exception):
    """flagsync ライブラリの基底例外。"""

    code: str = "FLAG_ERROR"

    def __init__(
        self,
        code: str | None = None,
        message: str = "",
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagErrorCodes:
    """FlagError のエラーコード定数。"""

    TRANSPORT_ERROR: str = "TRANSPORT_ERROR"
    SERVER_ERROR: str = "SERVER_ERROR"
    MALFORMED_RESPONSE: str = "MALFORMED_RESPONSE"
    SERIALIZATION_ERROR: str = "SERIALIZATION_ERROR"
    PERSISTENCE_ERROR: str = "PERSISTENCE_ERROR"
    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    CONFIG_ERROR: str = "CONFIG_ERROR"


class TransportError(FlagError):
    """API との通信時の接続失敗やタイムアウト。"""

    code = FlagErrorCodes.TRANSPORT_ERROR

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message=message, cause=cause)


class ServerError(FlagError):
    """API からの 2xx 以外のレスポンス。"""

    code = FlagErrorCodes.SERVER_ERROR

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message=message)
        self.status_code = status_code


class MalformedResponseError(FlagError):
    """レスポンスボディを期待する形式に変換できない。"""

    code = FlagErrorCodes.MALFORMED_RESPONSE

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message=message, cause=cause)


class SerializationError(FlagError):
    """ペイロードのエンコードまたはデコードに失敗した。"""

    code = FlagErrorCodes.SERIALIZATION_ERROR

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message=message, cause=cause)


class PersistenceError(FlagError):
    """ストレージの読み込みまたは保存に失敗した。"""

    code = FlagErrorCodes.PERSISTENCE_ERROR

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message=message, cause=cause)
