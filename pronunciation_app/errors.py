"""
例外定義
発音スコアリングと周辺ユーティリティが送出するエラーの分類
"""


class PronunciationAppError(Exception):
    """アプリケーション固有エラーの基底クラス"""


class DecodeError(PronunciationAppError):
    """音声データを取得・デコードできない（破損、未対応形式、空データ、タイムアウト）"""


class UnsupportedEnvironmentError(PronunciationAppError):
    """音声デコード機能が利用できない環境"""


class InvalidOptionsError(PronunciationAppError, ValueError):
    """スコアリングオプションが範囲外"""


class CircuitBreakerError(PronunciationAppError):
    """サーキットブレーカーによる保護的な失敗（時間をおいて再試行可能）"""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(message)
        self.name: str = name


class CircuitOpenError(CircuitBreakerError):
    """サーキットがOPENのため即座に失敗した"""

    def __init__(self, name: str) -> None:
        super().__init__(name, f"Circuit breaker '{name}' is OPEN - failing fast")


class CircuitHalfOpenExhaustedError(CircuitBreakerError):
    """HALF_OPEN状態で試行回数の上限に達した"""

    def __init__(self, name: str) -> None:
        super().__init__(name, f"Circuit breaker '{name}' is HALF_OPEN but max attempts exceeded")
