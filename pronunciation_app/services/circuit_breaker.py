"""
サーキットブレーカー
失敗率を監視し、しきい値を超えた場合は処理を呼ばずに即座に失敗させる

状態:
    CLOSED: 通常動作。処理をそのまま実行する
    OPEN: 失敗が多すぎるため即座に失敗する
    HALF_OPEN: 回復を確認するため、限られた数の試行のみ許可する
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, TypeVar

from pronunciation_app.errors import CircuitHalfOpenExhaustedError, CircuitOpenError
from pronunciation_app.models.schemas import CircuitBreakerConfig, CircuitBreakerStats, CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RequestRecord:
    """1回のリクエスト結果"""

    timestamp: float
    success: bool


class CircuitBreaker:
    """失敗率ベースのサーキットブレーカー"""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        初期化処理

        Args:
            name: ブレーカー名（ログとエラーメッセージに使用）
            config: 設定（省略時は既定値）
            clock: 現在時刻（秒）を返す関数
        """
        self.name: str = name
        self.config: CircuitBreakerConfig = config or CircuitBreakerConfig()
        self._clock: Callable[[], float] = clock
        self._lock: threading.Lock = threading.Lock()

        self._state: CircuitState = CircuitState.CLOSED
        # 直近window_size件のみ保持（古いものから破棄）
        self._history: Deque[RequestRecord] = deque(maxlen=self.config.window_size)
        self._opened_at: float | None = None
        self._half_open_attempts: int = 0

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        処理をブレーカー経由で実行

        Args:
            operation: 引数なしで呼び出すとawaitableを返す関数

        Returns:
            処理の戻り値

        Raises:
            CircuitOpenError: OPEN状態の場合（処理は呼ばれない）
            CircuitHalfOpenExhaustedError: HALF_OPENで試行数の上限に達した場合
        """
        with self._lock:
            self._check_state_transition()

            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(self.name)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_attempts >= self.config.half_open_max_attempts:
                    raise CircuitHalfOpenExhaustedError(self.name)
                self._half_open_attempts += 1

        # ロックは処理の実行中には保持しない
        try:
            result: T = await operation()
        except asyncio.CancelledError:
            # キャンセルは失敗として数えず、HALF_OPENの試行枠だけ返す
            self._release_half_open_attempt()
            raise
        except Exception:
            self._record_failure()
            raise

        self._record_success()
        return result

    def _release_half_open_attempt(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_attempts > 0:
                self._half_open_attempts -= 1

    def _record_success(self) -> None:
        with self._lock:
            self._history.append(RequestRecord(timestamp=self._clock(), success=True))

            if self._state == CircuitState.HALF_OPEN:
                logger.info("[CircuitBreaker:%s] Half-open test succeeded, closing circuit", self.name)
                self._state = CircuitState.CLOSED
                self._opened_at = None
                self._half_open_attempts = 0

    def _record_failure(self) -> None:
        with self._lock:
            now: float = self._clock()
            self._history.append(RequestRecord(timestamp=now, success=False))

            if self._state == CircuitState.HALF_OPEN:
                logger.warning("[CircuitBreaker:%s] Half-open test failed, re-opening circuit", self.name)
                self._state = CircuitState.OPEN
                self._opened_at = now
                self._half_open_attempts = 0
                return

            if self._state != CircuitState.CLOSED:
                return
            if len(self._history) < self.config.minimum_requests:
                return

            failure_rate: float = self._failure_rate()
            if failure_rate >= self.config.failure_threshold:
                logger.warning(
                    "[CircuitBreaker:%s] Opening circuit - failure rate: %.1f%%", self.name, failure_rate
                )
                self._state = CircuitState.OPEN
                self._opened_at = now

    def _failure_rate(self) -> float:
        """直近の履歴に対する失敗率（%）"""
        if not self._history:
            return 0.0
        failures: int = sum(1 for record in self._history if not record.success)
        return failures / len(self._history) * 100

    def _check_state_transition(self) -> None:
        """OPENでリセット待ち時間を過ぎていればHALF_OPENへ移行（ロック保持中に呼ぶ）"""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed_ms: float = (self._clock() - self._opened_at) * 1000
        if elapsed_ms >= self.config.reset_timeout:
            logger.info("[CircuitBreaker:%s] Reset timeout elapsed, entering half-open state", self.name)
            self._state = CircuitState.HALF_OPEN
            self._half_open_attempts = 0

    @property
    def state(self) -> CircuitState:
        """現在の状態（時間経過による遷移を反映）"""
        with self._lock:
            self._check_state_transition()
            return self._state

    def get_stats(self) -> CircuitBreakerStats:
        """
        統計情報を取得

        Returns:
            状態、失敗率、成功/失敗件数などを含む統計
        """
        with self._lock:
            failures: int = sum(1 for record in self._history if not record.success)
            return CircuitBreakerStats(
                name=self.name,
                state=self._state,
                failure_rate=round(self._failure_rate()),
                success_count=len(self._history) - failures,
                failure_count=failures,
                request_count=len(self._history),
                opened_at=self._opened_at,
                half_open_attempts=self._half_open_attempts,
            )

    def reset(self) -> None:
        """手動でCLOSEDに戻し、履歴を消去する"""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._history.clear()
            self._opened_at = None
            self._half_open_attempts = 0
        logger.info("[CircuitBreaker:%s] Manually reset to CLOSED", self.name)


class CircuitBreakerRegistry:
    """名前ごとのサーキットブレーカーを保持するレジストリ"""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """
        初期化処理

        Args:
            clock: 生成するブレーカーに渡す時刻関数
        """
        self._clock: Callable[[], float] = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock: threading.Lock = threading.Lock()

    def get(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """
        名前に対応するブレーカーを取得（なければ作成）
        既に存在する場合、configは無視される

        Args:
            name: ブレーカー名
            config: 新規作成時の設定

        Returns:
            サーキットブレーカー
        """
        with self._lock:
            breaker: CircuitBreaker | None = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config, clock=self._clock)
                self._breakers[name] = breaker
            return breaker

    def all(self) -> Dict[str, CircuitBreaker]:
        """登録済みの全ブレーカー"""
        with self._lock:
            return dict(self._breakers)

    def reset_all(self) -> None:
        """全ブレーカーをリセット"""
        for breaker in self.all().values():
            breaker.reset()
