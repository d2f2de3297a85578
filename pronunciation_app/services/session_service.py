"""
スコアリングセッションサービス
1枚の練習カードにおける試行回数と状態（idle/scoring/complete/error）を管理する
"""

import logging
from typing import Callable

from pronunciation_app.errors import UnsupportedEnvironmentError
from pronunciation_app.models.schemas import PronunciationScore, ScoringOptions, ScoringState, SessionOptions
from pronunciation_app.services.audio_decoder import AudioSource
from pronunciation_app.services.scoring_service import PronunciationScorer

logger = logging.getLogger(__name__)


class ScoringSession:
    """
    発音スコアリングのセッション

    同じセッションでscore_recordingを同時に複数呼び出さないこと
    （呼び出し側の責務）。
    """

    def __init__(
        self,
        scorer: PronunciationScorer,
        options: SessionOptions | None = None,
        on_score_complete: Callable[[PronunciationScore], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            scorer: 発音スコアリングサービス
            options: セッションのオプション
            on_score_complete: スコアリング完了時のコールバック
            on_error: エラー時のコールバック
        """
        self.scorer: PronunciationScorer = scorer
        self.options: SessionOptions = options or SessionOptions()
        self.on_score_complete: Callable[[PronunciationScore], None] | None = on_score_complete
        self.on_error: Callable[[Exception], None] | None = on_error

        self.state: ScoringState = ScoringState.IDLE
        self.attempt_number: int = 1
        self.last_score: PronunciationScore | None = None
        self.last_error: str | None = None

    @property
    def is_supported(self) -> bool:
        """この環境でスコアリングが可能か"""
        return self.scorer.is_supported

    def _scoring_options(self) -> ScoringOptions:
        return ScoringOptions(
            passing_threshold=self.options.passing_threshold,
            excellent_threshold=self.options.excellent_threshold,
            analysis_segments=self.options.analysis_segments,
            min_duration_ratio=self.options.min_duration_ratio,
            max_duration_ratio=self.options.max_duration_ratio,
        )

    async def score_recording(
        self,
        user_audio: AudioSource,
        reference_audio: AudioSource | None = None,
    ) -> PronunciationScore | None:
        """
        録音をスコアリング

        お手本音声があれば比較スコアリング、なければ長さのみのフォールバック。

        Args:
            user_audio: ユーザーの録音
            reference_audio: お手本音声（オプション）

        Returns:
            スコアリング結果、失敗時はNone
        """
        if not self.is_supported:
            self._fail(UnsupportedEnvironmentError("Pronunciation scoring is not supported in this environment"))
            return None

        self.state = ScoringState.SCORING
        self.last_error = None

        try:
            if reference_audio is not None:
                result: PronunciationScore = await self.scorer.score(
                    user_audio,
                    reference_audio,
                    self.attempt_number,
                    self._scoring_options(),
                )
            else:
                result = await self.scorer.score_fallback(
                    user_audio,
                    self.options.expected_duration,
                    self.attempt_number,
                    self._scoring_options(),
                )
        except Exception as e:
            self._fail(e)
            return None

        self.last_score = result
        self.state = ScoringState.COMPLETE
        if self.on_score_complete:
            self.on_score_complete(result)
        return result

    def _fail(self, error: Exception) -> None:
        """エラー状態に遷移してコールバックを呼ぶ"""
        message: str = str(error) or "Failed to score pronunciation"
        logger.warning("発音スコアリングに失敗しました（試行%d回目）: %s", self.attempt_number, message)
        self.last_error = message
        self.state = ScoringState.ERROR
        if self.on_error:
            self.on_error(error)

    def reset(self) -> None:
        """もう一度挑戦する（試行回数を上限まで増やす）"""
        self.last_score = None
        self.last_error = None
        self.state = ScoringState.IDLE
        self.attempt_number = min(self.attempt_number + 1, self.options.max_attempts)

    def skip(self) -> None:
        """スキップする（試行回数を1に戻す）"""
        self.last_score = None
        self.last_error = None
        self.state = ScoringState.IDLE
        self.attempt_number = 1
