"""
発音スコアリングサービス
ユーザーの録音をお手本音声と比較し、類似度スコアとフィードバックを算出する
"""

import asyncio
from typing import Dict, List, Mapping

import numpy as np

from pronunciation_app.errors import InvalidOptionsError
from pronunciation_app.models.schemas import (
    AudioAnalysis,
    FeedbackKey,
    PronunciationScore,
    ScoreAnalysis,
    ScoringOptions,
)
from pronunciation_app.services.audio_analyzer import AudioAnalyzer
from pronunciation_app.services.audio_decoder import AudioDecoder, AudioSource, resolve_default_decoder

# お手本がない場合の基準スコア（発音の比較ができないため控えめ）
FALLBACK_BASELINE_SCORE = 75
# フォールバック時の信頼度
FALLBACK_CONFIDENCE = 50
# almostThereとする合格ラインからの幅
ALMOST_THERE_MARGIN = 20
# お手本のピーク振幅に対してこれ未満なら「もっと大きな声で」
QUIET_PEAK_RATIO = 0.3
# 長さ比がこれ未満なら急ぎすぎ（「もっとゆっくり」）
RUSHED_DURATION_RATIO = 0.8

DEFAULT_FEEDBACK_MESSAGES: Dict[str, str] = {
    FeedbackKey.EXCELLENT.value: "Excellent! That sounded just like the native speaker.",
    FeedbackKey.GOOD.value: "Good job! Your pronunciation is clear.",
    FeedbackKey.ALMOST_THERE.value: "Almost there! Listen once more and try again.",
    FeedbackKey.TRY_SLOWER.value: "Try speaking a little more slowly.",
    FeedbackKey.TRY_LOUDER.value: "Try speaking a little louder.",
    FeedbackKey.TOO_SHORT.value: "Your recording was too short. Say the whole phrase.",
    FeedbackKey.TOO_LONG.value: "Your recording was too long. Try to match the pace.",
    FeedbackKey.NEEDS_WORK.value: "Keep practicing! Listen to the example and try again.",
}


def validate_options(options: ScoringOptions) -> None:
    """
    スコアリングオプションの範囲を検証

    Raises:
        InvalidOptionsError: 範囲外の値がある場合
    """
    for name in ("passing_threshold", "excellent_threshold"):
        value: float = getattr(options, name)
        if not 0 <= value <= 100:
            raise InvalidOptionsError(f"{name} must be between 0 and 100 (got {value})")
    if options.passing_threshold > options.excellent_threshold:
        raise InvalidOptionsError("passing_threshold must not exceed excellent_threshold")
    if options.analysis_segments < 1:
        raise InvalidOptionsError(f"analysis_segments must be at least 1 (got {options.analysis_segments})")
    if options.min_duration_ratio <= 0 or options.max_duration_ratio <= 0:
        raise InvalidOptionsError("duration ratios must be positive")
    if options.min_duration_ratio > options.max_duration_ratio:
        raise InvalidOptionsError("min_duration_ratio must not exceed max_duration_ratio")


def _clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def _resample_profile(profile: List[float], target_length: int) -> np.ndarray:
    """プロファイルを線形補間で指定の長さに揃える"""
    values: np.ndarray = np.asarray(profile, dtype=np.float64)
    if values.size == target_length:
        return values
    if values.size == 1 or target_length == 1:
        return np.full(target_length, float(np.mean(values)))
    source_x: np.ndarray = np.linspace(0.0, 1.0, values.size)
    target_x: np.ndarray = np.linspace(0.0, 1.0, target_length)
    return np.interp(target_x, source_x, values)


def compare_envelopes(user_envelope: List[float], reference_envelope: List[float]) -> float:
    """
    正規化済みエンベロープ同士の類似度

    1 - 平均絶対誤差を0-1に制限し、0-100に換算する。
    長さが異なる場合は短い方に補間して揃える。

    Returns:
        類似度（0-100）
    """
    if not user_envelope or not reference_envelope:
        return 0.0
    length: int = min(len(user_envelope), len(reference_envelope))
    user: np.ndarray = _resample_profile(user_envelope, length)
    reference: np.ndarray = _resample_profile(reference_envelope, length)
    mean_difference: float = float(np.mean(np.abs(user - reference)))
    return _clamp(1.0 - mean_difference, 0.0, 1.0) * 100


def duration_penalty_factor(duration_ratio: float, min_ratio: float, max_ratio: float) -> float:
    """
    長さ比による減点係数

    許容範囲内は1.0。範囲より短い場合はratio/min_ratio、長い場合は
    上限からの超過分に比例して下がり、上限の2倍で0になる。

    Returns:
        係数（0-1）
    """
    if duration_ratio < min_ratio:
        return _clamp(duration_ratio / min_ratio, 0.0, 1.0)
    if duration_ratio > max_ratio:
        return _clamp(1.0 - (duration_ratio - max_ratio) / max_ratio, 0.0, 1.0)
    return 1.0


def _duration_score(duration_ratio: float, options: ScoringOptions) -> float:
    """1:1にどれだけ近いか（0-100、診断用）"""
    distance: float = abs(1.0 - duration_ratio)
    if duration_ratio < options.min_duration_ratio or duration_ratio > options.max_duration_ratio:
        return max(0.0, 100 - distance * 100)
    return 100 - distance * 50


def _ratio_score(value: float, reference: float) -> float:
    """比が1にどれだけ近いか（0-100）"""
    ratio: float = value / (reference or 1.0)
    return 100 - min(100.0, abs(1.0 - ratio) * 100)


def select_feedback(
    similarity: int,
    duration_ratio: float,
    options: ScoringOptions,
    user: AudioAnalysis | None = None,
    reference: AudioAnalysis | None = None,
) -> FeedbackKey:
    """
    フィードバックキーを選択

    長さの問題が最優先。次にしきい値による判定、その後お手本がある場合のみ
    音量・速さの診断を行い、いずれにも当てはまらなければneedsWork。

    Args:
        similarity: 類似度（0-100）
        duration_ratio: 長さ比
        options: スコアリングオプション
        user: ユーザー音声の解析データ（音量・速さの診断用）
        reference: お手本音声の解析データ（音量・速さの診断用）

    Returns:
        フィードバックキー
    """
    if duration_ratio <= options.min_duration_ratio:
        return FeedbackKey.TOO_SHORT
    if duration_ratio >= options.max_duration_ratio:
        return FeedbackKey.TOO_LONG
    if similarity >= options.excellent_threshold:
        return FeedbackKey.EXCELLENT
    if similarity >= options.passing_threshold:
        return FeedbackKey.GOOD
    if similarity >= options.passing_threshold - ALMOST_THERE_MARGIN:
        return FeedbackKey.ALMOST_THERE

    if user is not None and reference is not None:
        if user.peak_amplitude < reference.peak_amplitude * QUIET_PEAK_RATIO:
            return FeedbackKey.TRY_LOUDER
        if duration_ratio < RUSHED_DURATION_RATIO:
            return FeedbackKey.TRY_SLOWER

    return FeedbackKey.NEEDS_WORK


def calculate_xp_reward(
    score: float,
    attempt_number: int,
    passing_threshold: float = 70,
    excellent_threshold: float = 90,
) -> int:
    """
    スコアと試行回数から付与するXPを計算

    - 合格ライン未満: 0 XP
    - 1回目で優秀ライン以上: 15 XP
    - 1回目で合格: 10 XP
    - 2回目で合格: 7 XP
    - 3回目以降で合格: 5 XP
    """
    if score < passing_threshold:
        return 0
    if attempt_number <= 1:
        return 15 if score >= excellent_threshold else 10
    if attempt_number == 2:
        return 7
    return 5


def is_pronunciation_scoring_supported(decoder: AudioDecoder | None = None) -> bool:
    """
    発音スコアリングがこの環境で利用可能か

    Args:
        decoder: 確認するデコーダー（省略時は既定のデコーダー）

    Returns:
        音声デコード機能がある場合True
    """
    target: AudioDecoder = decoder if decoder is not None else resolve_default_decoder()
    return target.is_available()


def get_feedback_message(score: PronunciationScore, messages: Mapping[str, str] | None = None) -> str:
    """
    スコアのフィードバックキーに対応するメッセージを取得

    Args:
        score: スコアリング結果
        messages: キーごとのローカライズ済みメッセージ（不足分は英語の既定値）

    Returns:
        表示用メッセージ
    """
    key: str = score.feedback_key.value
    if messages and key in messages:
        return messages[key]
    return DEFAULT_FEEDBACK_MESSAGES[key]


class PronunciationScorer:
    """お手本との比較、または長さのみによる発音スコアリングを行うサービスクラス"""

    def __init__(self, analyzer: AudioAnalyzer) -> None:
        """
        初期化処理

        Args:
            analyzer: 音声解析サービス
        """
        self.analyzer: AudioAnalyzer = analyzer

    @property
    def is_supported(self) -> bool:
        """音声デコード機能が利用可能か"""
        return self.analyzer.is_supported

    async def score(
        self,
        user_audio: AudioSource,
        reference_audio: AudioSource,
        attempt_number: int = 1,
        options: ScoringOptions | None = None,
    ) -> PronunciationScore:
        """
        ユーザーの録音をお手本音声と比較してスコアリング

        Args:
            user_audio: ユーザーの録音
            reference_audio: お手本音声
            attempt_number: 試行回数（1始まり）
            options: スコアリングオプション

        Returns:
            スコアリング結果

        Raises:
            InvalidOptionsError: オプションが範囲外の場合
            DecodeError: 音声を取得・デコードできない場合
        """
        opts: ScoringOptions = options or ScoringOptions()
        validate_options(opts)

        user, reference = await asyncio.gather(
            self.analyzer.analyze(user_audio, opts.analysis_segments),
            self.analyzer.analyze(reference_audio, opts.analysis_segments),
        )

        if reference.duration_seconds > 0:
            duration_ratio: float = user.duration_seconds / reference.duration_seconds
        else:
            duration_ratio = 1.0

        envelope_score: float = compare_envelopes(user.envelope, reference.envelope)
        factor: float = duration_penalty_factor(
            duration_ratio, opts.min_duration_ratio, opts.max_duration_ratio
        )
        similarity: int = int(_clamp(round(envelope_score * factor), 0, 100))

        confidence: int = int(
            _clamp(round(user.peak_amplitude / (reference.peak_amplitude or 0.001) * 100), 0, 100)
        )

        return PronunciationScore(
            similarity=similarity,
            confidence=confidence,
            passed=similarity >= opts.passing_threshold,
            excellent=similarity >= opts.excellent_threshold,
            duration_ratio=duration_ratio,
            attempt_number=attempt_number,
            analysis=ScoreAnalysis(
                envelope_score=round(envelope_score),
                duration_factor=factor,
                duration_score=round(_duration_score(duration_ratio, opts)),
                energy_score=round(_ratio_score(user.peak_amplitude, reference.peak_amplitude)),
                rhythm_score=round(_ratio_score(user.zero_crossing_rate, reference.zero_crossing_rate)),
            ),
            feedback_key=select_feedback(similarity, duration_ratio, opts, user, reference),
            xp_reward=calculate_xp_reward(
                similarity, attempt_number, opts.passing_threshold, opts.excellent_threshold
            ),
        )

    async def score_fallback(
        self,
        user_audio: AudioSource,
        expected_duration: float = 1.5,
        attempt_number: int = 1,
        options: ScoringOptions | None = None,
    ) -> PronunciationScore:
        """
        お手本音声がない場合のスコアリング（長さの妥当性のみ）

        Args:
            user_audio: ユーザーの録音
            expected_duration: 想定される発話時間（秒）
            attempt_number: 試行回数（1始まり）
            options: スコアリングオプション

        Returns:
            スコアリング結果
        """
        opts: ScoringOptions = options or ScoringOptions()
        validate_options(opts)

        user: AudioAnalysis = await self.analyzer.analyze(user_audio, opts.analysis_segments)

        if expected_duration > 0:
            duration_ratio: float = user.duration_seconds / expected_duration
        else:
            duration_ratio = 1.0

        factor: float = duration_penalty_factor(
            duration_ratio, opts.min_duration_ratio, opts.max_duration_ratio
        )
        similarity: int = int(_clamp(round(FALLBACK_BASELINE_SCORE * factor), 0, 100))

        # 診断用の内訳（スコアには影響しない）
        if duration_ratio < opts.min_duration_ratio or duration_ratio > opts.max_duration_ratio:
            duration_score: int = 50
        elif duration_ratio < 0.75 or duration_ratio > 1.5:
            duration_score = 75
        else:
            duration_score = 100
        if user.peak_amplitude > 0.1:
            energy_score: int = 100
        elif user.peak_amplitude > 0.05:
            energy_score = 75
        else:
            energy_score = 50
        # 発話の場合、ゼロ交差はおおよそ500-10000回/秒
        rhythm_score: int = 100 if 500 < user.zero_crossing_rate < 10000 else 70

        return PronunciationScore(
            similarity=similarity,
            confidence=FALLBACK_CONFIDENCE,
            passed=similarity >= opts.passing_threshold,
            excellent=similarity >= opts.excellent_threshold,
            duration_ratio=duration_ratio,
            attempt_number=attempt_number,
            analysis=ScoreAnalysis(
                envelope_score=FALLBACK_BASELINE_SCORE,
                duration_factor=factor,
                duration_score=duration_score,
                energy_score=energy_score,
                rhythm_score=rhythm_score,
            ),
            feedback_key=select_feedback(similarity, duration_ratio, opts),
            xp_reward=calculate_xp_reward(
                similarity, attempt_number, opts.passing_threshold, opts.excellent_threshold
            ),
        )
