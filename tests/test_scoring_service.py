"""
発音スコアリングサービスのテスト
"""
import io
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest
import scipy.io.wavfile as wavfile

from pronunciation_app.errors import DecodeError, InvalidOptionsError
from pronunciation_app.models.schemas import AudioAnalysis, FeedbackKey, ScoringOptions
from pronunciation_app.services.audio_analyzer import AudioAnalyzer
from pronunciation_app.services.audio_decoder import AudioDecoder, WavAudioDecoder
from pronunciation_app.services.scoring_service import (
    DEFAULT_FEEDBACK_MESSAGES,
    PronunciationScorer,
    calculate_xp_reward,
    compare_envelopes,
    duration_penalty_factor,
    get_feedback_message,
    is_pronunciation_scoring_supported,
    select_feedback,
    validate_options,
)


class UnavailableDecoder(AudioDecoder):
    """デコード機能がない環境を模したデコーダー"""

    def is_available(self) -> bool:
        return False

    async def decode(self, data):
        raise AssertionError("decode should not be called")


def make_analysis(peak: float = 0.5, duration: float = 1.0) -> AudioAnalysis:
    """診断用の解析データを作成"""
    return AudioAnalysis(
        duration_seconds=duration,
        envelope=[1.0],
        energy_profile=[peak],
        peak_amplitude=peak,
        zero_crossing_rate=440.0,
    )


class TestCalculateXpReward:
    """XP計算のテストクラス"""

    @pytest.mark.parametrize(
        "score, attempt, expected",
        [
            (95, 1, 15),
            (90, 1, 15),
            (89, 1, 10),
            (70, 1, 10),
            (69, 1, 0),
            (90, 2, 7),
            (70, 3, 5),
            (90, 5, 5),
            (0, 1, 0),
        ],
    )
    def test_reward_table(self, score, attempt, expected):
        """スコアと試行回数からXPが決まる"""
        assert calculate_xp_reward(score, attempt) == expected

    def test_custom_thresholds(self):
        """しきい値を変更できる"""
        assert calculate_xp_reward(60, 1, passing_threshold=60, excellent_threshold=80) == 10
        assert calculate_xp_reward(80, 1, passing_threshold=60, excellent_threshold=80) == 15


class TestHelpers:
    """スコア計算の部品のテストクラス"""

    def test_duration_penalty_factor_within_range(self):
        """許容範囲内は減点なし"""
        assert duration_penalty_factor(1.0, 0.5, 2.0) == 1.0
        assert duration_penalty_factor(0.5, 0.5, 2.0) == 1.0
        assert duration_penalty_factor(2.0, 0.5, 2.0) == 1.0

    def test_duration_penalty_factor_too_short(self):
        """短すぎる場合はratio/min_ratio"""
        assert duration_penalty_factor(0.25, 0.5, 2.0) == pytest.approx(0.5)

    def test_duration_penalty_factor_too_long(self):
        """長すぎる場合は超過分に比例して下がり、0未満にはならない"""
        assert duration_penalty_factor(2.5, 0.5, 2.0) == pytest.approx(0.75)
        assert duration_penalty_factor(10.0, 0.5, 2.0) == 0.0

    def test_compare_envelopes_identical(self):
        """同じエンベロープは100"""
        assert compare_envelopes([0.2, 1.0, 0.5], [0.2, 1.0, 0.5]) == pytest.approx(100.0)

    def test_compare_envelopes_opposite(self):
        """正反対のエンベロープは0"""
        assert compare_envelopes([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_compare_envelopes_different_lengths(self):
        """長さが違っても比較できる"""
        assert compare_envelopes([0.0, 0.5, 1.0], [0.0, 1.0]) == pytest.approx(100.0)

    def test_compare_envelopes_empty(self):
        """空のエンベロープは0"""
        assert compare_envelopes([], [1.0]) == 0.0

    def test_validate_options_accepts_defaults(self):
        """既定のオプションは有効"""
        validate_options(ScoringOptions())

    @pytest.mark.parametrize(
        "overrides",
        [
            {"passing_threshold": 120},
            {"excellent_threshold": -1},
            {"passing_threshold": 95, "excellent_threshold": 90},
            {"analysis_segments": 0},
            {"min_duration_ratio": 0},
            {"min_duration_ratio": 3.0, "max_duration_ratio": 2.0},
        ],
    )
    def test_validate_options_rejects_out_of_range(self, overrides):
        """範囲外のオプションはInvalidOptionsError"""
        with pytest.raises(InvalidOptionsError):
            validate_options(ScoringOptions(**overrides))


class TestSelectFeedback:
    """フィードバック選択のテストクラス"""

    @pytest.fixture
    def options(self):
        return ScoringOptions()

    def test_duration_takes_priority(self, options):
        """長さの問題はスコアより優先される（境界値を含む）"""
        assert select_feedback(100, 0.5, options) == FeedbackKey.TOO_SHORT
        assert select_feedback(100, 0.3, options) == FeedbackKey.TOO_SHORT
        assert select_feedback(100, 2.0, options) == FeedbackKey.TOO_LONG

    def test_threshold_bands(self, options):
        """しきい値による判定"""
        assert select_feedback(90, 1.0, options) == FeedbackKey.EXCELLENT
        assert select_feedback(89, 1.0, options) == FeedbackKey.GOOD
        assert select_feedback(70, 1.0, options) == FeedbackKey.GOOD
        assert select_feedback(69, 1.0, options) == FeedbackKey.ALMOST_THERE
        assert select_feedback(50, 1.0, options) == FeedbackKey.ALMOST_THERE
        assert select_feedback(49, 1.0, options) == FeedbackKey.NEEDS_WORK

    def test_quiet_recording(self, options):
        """お手本よりかなり小さい声はtryLouder"""
        user = make_analysis(peak=0.1)
        reference = make_analysis(peak=0.5)
        assert select_feedback(30, 1.0, options, user, reference) == FeedbackKey.TRY_LOUDER

    def test_rushed_recording(self, options):
        """急ぎすぎはtrySlower"""
        user = make_analysis(peak=0.5)
        reference = make_analysis(peak=0.5)
        assert select_feedback(30, 0.7, options, user, reference) == FeedbackKey.TRY_SLOWER

    def test_diagnostics_need_reference(self, options):
        """お手本がない場合は音量・速さの診断をしない"""
        assert select_feedback(30, 0.7, options) == FeedbackKey.NEEDS_WORK

    def test_diagnostics_do_not_override_almost_there(self, options):
        """almostThereの範囲では音量・速さの診断をしない"""
        user = make_analysis(peak=0.01)
        reference = make_analysis(peak=0.5)
        assert select_feedback(60, 0.7, options, user, reference) == FeedbackKey.ALMOST_THERE


class TestPronunciationScorer:
    """PronunciationScorerのテストクラス"""

    @pytest.fixture
    def scorer(self):
        """WAVデコーダーを使うスコアリングサービス"""
        return PronunciationScorer(AudioAnalyzer(WavAudioDecoder(), decode_timeout=5.0))

    @pytest.mark.asyncio
    async def test_identical_audio_is_excellent(self, scorer, make_wav):
        """お手本と同じ音声は100点でexcellent"""
        audio = make_wav(duration=1.0, pattern=[1, 1, 0, 1])

        result = await scorer.score(audio, audio)

        assert result.similarity == 100
        assert result.confidence == 100
        assert result.passed is True
        assert result.excellent is True
        assert result.duration_ratio == pytest.approx(1.0)
        assert result.feedback_key == FeedbackKey.EXCELLENT
        assert result.xp_reward == 15
        assert result.attempt_number == 1
        assert result.analysis.envelope_score == 100
        assert result.analysis.duration_factor == 1.0
        assert result.analysis.duration_score == 100

    @pytest.mark.asyncio
    async def test_second_attempt_reward(self, scorer, make_wav):
        """2回目の合格は7 XP"""
        audio = make_wav(duration=1.0)

        result = await scorer.score(audio, audio, attempt_number=2)

        assert result.attempt_number == 2
        assert result.xp_reward == 7

    @pytest.mark.asyncio
    async def test_volume_does_not_change_similarity(self, scorer, make_wav):
        """エンベロープは正規化されるため、同じ形なら音量が違っても類似度は同じ"""
        reference = make_wav(duration=1.0, amplitude=0.8, pattern=[1, 0, 1, 1])
        user = make_wav(duration=1.0, amplitude=0.4, pattern=[1, 0, 1, 1])

        result = await scorer.score(user, reference)

        assert result.similarity == 100
        assert result.confidence == 50

    @pytest.mark.asyncio
    async def test_half_length_recording_is_too_short(self, scorer, make_wav):
        """お手本の半分の長さはtooShort"""
        reference = make_wav(duration=2.0)
        user = make_wav(duration=1.0)

        result = await scorer.score(user, reference)

        assert result.duration_ratio == pytest.approx(0.5)
        assert result.feedback_key == FeedbackKey.TOO_SHORT

    @pytest.mark.asyncio
    async def test_long_recording_is_penalized(self, scorer, make_wav):
        """長すぎる録音は減点されtooLong"""
        reference = make_wav(duration=0.4)
        user = make_wav(duration=1.0)

        result = await scorer.score(user, reference)

        assert result.duration_ratio == pytest.approx(2.5)
        assert result.analysis.duration_factor == pytest.approx(0.75)
        assert result.similarity <= 75
        assert result.feedback_key == FeedbackKey.TOO_LONG

    @pytest.mark.asyncio
    async def test_mismatched_quiet_recording(self, scorer, make_wav):
        """形が合わず声も小さい場合はtryLouder"""
        reference = make_wav(duration=1.0, amplitude=0.5, pattern=[1, 0])
        user = make_wav(duration=1.0, amplitude=0.05, pattern=[0, 1])

        result = await scorer.score(user, reference)

        assert result.similarity < 50
        assert result.passed is False
        assert result.xp_reward == 0
        assert result.feedback_key == FeedbackKey.TRY_LOUDER

    @pytest.mark.asyncio
    async def test_mismatched_rushed_recording(self, scorer, make_wav):
        """形が合わず急ぎすぎの場合はtrySlower"""
        reference = make_wav(duration=1.0, pattern=[1, 0])
        user = make_wav(duration=0.7, pattern=[0, 1])

        result = await scorer.score(user, reference)

        assert result.similarity < 50
        assert result.feedback_key == FeedbackKey.TRY_SLOWER

    @pytest.mark.asyncio
    async def test_mismatched_recording_needs_work(self, scorer, make_wav):
        """形が合わないだけの場合はneedsWork"""
        reference = make_wav(duration=1.0, pattern=[1, 0])
        user = make_wav(duration=1.0, pattern=[0, 1])

        result = await scorer.score(user, reference)

        assert result.similarity < 50
        assert result.feedback_key == FeedbackKey.NEEDS_WORK

    @pytest.mark.asyncio
    async def test_silent_reference(self, scorer, make_wav, silent_wav):
        """無音のお手本でもエラーにならない"""
        result = await scorer.score(make_wav(duration=1.0), silent_wav)

        assert 0 <= result.similarity <= 100
        assert result.confidence == 100

    @pytest.mark.asyncio
    async def test_invalid_options_rejected_before_decoding(self):
        """オプションが不正な場合は音声を解析しない"""
        analyzer = Mock(spec=AudioAnalyzer)
        analyzer.analyze = AsyncMock()
        scorer = PronunciationScorer(analyzer)

        with pytest.raises(InvalidOptionsError):
            await scorer.score(b"user", b"reference", options=ScoringOptions(passing_threshold=150))
        with pytest.raises(InvalidOptionsError):
            await scorer.score_fallback(b"user", options=ScoringOptions(analysis_segments=0))

        analyzer.analyze.assert_not_called()

    @pytest.mark.asyncio
    async def test_undecodable_audio(self, scorer, make_wav):
        """デコードできない音声はDecodeError"""
        with pytest.raises(DecodeError):
            await scorer.score(b"not a wav file", make_wav())

    @pytest.mark.asyncio
    async def test_nan_audio_is_decode_error(self, scorer, make_wav):
        """NaNを含む音声はDecodeErrorとして扱う"""
        buffer = io.BytesIO()
        wavfile.write(buffer, 16000, np.full(16000, np.nan, dtype=np.float32))

        with pytest.raises(DecodeError):
            await scorer.score(buffer.getvalue(), make_wav())

    @pytest.mark.asyncio
    async def test_fallback_matching_duration(self, scorer, make_wav):
        """想定時間どおりの録音は基準スコア75点"""
        result = await scorer.score_fallback(make_wav(duration=1.0), expected_duration=1.0)

        assert result.similarity == 75
        assert result.confidence == 50
        assert result.passed is True
        assert result.excellent is False
        assert result.feedback_key == FeedbackKey.GOOD
        assert result.xp_reward == 10
        assert result.analysis.envelope_score == 75
        assert result.analysis.duration_score == 100
        assert result.analysis.energy_score == 100

    @pytest.mark.asyncio
    async def test_fallback_short_recording(self, scorer, make_wav):
        """想定2秒に対して1秒の録音はtooShort"""
        result = await scorer.score_fallback(make_wav(duration=1.0), expected_duration=2.0)

        assert result.duration_ratio == pytest.approx(0.5)
        assert result.feedback_key == FeedbackKey.TOO_SHORT

    @pytest.mark.asyncio
    async def test_fallback_very_short_recording_is_penalized(self, scorer, make_wav):
        """想定の1/4の長さでは基準スコアが半分になる"""
        result = await scorer.score_fallback(make_wav(duration=0.5), expected_duration=2.0)

        assert result.similarity == 38
        assert result.passed is False
        assert result.xp_reward == 0
        assert result.feedback_key == FeedbackKey.TOO_SHORT

    @pytest.mark.asyncio
    async def test_fallback_zero_expected_duration(self, scorer, make_wav):
        """想定時間が0の場合は長さ比1として扱う"""
        result = await scorer.score_fallback(make_wav(duration=1.0), expected_duration=0)

        assert result.duration_ratio == 1.0
        assert result.similarity == 75

    @pytest.mark.asyncio
    async def test_fallback_is_deterministic(self, scorer, make_wav):
        """同じ入力なら同じ結果"""
        audio = make_wav(duration=1.2, pattern=[1, 0, 1])

        first = await scorer.score_fallback(audio, expected_duration=1.5)
        second = await scorer.score_fallback(audio, expected_duration=1.5)

        assert first == second

    def test_is_supported(self):
        """デコーダーの可否をそのまま返す"""
        assert PronunciationScorer(AudioAnalyzer(WavAudioDecoder())).is_supported is True
        assert PronunciationScorer(AudioAnalyzer(UnavailableDecoder())).is_supported is False


class TestSupportAndMessages:
    """環境確認とメッセージ取得のテストクラス"""

    def test_is_pronunciation_scoring_supported(self):
        """指定したデコーダーの可否を返す"""
        assert is_pronunciation_scoring_supported(WavAudioDecoder()) is True
        assert is_pronunciation_scoring_supported(UnavailableDecoder()) is False

    def test_is_pronunciation_scoring_supported_default(self):
        """既定のデコーダーはWAVに対応しているため常に利用可能"""
        assert is_pronunciation_scoring_supported() is True

    @pytest.mark.asyncio
    async def test_get_feedback_message(self, make_wav):
        """フィードバックキーに対応するメッセージを返す"""
        scorer = PronunciationScorer(AudioAnalyzer(WavAudioDecoder()))
        audio = make_wav()
        result = await scorer.score(audio, audio)

        assert get_feedback_message(result) == DEFAULT_FEEDBACK_MESSAGES["excellent"]
        assert get_feedback_message(result, {"excellent": "すばらしい！"}) == "すばらしい！"
        assert get_feedback_message(result, {"good": "よくできました"}) == DEFAULT_FEEDBACK_MESSAGES["excellent"]

    def test_all_feedback_keys_have_messages(self):
        """全てのフィードバックキーに既定メッセージがある"""
        assert set(DEFAULT_FEEDBACK_MESSAGES) == {key.value for key in FeedbackKey}
