"""
データモデル（スキーマ定義）
"""

from enum import Enum
from typing import Any, List

from pydantic import BaseModel, ConfigDict


class FeedbackKey(str, Enum):
    """フィードバックメッセージのキー（ローカライズ用）"""

    EXCELLENT = "excellent"
    GOOD = "good"
    ALMOST_THERE = "almostThere"
    TRY_SLOWER = "trySlower"
    TRY_LOUDER = "tryLouder"
    TOO_SHORT = "tooShort"
    TOO_LONG = "tooLong"
    NEEDS_WORK = "needsWork"


class ScoringState(str, Enum):
    """スコアリングセッションの状態"""

    IDLE = "idle"
    SCORING = "scoring"
    COMPLETE = "complete"
    ERROR = "error"


class CircuitState(str, Enum):
    """サーキットブレーカーの状態"""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class ScoringOptions(BaseModel):
    """スコアリングエンジンのオプション"""

    model_config = ConfigDict(frozen=True)

    passing_threshold: float = 70  # 合格ライン（0-100）
    excellent_threshold: float = 90  # 優秀ライン（0-100）
    analysis_segments: int = 32  # 解析時の分割数
    min_duration_ratio: float = 0.5  # 許容する長さ比の下限（ユーザー/お手本）
    max_duration_ratio: float = 2.0  # 許容する長さ比の上限


class SessionOptions(ScoringOptions):
    """スコアリングセッションのオプション"""

    max_attempts: int = 3  # 1枚のカードで許可する試行回数
    expected_duration: float = 1.5  # お手本音声がない場合の想定時間（秒）


class AudioAnalysis(BaseModel):
    """音声から抽出した解析データ"""

    model_config = ConfigDict(frozen=True)

    duration_seconds: float  # 長さ（秒）
    envelope: List[float]  # 正規化済みの振幅エンベロープ（0-1）
    energy_profile: List[float]  # 区間ごとのRMS値
    peak_amplitude: float  # ピーク振幅
    zero_crossing_rate: float  # 1秒あたりのゼロ交差数


class ScoreAnalysis(BaseModel):
    """スコアの内訳（診断用）"""

    model_config = ConfigDict(frozen=True)

    envelope_score: int  # エンベロープ類似度（0-100）
    duration_factor: float  # 長さによる減点係数（0-1）
    duration_score: int  # 長さの近さ（0-100）
    energy_score: int  # 音量の近さ（0-100）
    rhythm_score: int  # リズムの近さ（0-100）


class PronunciationScore(BaseModel):
    """1回の試行に対するスコアリング結果"""

    model_config = ConfigDict(frozen=True)

    similarity: int  # 総合類似度（0-100）
    confidence: int  # スコアの信頼度（0-100）
    passed: bool  # 合格ライン以上か
    excellent: bool  # 優秀ライン以上か
    duration_ratio: float  # 長さ比（ユーザー/お手本または想定時間）
    attempt_number: int  # 試行回数（1始まり）
    analysis: ScoreAnalysis  # 内訳
    feedback_key: FeedbackKey  # フィードバックキー
    xp_reward: int  # 付与するXP


class CircuitBreakerConfig(BaseModel):
    """サーキットブレーカーの設定"""

    model_config = ConfigDict(frozen=True)

    failure_threshold: float = 50  # OPENにする失敗率（%）
    reset_timeout: int = 60000  # HALF_OPENに移るまでの待ち時間（ミリ秒）
    window_size: int = 100  # 失敗率の計算対象とする直近のリクエスト数
    half_open_max_attempts: int = 3  # HALF_OPEN中に許可する試行数
    minimum_requests: int = 1  # 失敗率で判定を始める最小リクエスト数


class CircuitBreakerStats(BaseModel):
    """サーキットブレーカーの統計情報"""

    name: str
    state: CircuitState
    failure_rate: int  # 失敗率（%、四捨五入）
    success_count: int
    failure_count: int
    request_count: int
    opened_at: float | None = None
    half_open_attempts: int = 0


class CacheOptions(BaseModel):
    """キャッシュのオプション"""

    model_config = ConfigDict(frozen=True)

    ttl: int | None = None  # 有効期間（秒）、Noneの場合はサービスの既定値
    swr: int | None = None  # stale-while-revalidateの猶予（秒）、Noneの場合はttlの2倍
    prefix: str = ""  # キーの名前空間


class CacheEntry(BaseModel):
    """Redisに保存するキャッシュエントリ"""

    data: Any
    timestamp: float  # 保存時刻（エポックミリ秒）
    ttl: int  # 有効期間（秒）
