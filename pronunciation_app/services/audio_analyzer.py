"""
音声解析サービス
デコードした音声から振幅エンベロープなどの特徴量を抽出する
"""

import asyncio

import numpy as np
from numpy.typing import NDArray

from pronunciation_app.config import get_decode_timeout
from pronunciation_app.errors import DecodeError, InvalidOptionsError, UnsupportedEnvironmentError
from pronunciation_app.models.schemas import AudioAnalysis
from pronunciation_app.services.audio_decoder import AudioDecoder, AudioLoader, AudioSource, DecodedAudio


def normalize_envelope(energy_profile: NDArray[np.floating]) -> NDArray[np.floating]:
    """
    エネルギープロファイルを最大値で割って0-1に正規化
    全て0の場合は0のまま返す
    """
    if energy_profile.size == 0:
        return energy_profile
    peak: float = float(np.max(energy_profile))
    if peak <= 0.0:
        return np.zeros_like(energy_profile)
    return energy_profile / peak


def analyze_samples(
    samples: NDArray[np.floating],
    sample_rate: int,
    segments: int,
) -> AudioAnalysis:
    """
    PCMサンプルから解析データを抽出

    サンプルをsegments個の等しい長さの区間に分け（端数は切り捨て）、
    区間ごとのRMSをエネルギープロファイルとする。

    Args:
        samples: モノラルのPCMサンプル
        sample_rate: サンプリングレート
        segments: 区間数

    Returns:
        解析データ

    Raises:
        DecodeError: サンプルが空、NaN/Infを含む、または区間数より少ない場合
    """
    data: NDArray[np.floating] = np.asarray(samples, dtype=np.float64).ravel()
    if data.size == 0:
        raise DecodeError("Audio contains no samples")
    if not np.all(np.isfinite(data)):
        raise DecodeError("Audio contains non-finite samples")
    if sample_rate <= 0:
        raise DecodeError(f"Invalid sample rate: {sample_rate}")
    if data.size < segments:
        raise DecodeError(f"Audio is too short to analyze ({data.size} samples for {segments} segments)")

    duration: float = data.size / float(sample_rate)
    samples_per_segment: int = data.size // segments
    windows: NDArray[np.floating] = data[: samples_per_segment * segments].reshape(segments, samples_per_segment)

    energy_profile: NDArray[np.floating] = np.sqrt(np.mean(windows**2, axis=1))
    peak_amplitude: float = float(np.max(np.abs(data)))
    zero_crossings: int = int(np.count_nonzero(data[:-1] * data[1:] < 0))

    return AudioAnalysis(
        duration_seconds=duration,
        envelope=normalize_envelope(energy_profile).tolist(),
        energy_profile=energy_profile.tolist(),
        peak_amplitude=peak_amplitude,
        zero_crossing_rate=zero_crossings / duration,
    )


class AudioAnalyzer:
    """音声の取得・デコード・特徴量抽出を行うサービスクラス"""

    def __init__(
        self,
        decoder: AudioDecoder,
        loader: AudioLoader | None = None,
        decode_timeout: float | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            decoder: 音声デコーダー
            loader: 音声の取得に使うローダー（省略時は既定のAudioLoader）
            decode_timeout: デコードのタイムアウト（秒）
        """
        self.decoder: AudioDecoder = decoder
        self.loader: AudioLoader = loader or AudioLoader()
        self.decode_timeout: float = decode_timeout if decode_timeout is not None else get_decode_timeout()

    @property
    def is_supported(self) -> bool:
        """デコード機能が利用可能か"""
        return self.decoder.is_available()

    async def decode(self, source: AudioSource) -> DecodedAudio:
        """
        音声を取得してデコード

        Raises:
            UnsupportedEnvironmentError: デコード機能がない場合
            DecodeError: 取得・デコードできない場合、またはタイムアウト
        """
        if not self.is_supported:
            raise UnsupportedEnvironmentError("Audio decoding is not supported in this environment")

        data: bytes = await self.loader.load(source)
        try:
            return await asyncio.wait_for(self.decoder.decode(data), timeout=self.decode_timeout)
        except asyncio.TimeoutError as e:
            raise DecodeError(f"Audio decoding timed out after {self.decode_timeout:.1f}s") from e

    async def analyze(self, source: AudioSource, segments: int) -> AudioAnalysis:
        """
        音声を解析して振幅エンベロープを取得

        Args:
            source: URL文字列、ファイルパス、またはバイト列
            segments: 区間数

        Returns:
            解析データ
        """
        if segments < 1:
            raise InvalidOptionsError(f"analysis_segments must be at least 1 (got {segments})")
        decoded: DecodedAudio = await self.decode(source)
        return analyze_samples(decoded.samples, decoded.sample_rate, segments)
