"""
音声デコードサービス
音声データ（URL、ファイルパス、バイト列）を取得し、PCMサンプルにデコードする
"""

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import aiofiles
import httpx
import numpy as np
import scipy.io.wavfile as wavfile
from numpy.typing import NDArray
from pydub import AudioSegment
from pydub.utils import which

from pronunciation_app.config import get_fetch_timeout
from pronunciation_app.errors import DecodeError
from pronunciation_app.services.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

# 音声の参照: URL文字列、ファイルパス、またはバイト列
AudioSource = Union[str, Path, bytes, bytearray]


@dataclass
class DecodedAudio:
    """デコード済みの音声データ"""

    samples: NDArray[np.floating]  # モノラル、-1.0～1.0のfloat32
    sample_rate: int

    @property
    def duration_seconds(self) -> float:
        """長さ（秒）"""
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / float(self.sample_rate)


def to_mono_float(samples: np.ndarray) -> NDArray[np.floating]:
    """
    サンプル配列をモノラルのfloat32（-1.0～1.0）に変換

    Args:
        samples: デコード直後のサンプル配列（整数PCMまたは浮動小数点）

    Returns:
        先頭チャンネルのみのfloat32配列
    """
    if samples.ndim > 1:
        # 複数チャンネルの場合は最初のチャンネルを使用
        samples = samples[:, 0]

    kind: str = samples.dtype.kind
    if kind == "i":
        scale: float = float(2 ** (8 * samples.dtype.itemsize - 1))
        return samples.astype(np.float32) / scale
    if kind == "u":
        offset: float = float(2 ** (8 * samples.dtype.itemsize - 1))
        return (samples.astype(np.float32) - offset) / offset
    return samples.astype(np.float32)


class AudioDecoder(ABC):
    """音声デコード機能のインターフェース"""

    @abstractmethod
    def is_available(self) -> bool:
        """この環境でデコードが可能な場合True"""

    @abstractmethod
    async def decode(self, data: bytes) -> DecodedAudio:
        """
        バイト列をPCMサンプルにデコード

        Raises:
            DecodeError: デコードできない場合
        """


class WavAudioDecoder(AudioDecoder):
    """scipyでWAVをデコードするデコーダー（追加のバイナリ不要）"""

    def is_available(self) -> bool:
        return True

    async def decode(self, data: bytes) -> DecodedAudio:
        if not data:
            raise DecodeError("Audio data is empty")
        return await asyncio.to_thread(self._decode_sync, data)

    @staticmethod
    def _decode_sync(data: bytes) -> DecodedAudio:
        try:
            sample_rate, samples = wavfile.read(io.BytesIO(data))
        except Exception as e:
            raise DecodeError(f"Unable to decode WAV audio: {str(e)}") from e

        if sample_rate <= 0:
            raise DecodeError(f"Invalid sample rate: {sample_rate}")
        if samples.size == 0:
            raise DecodeError("Decoded audio contains no samples")

        return DecodedAudio(samples=to_mono_float(samples), sample_rate=int(sample_rate))


class PydubAudioDecoder(AudioDecoder):
    """pydub（ffmpeg）で任意の形式をデコードするデコーダー"""

    def is_available(self) -> bool:
        return bool(which("ffmpeg") or which("avconv"))

    async def decode(self, data: bytes) -> DecodedAudio:
        if not data:
            raise DecodeError("Audio data is empty")
        return await asyncio.to_thread(self._decode_sync, data)

    @staticmethod
    def _decode_sync(data: bytes) -> DecodedAudio:
        try:
            segment: AudioSegment = AudioSegment.from_file(io.BytesIO(data))
        except Exception as e:
            raise DecodeError(f"Unable to decode audio: {str(e)}") from e

        samples: np.ndarray = np.array(segment.get_array_of_samples())
        if samples.size == 0:
            raise DecodeError("Decoded audio contains no samples")
        if segment.channels > 1:
            samples = samples.reshape(-1, segment.channels)

        # pydubのサンプルは符号付き整数（sample_widthバイト）
        scale: float = float(2 ** (8 * segment.sample_width - 1))
        mono: np.ndarray = samples[:, 0] if samples.ndim > 1 else samples
        return DecodedAudio(
            samples=mono.astype(np.float32) / scale,
            sample_rate=int(segment.frame_rate),
        )


def resolve_default_decoder() -> AudioDecoder:
    """
    この環境で使える既定のデコーダーを返す

    Returns:
        ffmpegがあればPydubAudioDecoder、なければWavAudioDecoder
    """
    pydub_decoder = PydubAudioDecoder()
    if pydub_decoder.is_available():
        return pydub_decoder
    logger.info("ffmpegが見つからないため、WAVのみデコードします")
    return WavAudioDecoder()


class AudioLoader:
    """音声の参照（URL、ファイルパス、バイト列）からバイト列を取得するクラス"""

    def __init__(
        self,
        fetch_timeout: float | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            fetch_timeout: URL取得のタイムアウト（秒）
            circuit_breaker: URL取得を保護するサーキットブレーカー
        """
        self.fetch_timeout: float = fetch_timeout if fetch_timeout is not None else get_fetch_timeout()
        self.circuit_breaker: CircuitBreaker | None = circuit_breaker

    async def load(self, source: AudioSource) -> bytes:
        """
        音声の参照からバイト列を取得

        Args:
            source: URL文字列、ファイルパス、またはバイト列

        Returns:
            音声ファイルのバイト列

        Raises:
            DecodeError: 取得できない場合
        """
        if isinstance(source, (bytes, bytearray)):
            return bytes(source)

        location: str = str(source)
        if location.startswith(("http://", "https://")):
            if self.circuit_breaker is not None:
                return await self.circuit_breaker.execute(lambda: self._fetch_url(location))
            return await self._fetch_url(location)

        return await self._read_file(Path(location))

    async def _fetch_url(self, url: str) -> bytes:
        """HTTP(S)で音声を取得"""
        try:
            async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
                response: httpx.Response = await client.get(url)
        except httpx.HTTPError as e:
            raise DecodeError(f"Failed to fetch audio: {str(e)}") from e

        if not response.is_success:
            raise DecodeError(f"Failed to fetch audio: {response.status_code}")
        return response.content

    @staticmethod
    async def _read_file(path: Path) -> bytes:
        """ローカルファイルから音声を読み込む"""
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except OSError as e:
            raise DecodeError(f"Failed to read audio file {path}: {str(e)}") from e
