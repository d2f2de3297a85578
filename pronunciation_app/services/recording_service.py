"""
録音サービス
マイクからの録音とお手本音声の再生を行う
"""

import io
import logging
from typing import List, Optional

import numpy as np
import scipy.io.wavfile as wavfile
import sounddevice as sd

logger = logging.getLogger(__name__)


class RecordingService:
    """マイク録音とスピーカー再生を管理するサービスクラス"""

    def __init__(self, sample_rate: int = 44100) -> None:
        """
        初期化処理

        Args:
            sample_rate: 録音・再生のサンプリングレート
        """
        self.sample_rate: int = sample_rate
        self.channels: int = 1
        self.dtype: np.dtype = np.float32

    @staticmethod
    def _candidate_devices(kind: int) -> List[Optional[int]]:
        """
        試行するデバイスのリストを作成

        Args:
            kind: 0=入力、1=出力

        Returns:
            デフォルトデバイス、その他の対応デバイス、最後にNone（既定の挙動）
        """
        channel_key: str = "max_input_channels" if kind == 0 else "max_output_channels"
        candidates: List[Optional[int]] = []

        # 1. デフォルトデバイス
        try:
            if sd.default.device[kind] >= 0:
                candidates.append(sd.default.device[kind])
        except Exception as e:
            logger.debug("デフォルトデバイスの取得に失敗しました: %s", e)

        # 2. その他の対応デバイス
        try:
            for i, dev in enumerate(sd.query_devices()):
                if dev[channel_key] > 0 and i not in candidates:
                    candidates.append(i)
        except Exception as e:
            logger.debug("デバイス一覧の取得に失敗しました: %s", e)

        if None not in candidates:
            candidates.append(None)
        return candidates

    def record_audio(self, duration: float = 3.0) -> np.ndarray:
        """
        音声を録音する

        Args:
            duration: 録音時間（秒）

        Returns:
            録音された音声データ（失敗時は空の配列）
        """
        for device_index in self._candidate_devices(0):
            try:
                logger.info("録音を開始します (Device Index: %s)", device_index)
                recording = sd.rec(
                    int(duration * self.sample_rate),
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype=self.dtype,
                    device=device_index,
                )
                sd.wait()  # 録音が完了するまで待機
                return recording.flatten()
            except Exception as e:
                logger.warning("録音エラー (Device %s): %s", device_index, e)
                continue

        logger.error("すべてのデバイスで録音に失敗しました")
        return np.array([], dtype=self.dtype)

    def play_audio(self, audio_data: np.ndarray, sample_rate: int | None = None) -> bool:
        """
        音声を再生する（お手本音声の確認用）

        Args:
            audio_data: 再生する音声データ
            sample_rate: サンプリングレート（省略時は録音と同じ）

        Returns:
            再生成功時True
        """
        clipped: np.ndarray = np.clip(audio_data, -1.0, 1.0)
        for device_index in self._candidate_devices(1):
            try:
                logger.info("再生を開始します (Device Index: %s)", device_index)
                sd.play(clipped, samplerate=sample_rate or self.sample_rate, device=device_index)
                sd.wait()  # 再生が完了するまで待機
                return True
            except Exception as e:
                logger.warning("再生エラー (Device %s): %s", device_index, e)
                continue

        logger.error("すべてのデバイスで再生に失敗しました")
        return False

    def to_wav_bytes(self, samples: np.ndarray) -> bytes:
        """
        録音データを16bit PCMのWAVバイト列に変換

        Args:
            samples: -1.0～1.0の音声データ

        Returns:
            WAVファイルのバイト列
        """
        pcm: np.ndarray = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
        buffer = io.BytesIO()
        wavfile.write(buffer, self.sample_rate, pcm)
        return buffer.getvalue()
