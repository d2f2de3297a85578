"""
テスト共通のフィクスチャ
numpyで合成した音声をWAVバイト列として提供する
"""
import io
from typing import Callable, List, Optional

import numpy as np
import pytest
import scipy.io.wavfile as wavfile

SAMPLE_RATE = 16000


def _tone(duration: float, amplitude: float, frequency: float, sample_rate: int) -> np.ndarray:
    t = np.arange(int(round(duration * sample_rate))) / sample_rate
    return amplitude * np.sin(2 * np.pi * frequency * t)


def _to_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
    buffer = io.BytesIO()
    wavfile.write(buffer, sample_rate, pcm)
    return buffer.getvalue()


@pytest.fixture
def make_wav() -> Callable[..., bytes]:
    """
    一定音量のトーンをWAVバイト列で作るファクトリ

    pattern（0/1のリスト）を指定すると、長さを等分した各区間を
    1なら鳴らし、0なら無音にする
    """

    def factory(
        duration: float = 1.0,
        amplitude: float = 0.5,
        frequency: float = 220.0,
        sample_rate: int = SAMPLE_RATE,
        pattern: Optional[List[int]] = None,
    ) -> bytes:
        samples = _tone(duration, amplitude, frequency, sample_rate)
        if pattern:
            mask = np.repeat(np.asarray(pattern, dtype=np.float64), int(np.ceil(len(samples) / len(pattern))))
            samples = samples * mask[: len(samples)]
        return _to_wav(samples, sample_rate)

    return factory


@pytest.fixture
def silent_wav() -> bytes:
    """1秒間の無音"""
    return _to_wav(np.zeros(SAMPLE_RATE), SAMPLE_RATE)
