"""
発音スコアリング - メインエントリーポイント
録音ファイル（またはマイク録音）をお手本音声と比較してスコアを表示する

使い方:
    python main.py user.wav --reference reference.wav
    python main.py user.wav --expected-duration 2.0
    python main.py --record 3.0 --reference https://example.com/reference.mp3
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List

# 環境変数の読み込み
from dotenv import load_dotenv

from pronunciation_app.config import get_expected_duration, get_max_attempts, setup_logging
from pronunciation_app.models.schemas import CircuitBreakerConfig, PronunciationScore, SessionOptions
from pronunciation_app.services.audio_analyzer import AudioAnalyzer
from pronunciation_app.services.audio_decoder import AudioLoader, AudioSource, resolve_default_decoder
from pronunciation_app.services.circuit_breaker import CircuitBreakerRegistry
from pronunciation_app.services.scoring_service import PronunciationScorer, get_feedback_message
from pronunciation_app.services.session_service import ScoringSession

# .envファイルの読み込み（実行ファイルのディレクトリまたはカレントディレクトリから）
if getattr(sys, 'frozen', False):
    # PyInstallerでビルドされた場合
    application_path = Path(sys.executable).parent
else:
    # 開発環境の場合
    application_path = Path(__file__).parent

env_path = application_path / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()

# お手本音声ダウンロード用のサーキットブレーカー名
AUDIO_FETCH_BREAKER = "audio-fetch"


class App:
    """アプリケーションのメインクラス（サービスの組み立てを行う）"""

    def __init__(self) -> None:
        """初期化処理"""
        self.breakers: CircuitBreakerRegistry = CircuitBreakerRegistry()
        fetch_breaker = self.breakers.get(
            AUDIO_FETCH_BREAKER,
            CircuitBreakerConfig(failure_threshold=50, reset_timeout=30000, window_size=20),
        )
        analyzer = AudioAnalyzer(
            decoder=resolve_default_decoder(),
            loader=AudioLoader(circuit_breaker=fetch_breaker),
        )
        self.scorer: PronunciationScorer = PronunciationScorer(analyzer)

    def create_session(self, expected_duration: float | None = None) -> ScoringSession:
        """練習カード1枚分のスコアリングセッションを作成"""
        options = SessionOptions(
            max_attempts=get_max_attempts(),
            expected_duration=expected_duration if expected_duration is not None else get_expected_duration(),
        )
        return ScoringSession(self.scorer, options)

    async def score(
        self,
        user_audio: AudioSource,
        reference_audio: AudioSource | None,
        expected_duration: float | None = None,
        attempt_number: int = 1,
    ) -> int:
        """
        スコアリングを実行して結果を表示

        Returns:
            終了コード（成功時0）
        """
        session = self.create_session(expected_duration)
        # 指定された試行回数まで進める
        for _ in range(max(0, attempt_number - 1)):
            session.reset()

        if not session.is_supported:
            print("この環境では発音スコアリングを利用できません（音声デコード機能がありません）")
            return 1

        result: PronunciationScore | None = await session.score_recording(user_audio, reference_audio)
        if result is None:
            print(f"スコアリングに失敗しました: {session.last_error}")
            return 1

        output = result.model_dump(mode="json")
        output["message"] = get_feedback_message(result)
        print(json.dumps(output, ensure_ascii=False, indent=2))
        return 0


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    """コマンドライン引数を解析"""
    parser = argparse.ArgumentParser(description="発音スコアリング")
    parser.add_argument("user_audio", nargs="?", help="ユーザーの録音（ファイルパスまたはURL）")
    parser.add_argument("--reference", help="お手本音声（ファイルパスまたはURL）")
    parser.add_argument("--expected-duration", type=float, help="お手本がない場合の想定時間（秒）")
    parser.add_argument("--attempt", type=int, default=1, help="試行回数（1始まり）")
    parser.add_argument("--record", type=float, metavar="SECONDS", help="マイクから録音する秒数")
    args = parser.parse_args(argv)
    if args.user_audio is None and args.record is None:
        parser.error("録音ファイルか --record のどちらかを指定してください")
    return args


def main(argv: List[str] | None = None) -> int:
    """アプリケーションの起動"""
    setup_logging()
    args = parse_args(argv)

    user_audio: AudioSource
    if args.record is not None:
        # PortAudioが必要なため録音時のみ読み込む
        from pronunciation_app.services.recording_service import RecordingService

        recorder = RecordingService()
        print(f"{args.record:.1f}秒間録音します...")
        samples = recorder.record_audio(duration=args.record)
        if samples.size == 0:
            print("録音に失敗しました")
            return 1
        user_audio = recorder.to_wav_bytes(samples)
    else:
        user_audio = args.user_audio

    app = App()
    return asyncio.run(
        app.score(user_audio, args.reference, args.expected_duration, args.attempt)
    )


if __name__ == "__main__":
    sys.exit(main())
