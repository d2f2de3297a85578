"""
セットアップ確認スクリプト
実行前に必要な依存関係がインストールされているか確認する
"""
import importlib
import sys
from pathlib import Path
from typing import List, Tuple

# (インポート名, パッケージ名)
REQUIRED_PACKAGES: List[Tuple[str, str]] = [
    ("numpy", "numpy"),
    ("scipy", "scipy"),
    ("pydub", "pydub"),
    ("pydantic", "pydantic"),
    ("dotenv", "python-dotenv"),
    ("aiofiles", "aiofiles"),
    ("httpx", "httpx"),
    ("redis", "redis"),
    ("sounddevice", "sounddevice"),
]

REQUIRED_FILES: List[str] = [
    "main.py",
    "pronunciation_app/config.py",
    "pronunciation_app/errors.py",
    "pronunciation_app/models/schemas.py",
    "pronunciation_app/services/audio_decoder.py",
    "pronunciation_app/services/audio_analyzer.py",
    "pronunciation_app/services/scoring_service.py",
    "pronunciation_app/services/session_service.py",
    "pronunciation_app/services/circuit_breaker.py",
    "pronunciation_app/services/cache_service.py",
    "pronunciation_app/services/recording_service.py",
]


def check_imports() -> bool:
    """必要なモジュールのインポートを確認"""
    errors: list[str] = []

    for module_name, package_name in REQUIRED_PACKAGES:
        try:
            importlib.import_module(module_name)
            print(f"✓ {package_name}: OK")
        except ImportError:
            errors.append(f"{package_name} がインストールされていません。pip install {package_name} を実行してください。")
        except OSError as e:
            # sounddeviceはPortAudioがない環境でOSErrorを送出する
            errors.append(f"{package_name} を読み込めません: {e}")

    # アプリケーションモジュール
    try:
        sys.path.insert(0, str(Path(__file__).parent))
        from pronunciation_app.services.scoring_service import PronunciationScorer  # noqa: F401
        from pronunciation_app.services.session_service import ScoringSession  # noqa: F401
        print("✓ アプリケーションモジュール: OK")
    except ImportError as e:
        errors.append(f"アプリケーションモジュールのインポートエラー: {e}")

    if errors:
        print("\n❌ 以下の問題が見つかりました:")
        for error in errors:
            print(f"  - {error}")
        print("\n依存関係をインストールするには:")
        print("  pip install -e .")
        return False

    print("\n✓ 全ての依存関係が正しくインストールされています。")
    return True


def check_structure(base_path: Path | None = None) -> bool:
    """プロジェクト構造を確認"""
    base: Path = base_path or Path(__file__).parent

    missing_files: list[str] = [path for path in REQUIRED_FILES if not (base / path).exists()]
    if missing_files:
        print("❌ 以下のファイルが見つかりません:")
        for file_path in missing_files:
            print(f"  - {file_path}")
        return False

    print("✓ プロジェクト構造: OK")
    return True


def check_audio_capability() -> bool:
    """ffmpegの有無を確認（なくてもWAVは扱える）"""
    from pydub.utils import which

    if which("ffmpeg") or which("avconv"):
        print("✓ ffmpeg: OK（MP3/WebM/M4Aなどをデコードできます）")
        return True
    print("⚠ ffmpegが見つかりません。WAVファイルのみスコアリングできます。")
    return False


if __name__ == "__main__":
    print("=== セットアップ確認 ===\n")

    structure_ok = check_structure()
    print()
    imports_ok = check_imports()
    print()
    if imports_ok:
        check_audio_capability()

    print("\n" + "=" * 40)
    if structure_ok and imports_ok:
        print("✓ セットアップは完了しています。")
        print("\n実行方法:")
        print("  python main.py user.wav --reference reference.wav")
        sys.exit(0)
    else:
        print("❌ セットアップに問題があります。")
        print("\n依存関係をインストールするには:")
        print("  pip install -e .")
        sys.exit(1)
