"""
アプリケーション設定
"""
import logging
import os
import sys
from pathlib import Path


def get_app_data_dir() -> Path:
    """
    アプリケーションのデータディレクトリを取得

    Returns:
        アプリケーションデータディレクトリのパス
    """
    if sys.platform == "win32":
        # Windowsの場合、AppData\Local\PronunciationAppを使用
        app_data: str | None = os.getenv("LOCALAPPDATA")
        if app_data:
            app_dir: Path = Path(app_data) / "PronunciationApp"
            app_dir.mkdir(exist_ok=True)
            return app_dir
    elif sys.platform == "darwin":
        # macOSの場合、~/Library/Application Support/PronunciationAppを使用
        app_support: Path = Path.home() / "Library" / "Application Support" / "PronunciationApp"
        app_support.mkdir(parents=True, exist_ok=True)
        return app_support
    # その他のOSまたはフォールバック
    return Path.home() / ".pronunciation_app"


def get_log_file() -> Path:
    """
    ログファイルのパスを取得

    Returns:
        ログファイルのパス
    """
    return get_app_data_dir() / "app.log"


def _get_float(name: str, default: float) -> float:
    """環境変数を浮動小数点数として取得（不正な値はデフォルト）"""
    value: str | None = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    """環境変数を整数として取得（不正な値はデフォルト）"""
    value: str | None = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_redis_url() -> str | None:
    """
    キャッシュ用RedisのURLを取得

    Returns:
        REDIS_URL、未設定の場合はNone（キャッシュ無効）
    """
    url: str | None = os.getenv("REDIS_URL")
    return url or None


def get_log_level() -> int:
    """ログレベルを取得（PRONUNCIATION_LOG_LEVEL、デフォルトINFO）"""
    name: str = os.getenv("PRONUNCIATION_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_cache_default_ttl() -> int:
    """キャッシュの既定TTL（秒）"""
    return _get_int("CACHE_DEFAULT_TTL", 60)


def get_decode_timeout() -> float:
    """音声デコードのタイムアウト（秒）"""
    return _get_float("AUDIO_DECODE_TIMEOUT", 10.0)


def get_fetch_timeout() -> float:
    """音声ダウンロードのタイムアウト（秒）"""
    return _get_float("AUDIO_FETCH_TIMEOUT", 10.0)


def get_max_attempts() -> int:
    """1枚の練習カードあたりの最大試行回数"""
    return _get_int("PRONUNCIATION_MAX_ATTEMPTS", 3)


def get_expected_duration() -> float:
    """お手本音声がない場合の想定発話時間（秒）"""
    return _get_float("PRONUNCIATION_EXPECTED_DURATION", 1.5)


def setup_logging(level: int | None = None, log_file: Path | None = None) -> None:
    """
    ロギングを設定する（コンソールとログファイル）
    既に設定済みの場合は何もしない

    Args:
        level: ログレベル（省略時は環境変数から取得）
        log_file: ログファイルのパス（省略時はLOG_FILE）
    """
    root: logging.Logger = logging.getLogger()
    if getattr(root, "_pronunciation_app_configured", False):
        return

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    root.setLevel(level if level is not None else get_log_level())

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    target: Path = log_file or LOG_FILE
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    except OSError as e:
        # ログファイルが作れなくてもコンソール出力は続行
        root.warning("ログファイルを開けませんでした: %s", e)

    root._pronunciation_app_configured = True  # type: ignore[attr-defined]


# アプリケーションデータディレクトリ
APP_DATA_DIR = get_app_data_dir()

# ログファイル
LOG_FILE = get_log_file()
