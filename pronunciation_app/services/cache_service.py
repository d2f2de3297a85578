"""
キャッシュサービス
Redisを使ったstale-while-revalidate方式のキャッシュ

頻繁に参照され、30-60秒程度の古さが許容でき、計算コストの高いデータに使う。
Redisが未設定・接続不可の場合は常にfetcherを直接呼び出す（エラーは呼び出し側に出さない）。
保存するデータはJSONにシリアライズ可能である必要がある。
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, TypeVar

import redis.asyncio as redis
from pydantic import ValidationError

from pronunciation_app.config import get_cache_default_ttl, get_redis_url
from pronunciation_app.models.schemas import CacheEntry, CacheOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

CACHE_PREFIX = "cache:"
SCAN_BATCH_SIZE = 100


class CacheKeys:
    """よく使うキャッシュキー"""

    @staticmethod
    def profile_summary(user_id: str) -> str:
        """ユーザープロフィールの概要"""
        return f"profile:{user_id}"

    @staticmethod
    def league_standings(tier: str) -> str:
        """リーグ順位表"""
        return f"league:{tier}"

    @staticmethod
    def league_membership(user_id: str) -> str:
        """ユーザーの所属リーグ"""
        return f"league-member:{user_id}"

    @staticmethod
    def discover_feed() -> str:
        """ディスカバーフィード（全ユーザー共通）"""
        return "discover:feed"

    @staticmethod
    def game_progress(user_id: str) -> str:
        """ユーザーの学習進捗"""
        return f"progress:{user_id}"


class CacheService:
    """Redisを使ったキャッシュサービスクラス"""

    def __init__(
        self,
        client: redis.Redis | None = None,
        default_ttl: int | None = None,
        key_prefix: str = CACHE_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        初期化処理

        Args:
            client: Redisクライアント（Noneの場合キャッシュ無効）
            default_ttl: 既定の有効期間（秒）
            key_prefix: 全キーに付ける接頭辞
            clock: 現在時刻（エポック秒）を返す関数
        """
        self.client: redis.Redis | None = client
        self.default_ttl: int = default_ttl if default_ttl is not None else get_cache_default_ttl()
        self.key_prefix: str = key_prefix
        self._clock: Callable[[], float] = clock
        self._refreshing: Dict[str, "asyncio.Task[None]"] = {}

    @classmethod
    def from_url(cls, url: str | None = None, **kwargs: Any) -> "CacheService":
        """
        URLからキャッシュサービスを作成

        Args:
            url: RedisのURL（省略時はREDIS_URL環境変数）

        Returns:
            キャッシュサービス（URLがない場合はキャッシュ無効）
        """
        redis_url: str | None = url or get_redis_url()
        if not redis_url:
            logger.info("REDIS_URLが設定されていないため、キャッシュは無効です")
            return cls(client=None, **kwargs)
        client = redis.from_url(redis_url, decode_responses=True)
        return cls(client=client, **kwargs)

    def is_available(self) -> bool:
        """Redisキャッシュが利用可能か"""
        return self.client is not None

    def _full_key(self, key: str, prefix: str = "") -> str:
        return f"{self.key_prefix}{prefix}{key}"

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _resolve(self, options: CacheOptions | None) -> tuple[int, int, str]:
        """(ttl, swr, prefix)を決定する"""
        opts: CacheOptions = options or CacheOptions()
        ttl: int = opts.ttl if opts.ttl is not None else self.default_ttl
        swr: int = opts.swr if opts.swr is not None else ttl * 2
        return ttl, swr, opts.prefix

    async def _read_entry(self, full_key: str) -> CacheEntry | None:
        raw: str | bytes | None = await self.client.get(full_key)
        if raw is None:
            return None
        return CacheEntry.model_validate(json.loads(raw))

    async def _write_entry(self, full_key: str, data: Any, ttl: int, swr: int) -> None:
        payload: str = json.dumps({"data": data, "timestamp": self._now_ms(), "ttl": ttl})
        # Redis側の有効期限はTTL + SWR猶予
        await self.client.set(full_key, payload, ex=max(1, ttl + swr))

    async def get(self, key: str, prefix: str = "") -> Any | None:
        """
        キャッシュから値を取得

        Returns:
            キャッシュされた値、存在しないかRedisが使えない場合はNone
        """
        if self.client is None:
            return None
        try:
            entry: CacheEntry | None = await self._read_entry(self._full_key(key, prefix))
        except Exception as e:
            logger.warning("[cache] Redis get failed: %s", e)
            return None
        return entry.data if entry else None

    async def set(self, key: str, data: Any, options: CacheOptions | None = None) -> bool:
        """
        値をキャッシュに保存

        Returns:
            保存成功時True
        """
        if self.client is None:
            return False
        ttl, swr, prefix = self._resolve(options)
        try:
            await self._write_entry(self._full_key(key, prefix), data, ttl, swr)
        except Exception as e:
            logger.warning("[cache] Redis set failed: %s", e)
            return False
        return True

    async def delete(self, key: str, prefix: str = "") -> bool:
        """
        キャッシュを削除（無効化）

        Returns:
            削除成功時True
        """
        if self.client is None:
            return False
        try:
            await self.client.delete(self._full_key(key, prefix))
        except Exception as e:
            logger.warning("[cache] Redis delete failed: %s", e)
            return False
        return True

    async def delete_pattern(self, pattern: str) -> int:
        """
        パターンに一致するキャッシュを一括削除
        SCANを使うため、キー数が多い場合は遅くなる

        Args:
            pattern: 接頭辞を除いたglobパターン（例: "league:*"）

        Returns:
            削除した件数
        """
        if self.client is None:
            return 0
        full_pattern: str = f"{self.key_prefix}{pattern}"
        deleted: int = 0
        cursor: int = 0
        try:
            while True:
                cursor, keys = await self.client.scan(cursor=cursor, match=full_pattern, count=SCAN_BATCH_SIZE)
                if keys:
                    await self.client.delete(*keys)
                    deleted += len(keys)
                if int(cursor) == 0:
                    break
        except Exception as e:
            logger.warning("[cache] Redis pattern delete failed: %s", e)
            return deleted
        return deleted

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        options: CacheOptions | None = None,
    ) -> T:
        """
        stale-while-revalidate方式で値を取得

        - 有効期間内: キャッシュを返す（fetcherは呼ばない）
        - 期限切れだがSWR猶予内: 古い値を返し、バックグラウンドで更新する
        - それ以外: fetcherを呼んで保存し、その値を返す

        Args:
            key: キャッシュキー
            fetcher: 値を取得する非同期関数
            options: TTL、SWR猶予、接頭辞

        Returns:
            キャッシュまたはfetcherの値
        """
        if self.client is None:
            return await fetcher()

        ttl, swr, prefix = self._resolve(options)
        full_key: str = self._full_key(key, prefix)

        try:
            entry: CacheEntry | None = await self._read_entry(full_key)
        except (json.JSONDecodeError, ValidationError) as e:
            # 壊れたエントリは未キャッシュとして扱い、新しい値で上書きする
            logger.warning("[cache] Corrupt entry for %s, refetching: %s", full_key, e)
            entry = None
        except Exception as e:
            logger.warning("[cache] get_or_set read failed, falling back to fetcher: %s", e)
            return await fetcher()

        if entry is not None:
            age: float = self._now_ms() - entry.timestamp
            if age < entry.ttl * 1000:
                return entry.data
            if age < (entry.ttl + swr) * 1000:
                self._refresh_in_background(full_key, fetcher, ttl, swr)
                return entry.data

        fresh: T = await fetcher()
        try:
            await self._write_entry(full_key, fresh, ttl, swr)
        except Exception as e:
            logger.warning("[cache] Redis set failed: %s", e)
        return fresh

    def _refresh_in_background(
        self,
        full_key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: int,
        swr: int,
    ) -> None:
        """awaitせずにバックグラウンドで値を更新する（同じキーの更新は1つにまとめる）"""
        if full_key in self._refreshing:
            return
        task: "asyncio.Task[None]" = asyncio.create_task(self._refresh(full_key, fetcher, ttl, swr))
        self._refreshing[full_key] = task

        def _done(finished: "asyncio.Task[None]") -> None:
            if self._refreshing.get(full_key) is finished:
                del self._refreshing[full_key]

        task.add_done_callback(_done)

    async def _refresh(self, full_key: str, fetcher: Callable[[], Awaitable[Any]], ttl: int, swr: int) -> None:
        try:
            fresh: Any = await fetcher()
            await self._write_entry(full_key, fresh, ttl, swr)
        except Exception as e:
            logger.warning("[cache] Background refresh failed: %s", e)

    async def wait_for_background_refreshes(self) -> None:
        """実行中のバックグラウンド更新の完了を待つ（終了処理・テスト用）"""
        tasks = list(self._refreshing.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def invalidate_user_cache(self, user_id: str) -> None:
        """
        ユーザーに関するキャッシュを全て削除
        XP獲得やレベルアップなどでユーザーデータが大きく変わった時に呼ぶ
        """
        await asyncio.gather(
            self.delete(CacheKeys.profile_summary(user_id)),
            self.delete(CacheKeys.game_progress(user_id)),
            self.delete(CacheKeys.league_membership(user_id)),
        )

    async def invalidate_league_cache(self, tier: str | None = None) -> None:
        """リーグ順位表のキャッシュを削除（tier省略時は全ティア）"""
        if tier:
            await self.delete(CacheKeys.league_standings(tier))
        else:
            await self.delete_pattern("league:*")
