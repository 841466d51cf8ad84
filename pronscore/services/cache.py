"""
评测结果缓存

键格式: analysis:{audio_hash}:{base64(sentence)}[:{user_id}]
InMemoryAnalysisCache 为进程内 LRU + TTL 实现；其他后端只需满足 AnalysisCache 协议。
"""
import asyncio
import base64
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Callable, Protocol

from pronscore.config import AnalysisConfig
from pronscore.models import AnalysisResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_TTL_SEC = 3600


def audio_hash(audio_bytes: bytes) -> str:
    """音频内容哈希（sha256 前 16 位）"""
    return hashlib.sha256(audio_bytes).hexdigest()[:16]


def cache_key(digest: str, sentence: str, user_id: str | None = None) -> str:
    encoded = base64.b64encode(sentence.encode("utf-8")).decode("ascii")
    base_key = f"analysis:{digest}:{encoded}"
    return f"{base_key}:{user_id}" if user_id else base_key


class AnalysisCache(Protocol):
    async def get_cached_analysis(
        self, digest: str, sentence: str, user_id: str | None = None
    ) -> AnalysisResult | None:
        ...

    async def cache_analysis(
        self,
        digest: str,
        sentence: str,
        result: AnalysisResult,
        user_id: str | None = None,
    ) -> None:
        ...


class InMemoryAnalysisCache:
    """
    进程内缓存

    Args:
        max_entries: 最大条目数，超出后淘汰最久未使用的条目
        ttl_sec: 条目有效期（秒）
        clock: 时间源，测试时可替换
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_sec: float = DEFAULT_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, AnalysisResult]] = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, config: AnalysisConfig) -> "InMemoryAnalysisCache":
        section = config.raw.get("cache", {})
        return cls(
            max_entries=int(section.get("max_entries", DEFAULT_MAX_ENTRIES)),
            ttl_sec=float(section.get("ttl_sec", DEFAULT_TTL_SEC)),
        )

    async def get_cached_analysis(
        self, digest: str, sentence: str, user_id: str | None = None
    ) -> AnalysisResult | None:
        key = cache_key(digest, sentence, user_id)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                logger.debug(f"缓存过期: {key}")
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return result

    async def cache_analysis(
        self,
        digest: str,
        sentence: str,
        result: AnalysisResult,
        user_id: str | None = None,
        ttl_sec: float | None = None,
    ) -> None:
        key = cache_key(digest, sentence, user_id)
        async with self._lock:
            self._entries[key] = (self._clock() + (ttl_sec or self.ttl_sec), result)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"缓存淘汰: {evicted}")

    async def clear_user_cache(self, user_id: str) -> int:
        """删除某个用户的全部条目，返回删除数量"""
        suffix = f":{user_id}"
        async with self._lock:
            keys = [k for k in self._entries if k.endswith(suffix)]
            for k in keys:
                del self._entries[k]
        logger.info(f"已清除用户 {user_id} 的 {len(keys)} 条缓存")
        return len(keys)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}
