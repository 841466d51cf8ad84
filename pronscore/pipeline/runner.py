"""
发音评测引擎 - Analyze 入口

校验输入 -> 查询缓存 -> 解码音频 -> 集成评测 -> 写入缓存。
缓存不可用时只跳过缓存，不影响评测本身。
"""
import logging
from typing import Callable

from pronscore.errors import InvalidInput
from pronscore.models import AnalysisResult, AnalyzeOptions
from pronscore.pipeline.ensemble import EnsembleOrchestrator
from pronscore.pipeline.preprocess import decode_audio
from pronscore.services.cache import AnalysisCache, audio_hash

logger = logging.getLogger(__name__)


async def analyze_audio(
    audio_bytes: bytes,
    target_sentence: str,
    options: AnalyzeOptions | None = None,
    *,
    orchestrator: EnsembleOrchestrator,
    cache: AnalysisCache | None = None,
    user_id: str | None = None,
    progress_callback: Callable[[str, float], None] | None = None,
) -> AnalysisResult:
    """
    运行一次完整的 Analyze

    Args:
        audio_bytes: 原始音频（容器格式或 16-bit 小端 PCM）
        target_sentence: 目标句子
        options: 请求选项
        orchestrator: 集成评测器
        cache: 可选的结果缓存
        user_id: 缓存键的一部分
        progress_callback: 进度回调 (描述, 0-1)

    Raises:
        InvalidInput: 空音频 / 空句子 / 无法解码（在调用任何 provider 之前）
        AllProvidersFailed: 包括 Local 兜底在内全部失败
    """
    def update_progress(desc: str, progress: float) -> None:
        if progress_callback:
            progress_callback(desc, progress)
        logger.info(desc)

    if not audio_bytes:
        raise InvalidInput("音频为空")
    if not target_sentence or not target_sentence.strip():
        raise InvalidInput("目标句子为空")

    digest = audio_hash(audio_bytes)

    if cache is not None:
        try:
            cached = await cache.get_cached_analysis(digest, target_sentence, user_id)
        except Exception as e:
            logger.warning(f"缓存读取失败，跳过缓存: {e}")
            cached = None
        if cached is not None:
            update_progress(f"命中缓存: {digest}", 1.0)
            return cached

    update_progress("解码音频...", 0.1)
    sample, bit_depth = decode_audio(audio_bytes, orchestrator.config.raw_sample_rate)
    logger.debug(f"音频: {sample.duration:.2f}s @ {sample.sample_rate}Hz, {bit_depth}bit")

    update_progress("集成评测...", 0.3)
    result = await orchestrator.analyze(
        sample, target_sentence, options, byte_length=len(audio_bytes), bit_depth=bit_depth
    )

    if cache is not None:
        try:
            await cache.cache_analysis(digest, target_sentence, result, user_id)
        except Exception as e:
            logger.warning(f"缓存写入失败: {e}")

    update_progress("评测完成", 1.0)
    return result
