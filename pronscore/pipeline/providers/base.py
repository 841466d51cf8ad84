"""
Provider 适配器基类

每个适配器只需实现 analyze() 与 health_check()；
run() 统一负责超时、有限次数的退避重试，并把所有失败转换为带类型的 ProviderOutcome。
"""
import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod

import numpy as np

from pronscore.analysis.reference import ReferenceData
from pronscore.config import ModelConfig
from pronscore.errors import ProviderError, ProviderInvalidResponse, ProviderTimeout
from pronscore.models import AudioSample, PhonemeSegment, ProviderOutcome, ProviderResult, WordSegment

logger = logging.getLogger(__name__)

# 相邻词之间预留的间隔（秒）
WORD_GAP_SEC = 0.05


class ProviderAdapter(ABC):
    """
    Provider 适配器

    Args:
        model_config: 该 provider 的配置（超时、重试、凭证）
        reference: 参考数据源（用于把词展开为音素）
        backoff_sec: 首次重试前的等待时间，之后按 2 的幂增长
    """

    name: str = ""

    def __init__(
        self,
        model_config: ModelConfig,
        reference: ReferenceData | None = None,
        backoff_sec: float = 0.5,
    ) -> None:
        self.config = model_config
        self.reference = reference or ReferenceData()
        self.backoff_sec = backoff_sec

    @property
    def enabled(self) -> bool:
        """未配置凭证的云端 provider 自动禁用（不是错误状态）"""
        return self.config.enabled and self.config.has_credentials

    @abstractmethod
    async def analyze(self, sample: AudioSample, target: str) -> ProviderResult:
        """识别 / 评估一段音频，失败时抛出 ProviderError 子类"""

    @abstractmethod
    async def health_check(self) -> bool:
        """检查 provider 是否可用"""

    async def close(self) -> None:
        """释放适配器自己持有的资源"""

    async def run(self, sample: AudioSample, target: str) -> ProviderOutcome:
        """在超时与重试约束下调用 analyze()，永远返回 ProviderOutcome 而不抛出"""
        outcome = ProviderOutcome(provider=self.name)
        max_attempts = 1 + max(0, self.config.retry_attempts)
        started = time.monotonic()

        async def attempt_loop() -> ProviderResult:
            for attempt in range(max_attempts):
                outcome.attempts = attempt + 1
                try:
                    return await self.analyze(sample, target)
                except ProviderError as e:
                    error: ProviderError = e
                except Exception as e:
                    logger.debug(f"{self.name} 未预期的异常", exc_info=True)
                    error = ProviderInvalidResponse(self.name, f"{type(e).__name__}: {e}")

                is_last = attempt == max_attempts - 1
                logger.warning(f"{self.name} 第 {attempt + 1}/{max_attempts} 次调用失败: {error}")
                if is_last or not error.retryable:
                    raise error
                await asyncio.sleep(self.backoff_sec * (2 ** attempt))
            raise ProviderInvalidResponse(self.name, "未产生结果")

        try:
            outcome.result = await asyncio.wait_for(attempt_loop(), timeout=self.config.timeout_sec)
        except asyncio.TimeoutError:
            outcome.error = ProviderTimeout(self.name, f"超过 {self.config.timeout} ms 未完成")
            logger.warning(f"{self.name} 超时 ({self.config.timeout} ms)")
        except ProviderError as e:
            outcome.error = e

        outcome.elapsed_ms = int((time.monotonic() - started) * 1000)
        if outcome.ok:
            logger.info(f"{self.name} 完成: {outcome.elapsed_ms} ms, 尝试 {outcome.attempts} 次")
        return outcome

    def phonemes_for_span(
        self,
        word: str,
        start: float,
        end: float,
        confidence: float,
        labels: list[str] | None = None,
    ) -> list[PhonemeSegment]:
        """把词的时间区间平均切分给各个音素"""
        return split_into_phonemes(
            labels or self.reference.phonemes_for_word(word) or fallback_labels(word),
            start,
            end,
            confidence,
        )


def fallback_labels(word: str) -> list[str]:
    """词典与拼写规则都无结果时（如纯数字），按词长估计音素个数"""
    return ["AH"] * max(2, math.ceil(0.8 * len(word)))


def split_into_phonemes(
    labels: list[str], start: float, end: float, confidence: float
) -> list[PhonemeSegment]:
    if not labels or end <= start:
        return []
    step = (end - start) / len(labels)
    return [
        PhonemeSegment(
            phoneme=label,
            start=start + i * step,
            end=start + (i + 1) * step,
            confidence=confidence,
            expected_phoneme=label,
        )
        for i, label in enumerate(labels)
    ]


def even_word_spans(words: list[str], duration: float) -> list[tuple[float, float]]:
    """在给定时长内平均分配词的时间区间，词之间保留固定间隔"""
    if not words:
        return []
    if duration <= 0:
        duration = len(words) * 0.4
    slot = duration / len(words)
    gap = WORD_GAP_SEC if slot > 2 * WORD_GAP_SEC else 0.0
    return [(i * slot, (i + 1) * slot - gap) for i in range(len(words))]


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """[-1, 1] 浮点样本转 16-bit 小端 PCM"""
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    return (clipped * 32767).astype("<i2").tobytes()


def build_words(
    adapter: ProviderAdapter,
    spans: list[tuple[str, float, float, float]],
    accuracies: list[float] | None = None,
) -> tuple[list[WordSegment], list[PhonemeSegment]]:
    """
    由 (word, start, end, confidence) 列表构造词与音素

    Returns:
        (词列表, 扁平音素列表)，两者引用同一批 PhonemeSegment
    """
    words: list[WordSegment] = []
    phonemes: list[PhonemeSegment] = []
    for i, (text, start, end, conf) in enumerate(spans):
        if end <= start:
            end = start + 0.01
        segs = adapter.phonemes_for_span(text, start, end, conf)
        words.append(WordSegment(
            word=text,
            start=start,
            end=end,
            accuracy=accuracies[i] if accuracies else 0.0,
            phonemes=segs,
        ))
        phonemes.extend(segs)
    return words, phonemes
