"""
Local 适配器 - 不依赖任何外部服务的保底方案

1. 以能量 > 30% 分位、过零率 < 70% 分位检测语音段
2. 把目标句子的词按字母数比例分配到语音段上（检测不到语音段时平均分配到整段时长）
3. 每个词的时间区间平均切分给其音素
"""
import logging

import numpy as np

from pronscore.analysis.reference import ReferenceData, normalize_word, tokenize
from pronscore.config import FeatureSettings, ModelConfig
from pronscore.models import AudioSample, ProviderName, ProviderResult
from pronscore.pipeline.features import frame_signal
from pronscore.pipeline.providers.base import (
    WORD_GAP_SEC,
    ProviderAdapter,
    build_words,
    even_word_spans,
)

logger = logging.getLogger(__name__)

ENERGY_PERCENTILE = 30
ZCR_PERCENTILE = 70
MIN_SEGMENT_SEC = 0.05
# 落在检测到的语音段内 / 平均分配时的音素置信度
SEGMENT_CONFIDENCE = 0.7
EVEN_SPLIT_CONFIDENCE = 0.3


class LocalAdapter(ProviderAdapter):
    """本地能量 / 过零率分段适配器，始终可用"""

    name = ProviderName.LOCAL.value

    def __init__(
        self,
        model_config: ModelConfig | None = None,
        reference: ReferenceData | None = None,
        backoff_sec: float = 0.5,
        features: FeatureSettings | None = None,
    ) -> None:
        super().__init__(model_config or ModelConfig(name="local", timeout=5000), reference, backoff_sec)
        self.features = features or FeatureSettings()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def health_check(self) -> bool:
        return True

    async def analyze(self, sample: AudioSample, target: str) -> ProviderResult:
        words = tokenize(target)
        segments = self.detect_speech_segments(sample)

        if segments:
            spans = self.distribute_words(words, segments)
            confidence = SEGMENT_CONFIDENCE
        else:
            logger.info("Local: 未检测到语音段，按整段时长平均分配")
            spans = even_word_spans(words, sample.duration)
            confidence = EVEN_SPLIT_CONFIDENCE

        word_segs, phonemes = build_words(
            self,
            [(normalize_word(w) or w, start, end, confidence) for w, (start, end) in zip(words, spans)],
        )
        logger.info(f"Local: {len(segments)} 个语音段, {len(word_segs)} 个词, {len(phonemes)} 个音素")
        return ProviderResult(
            provider=self.name,
            transcript=target,
            confidence=None,
            words=word_segs,
            phonemes=phonemes,
        )

    def detect_speech_segments(self, sample: AudioSample) -> list[tuple[float, float]]:
        """返回 [(start, end), ...]，单位秒"""
        f, h = self.features.frame_size, self.features.hop_size
        frames = frame_signal(np.asarray(sample.samples, dtype=np.float64), f, h)
        if len(frames) == 0 or sample.sample_rate <= 0:
            return []

        energy = np.sqrt(np.mean(frames ** 2, axis=1))
        crossings = np.count_nonzero(np.diff(np.signbit(frames), axis=1), axis=1)
        zcr = crossings / max(1, f - 1)

        energy_threshold = np.percentile(energy, ENERGY_PERCENTILE)
        zcr_threshold = np.percentile(zcr, ZCR_PERCENTILE)
        speech = (energy > energy_threshold) & (zcr <= zcr_threshold)

        sr = sample.sample_rate
        segments: list[tuple[float, float]] = []
        start_idx: int | None = None
        for i, is_speech in enumerate(list(speech) + [False]):
            if is_speech and start_idx is None:
                start_idx = i
            elif not is_speech and start_idx is not None:
                start = start_idx * h / sr
                end = min(sample.duration, ((i - 1) * h + f) / sr)
                if end - start >= MIN_SEGMENT_SEC:
                    segments.append((start, end))
                start_idx = None
        return segments

    @staticmethod
    def distribute_words(
        words: list[str], segments: list[tuple[float, float]]
    ) -> list[tuple[float, float]]:
        """按字母数比例把词铺到语音段组成的时间轴上"""
        if not words:
            return []
        lengths = [max(1, len(normalize_word(w))) for w in words]
        total_chars = sum(lengths)
        total_speech = sum(end - start for start, end in segments)

        def to_real_time(offset: float) -> float:
            for start, end in segments:
                span = end - start
                if offset <= span:
                    return start + offset
                offset -= span
            return segments[-1][1]

        spans: list[tuple[float, float]] = []
        cursor = 0.0
        for length in lengths:
            share = total_speech * length / total_chars
            start = to_real_time(cursor)
            end = to_real_time(cursor + share)
            if end - start > 2 * WORD_GAP_SEC:
                end -= WORD_GAP_SEC
            spans.append((start, max(end, start + 0.01)))
            cursor += share
        return spans
