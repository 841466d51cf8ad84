"""
发音评测引擎 - pytest 配置
"""
import asyncio

import numpy as np
import pytest

from pronscore.analysis.reference import normalize_word, tokenize
from pronscore.config import AnalysisConfig, ModelConfig
from pronscore.models import AudioSample, FeatureSet, ProviderResult
from pronscore.pipeline.providers.base import ProviderAdapter, build_words, even_word_spans


class FakeAdapter(ProviderAdapter):
    """
    可控的 provider 替身

    Args:
        name: provider 名称
        priority: 配置优先级
        confidence: 上报的置信度，None 表示不上报
        delay: analyze() 内部等待的秒数
        error: 每次调用都抛出的异常
        errors: 按顺序抛出的异常，用完后正常返回
        overall: provider 原生总分
        words: 返回的词，为空时取目标句子
    """

    def __init__(
        self,
        name: str,
        priority: int = 1,
        confidence: float | None = 0.8,
        delay: float = 0.0,
        error: Exception | None = None,
        errors: list[Exception] | None = None,
        overall: float | None = None,
        words: list[str] | None = None,
        timeout_ms: int = 2000,
        retry_attempts: int = 0,
        enabled: bool = True,
    ) -> None:
        super().__init__(
            ModelConfig(
                name=name,
                enabled=enabled,
                priority=priority,
                timeout=timeout_ms,
                retry_attempts=retry_attempts,
                api_key="test-key",
                options={"region": "eastus"} if name == "azure" else {},
            ),
            backoff_sec=0.0,
        )
        self.name = name
        self.confidence = confidence
        self.delay = delay
        self.error = error
        self.errors = list(errors or [])
        self.overall = overall
        self.words = words
        self.calls = 0
        self.cancelled = False

    async def health_check(self) -> bool:
        return True

    async def analyze(self, sample: AudioSample, target: str) -> ProviderResult:
        self.calls += 1
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        if self.errors:
            raise self.errors.pop(0)

        tokens = self.words or tokenize(target)
        conf = self.confidence if self.confidence is not None else 0.6
        spans = [
            (normalize_word(w) or w, start, end, conf)
            for w, (start, end) in zip(tokens, even_word_spans(tokens, sample.duration))
        ]
        words, phonemes = build_words(self, spans)
        return ProviderResult(
            provider=self.name,
            transcript=target,
            confidence=self.confidence,
            words=words,
            phonemes=phonemes,
            native_scores={"overall": self.overall} if self.overall is not None else {},
        )


def sine(freq: float = 220.0, duration: float = 2.0, sample_rate: int = 16000, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(duration * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * freq * t)).astype(np.float32)


@pytest.fixture
def make_adapter():
    """返回 FakeAdapter 类，用法: make_adapter("google", priority=3)"""
    return FakeAdapter


@pytest.fixture
def make_sine():
    """返回正弦波生成函数"""
    return sine


@pytest.fixture
def sine_sample():
    """2 秒 220Hz 正弦波，16kHz"""
    return AudioSample(sine(), 16000)


@pytest.fixture
def silence_sample():
    """3 秒全零静音，16kHz"""
    return AudioSample(np.zeros(48000, dtype=np.float32), 16000)


@pytest.fixture
def pcm_bytes():
    """把浮点样本转成 16-bit 小端 PCM 字节"""
    def convert(samples: np.ndarray) -> bytes:
        return (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2").tobytes()
    return convert


@pytest.fixture
def make_features():
    """按给定逐帧基频 / 能量构造 FeatureSet（其余特征填零）"""
    def build(
        pitch: list[float] | None = None,
        energy: list[float] | None = None,
        sample_rate: int = 16000,
        hop_size: int = 512,
    ) -> FeatureSet:
        n = len(pitch if pitch is not None else energy or [])
        pitch_arr = np.array(pitch if pitch is not None else [0.0] * n, dtype=np.float64)
        energy_arr = np.array(energy if energy is not None else [0.1] * n, dtype=np.float64)
        zeros = np.zeros(n)
        return FeatureSet(
            mfcc=np.zeros((n, 13)),
            pitch=pitch_arr,
            energy=energy_arr,
            zero_crossing_rate=zeros,
            spectral_centroid=zeros,
            spectral_rolloff=zeros,
            spectral_entropy=zeros,
            vad_active=pitch_arr > 0,
            vad_confidence=zeros,
            sample_rate=sample_rate,
            frame_size=1024,
            hop_size=hop_size,
        )
    return build


@pytest.fixture
def analysis_config():
    """云端 provider 均未配置凭证，只有 Local 可用；重试不等待"""
    return AnalysisConfig.from_dict({
        "analysis": {"retry_backoff_sec": 0.0},
    })


@pytest.fixture
def local_disabled_config():
    """Local 在集成中被禁用，只能作为兜底运行"""
    return AnalysisConfig.from_dict({
        "models": {"local": {"enabled": False}},
        "analysis": {"retry_backoff_sec": 0.0},
    })
