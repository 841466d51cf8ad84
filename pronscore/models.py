"""
发音评测引擎 - 数据模型定义

定义统一的数据结构，用于在各模块间传递数据。
音频样本、特征集和最终结果一经创建即不可修改。
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np


class ProviderName(str, Enum):
    """Provider 名称（封闭集合）"""
    GOOGLE = "google"
    AZURE = "azure"
    GEMINI = "gemini"
    LOCAL = "local"


# 兜底 Local 运行时写入 model_used 的标签
LOCAL_FALLBACK_LABEL = "local-fallback"


def _readonly(values: Any, dtype: Any = np.float64) -> np.ndarray:
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class AudioSample:
    """单声道 PCM 样本，取值归一化到 [-1, 1]"""
    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "samples", _readonly(self.samples, np.float32))

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return len(self.samples) / self.sample_rate


@dataclass(frozen=True, eq=False)
class FeatureSet:
    """
    逐帧声学特征

    所有逐帧数组长度一致（= 帧数），帧严格按时间排序。
    """
    mfcc: np.ndarray
    pitch: np.ndarray
    energy: np.ndarray
    zero_crossing_rate: np.ndarray
    spectral_centroid: np.ndarray
    spectral_rolloff: np.ndarray
    spectral_entropy: np.ndarray
    vad_active: np.ndarray
    vad_confidence: np.ndarray
    sample_rate: int
    frame_size: int
    hop_size: int

    def __post_init__(self) -> None:
        for name in (
            "mfcc", "pitch", "energy", "zero_crossing_rate", "spectral_centroid",
            "spectral_rolloff", "spectral_entropy", "vad_confidence",
        ):
            object.__setattr__(self, name, _readonly(getattr(self, name)))
        object.__setattr__(self, "vad_active", _readonly(self.vad_active, bool))

    @property
    def frame_count(self) -> int:
        return int(len(self.energy))

    @property
    def frame_duration(self) -> float:
        """相邻帧起点之间的时间间隔（秒）"""
        return self.hop_size / self.sample_rate if self.sample_rate else 0.0

    @property
    def voiced_ratio(self) -> float:
        if self.frame_count == 0:
            return 0.0
        return float(np.mean(self.vad_active))

    def frame_range(self, start: float, end: float) -> tuple[int, int]:
        """返回起点时间落在 [start, end) 内的帧下标区间"""
        if self.frame_count == 0 or self.sample_rate <= 0:
            return 0, 0
        hop_sec = self.frame_duration
        first = max(0, int(np.ceil(start / hop_sec - 1e-9)))
        last = min(self.frame_count, int(np.ceil(end / hop_sec - 1e-9)))
        return first, max(first, last)

    @classmethod
    def empty(cls, sample_rate: int, frame_size: int, hop_size: int, n_mfcc: int = 13) -> "FeatureSet":
        return cls(
            mfcc=np.zeros((0, n_mfcc)),
            pitch=np.zeros(0),
            energy=np.zeros(0),
            zero_crossing_rate=np.zeros(0),
            spectral_centroid=np.zeros(0),
            spectral_rolloff=np.zeros(0),
            spectral_entropy=np.zeros(0),
            vad_active=np.zeros(0, dtype=bool),
            vad_confidence=np.zeros(0),
            sample_rate=sample_rate,
            frame_size=frame_size,
            hop_size=hop_size,
        )


@dataclass(frozen=True)
class PhonemeSegment:
    """音素级对齐信息"""
    phoneme: str
    start: float
    end: float
    confidence: float = 1.0  # [0, 1]
    accuracy: float = 0.0  # [0, 100]
    expected_phoneme: str | None = None
    issues: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.end > self.start:
            raise ValueError(f"音素 {self.phoneme} 时间区间非法: {self.start} -> {self.end}")

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class WordSegment:
    """词级对齐信息，phonemes 的时间区间位于词区间之内"""
    word: str
    start: float
    end: float
    accuracy: float = 0.0  # [0, 100]
    stress: float = 0.0  # [0, 1]
    expected_duration: float = 0.0
    phonemes: list[PhonemeSegment] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        return max(0.0, self.end - self.start)


@dataclass(frozen=True)
class StressProfile:
    pattern: list[float] = field(default_factory=list)
    accuracy: float = 0.0
    naturalness: float = 0.0


@dataclass(frozen=True)
class RhythmProfile:
    timing: list[float] = field(default_factory=list)
    regularity: float = 0.0
    naturalness: float = 0.0


@dataclass(frozen=True)
class IntonationProfile:
    contour: list[float] = field(default_factory=list)
    range: float = 0.0
    naturalness: float = 0.0


@dataclass(frozen=True)
class PaceProfile:
    words_per_minute: float = 0.0
    pause_pattern: list[float] = field(default_factory=list)
    fluency: float = 0.0


@dataclass(frozen=True)
class ProsodyProfile:
    """韵律分析结果，所有 naturalness/accuracy/regularity/fluency 在 [0, 1]"""
    stress: StressProfile = field(default_factory=StressProfile)
    rhythm: RhythmProfile = field(default_factory=RhythmProfile)
    intonation: IntonationProfile = field(default_factory=IntonationProfile)
    pace: PaceProfile = field(default_factory=PaceProfile)


@dataclass(frozen=True)
class GOPScore:
    """Goodness of Pronunciation 评分（0-100 分制）"""
    overall: float = 0.0
    phoneme_level: list[float] = field(default_factory=list)
    word_level: list[float] = field(default_factory=list)
    sentence_level: float = 0.0
    confidence: float = 0.0


@dataclass(frozen=True)
class NativeSimilarityScore:
    """母语者相似度（0-100 分制），dtw_distance >= 0"""
    overall: float = 0.0
    phonetic: float = 0.0
    prosodic: float = 0.0
    temporal: float = 0.0
    dtw_distance: float = 0.0
    confidence: float = 0.0
    dtw_method: str = "variance-proxy"  # dtw | variance-proxy


@dataclass(frozen=True)
class AudioQualityMetrics:
    """音频质量指标"""
    snr: float = 0.0
    clarity: float = 0.0
    volume: float = 0.0
    background_noise: float = 0.0
    rms_db: float = -200.0
    silence_ratio: float = 1.0
    clipping_ratio: float = 0.0
    voiced_ratio: float = 0.0
    sample_rate: int = 0
    bit_depth: int = 16
    duration: float = 0.0
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.issues


@dataclass(frozen=True)
class Feedback:
    """反馈建议"""
    overall: str = ""
    strengths: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)
    specific_tips: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProviderResult:
    """
    单个 provider 的识别 / 评估输出

    native_scores 为 provider 原生分数（0-100），
    支持的键: overall / accuracy / fluency / completeness。
    """
    provider: str
    transcript: str
    confidence: float | None = None  # [0, 1]，未上报时为 None
    words: list[WordSegment] = field(default_factory=list)
    phonemes: list[PhonemeSegment] = field(default_factory=list)
    native_scores: dict[str, float] = field(default_factory=dict)
    feedback: Feedback | None = None


@dataclass
class ProviderOutcome:
    """单个 provider 一次调用的结局：result 与 error 二选一"""
    provider: str
    result: ProviderResult | None = None
    error: Exception | None = None
    attempts: int = 0
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.result is not None

    def summary(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "status": "ok" if self.ok else type(self.error).__name__,
            "error": str(self.error) if self.error else None,
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass(frozen=True)
class AnalysisResult:
    """
    完整评测结果

    由 orchestrator 每次请求创建一次，返回后归调用方所有。
    """
    overall_score: float
    gop_score: GOPScore
    native_similarity: NativeSimilarityScore
    prosody: ProsodyProfile
    words: list[WordSegment]
    audio_quality: AudioQualityMetrics
    feedback: Feedback
    confidence: float
    model_used: list[str]
    processing_time: int = field(default=0, compare=False)  # ms
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat(), compare=False)
    provider_outcomes: list[dict[str, Any]] = field(default_factory=list, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式（用于 JSON 输出）"""
        data = asdict(self)
        data["overall_score"] = round(self.overall_score, 1)
        data["confidence"] = round(self.confidence, 1)
        data["words"] = [
            {**asdict(w), "duration": round(w.duration, 3)} for w in self.words
        ]
        return data


@dataclass(frozen=True)
class AnalyzeOptions:
    """Analyze 请求选项"""
    model_preference: list[str] | None = None
    user_accent: str | None = None
    enable_real_time: bool = False


@dataclass(frozen=True)
class VoiceActivity:
    """单帧 / 单块的语音活动判定"""
    is_active: bool
    confidence: float
    energy: float = 0.0
    zero_crossing_rate: float = 0.0
    spectral_entropy: float = 0.0


@dataclass(frozen=True)
class StreamingAnalysisResult:
    """实时模式下的部分结果"""
    partial: bool
    transcript: str
    confidence: float
    phonemes: list[PhonemeSegment] = field(default_factory=list)
    timestamp: float = 0.0


@dataclass(frozen=True, eq=False)
class RealTimeAudioData:
    """实时模式下每帧推送给 UI 的电平 / VAD / 质量数据"""
    samples: np.ndarray
    timestamp: float
    vad: VoiceActivity
    level: float
    quality: dict[str, float] = field(default_factory=dict)
