"""
发音评测引擎 - 韵律分析

根据逐帧特征和词边界计算重音、节奏、语调、语速四类韵律指标。
所有 naturalness / accuracy / regularity / fluency 都落在 [0, 1]。
"""
import logging

import numpy as np

from pronscore.analysis.reference import normalize_word, tokenize
from pronscore.models import (
    FeatureSet,
    IntonationProfile,
    PaceProfile,
    ProsodyProfile,
    RhythmProfile,
    StressProfile,
    WordSegment,
)

logger = logging.getLogger(__name__)

PITCH_NORM_HZ = 200.0
ENERGY_NORM = 10.0
SMOOTH_WINDOW = 5
PAUSE_MIN_SEC = 0.1

PUNCTUATION = (".", ",", "!", "?", ";", ":")
CONJUNCTIONS = {"and", "but", "or", "so", "because", "although"}


def _variance(values: list[float]) -> float:
    return float(np.var(values)) if values else 0.0


def expected_stress(word: str) -> float:
    """
    期望重音启发式

    短词默认重读，-ing / -ed 结尾默认弱读，un- / re- 前缀中等，其余实词首音节重读。
    """
    w = normalize_word(word)
    if len(w) <= 2:
        return 0.8
    if w.endswith("ing") or w.endswith("ed"):
        return 0.3
    if w.startswith("un") or w.startswith("re"):
        return 0.6
    return 0.7


class ProsodyAnalyzer:
    """韵律分析器"""

    def analyze(
        self,
        features: FeatureSet,
        word_boundaries: list[WordSegment],
        transcript: str = "",
    ) -> ProsodyProfile:
        words = sorted(word_boundaries, key=lambda w: w.start)
        if not transcript:
            transcript = " ".join(w.word for w in words)

        profile = ProsodyProfile(
            stress=self.analyze_stress(features, words),
            rhythm=self.analyze_rhythm(words, transcript),
            intonation=self.analyze_intonation(features, transcript),
            pace=self.analyze_pace(features, words),
        )
        logger.debug(
            f"韵律分析: stress={profile.stress.naturalness:.2f}, "
            f"rhythm={profile.rhythm.naturalness:.2f}, "
            f"intonation={profile.intonation.naturalness:.2f}, "
            f"pace={profile.pace.words_per_minute:.0f}wpm"
        )
        return profile

    def word_stress(self, features: FeatureSet, word: WordSegment) -> float:
        """单词重音强度：平均基频 / 200Hz 与平均能量 * 10 各封顶 1，五五开"""
        first, last = features.frame_range(word.start, word.end)
        if last <= first:
            return 0.0
        pitch = features.pitch[first:last]
        voiced = pitch[pitch > 0]
        avg_pitch = float(voiced.mean()) if len(voiced) else 0.0
        avg_energy = float(features.energy[first:last].mean())
        pitch_norm = min(1.0, avg_pitch / PITCH_NORM_HZ)
        energy_norm = min(1.0, avg_energy * ENERGY_NORM)
        return 0.5 * pitch_norm + 0.5 * energy_norm

    def analyze_stress(self, features: FeatureSet, words: list[WordSegment]) -> StressProfile:
        pattern = [self.word_stress(features, w) for w in words]
        expected = [expected_stress(w.word) for w in words]

        if not pattern:
            return StressProfile(pattern=[], accuracy=0.5, naturalness=0.8)

        mae = float(np.mean(np.abs(np.array(pattern) - np.array(expected))))
        accuracy = max(0.0, min(1.0, 1.0 - mae))

        if len(pattern) < 2:
            naturalness = 0.8
        else:
            variance = _variance(pattern)
            spread = max(pattern) - min(pattern)
            variance_score = 1.0 if 0.05 < variance < 0.3 else 0.6
            range_score = 1.0 if 0.2 < spread < 0.8 else 0.7
            naturalness = (variance_score + range_score) / 2

        return StressProfile(pattern=pattern, accuracy=accuracy, naturalness=naturalness)

    def analyze_rhythm(self, words: list[WordSegment], transcript: str) -> RhythmProfile:
        intervals = [words[i].start - words[i - 1].end for i in range(1, len(words))]

        if len(intervals) < 2:
            regularity = 0.8
        else:
            mean = float(np.mean(intervals))
            cv = float(np.std(intervals)) / mean if mean > 0 else 1.0
            regularity = max(0.0, min(1.0, 1.0 - cv))

        # 词边界处的标点取自 transcript（provider 返回的词通常不带标点）
        tokens = tokenize(transcript)
        labels = tokens if len(tokens) == len(words) else [w.word for w in words]

        total = appropriate = 0
        for i, interval in enumerate(intervals):
            if interval > PAUSE_MIN_SEC:
                total += 1
                if self._is_natural_boundary(labels[i], labels[i + 1]):
                    appropriate += 1
        naturalness = appropriate / total if total else 0.8

        return RhythmProfile(timing=intervals, regularity=regularity, naturalness=naturalness)

    @staticmethod
    def _is_natural_boundary(current: str, following: str) -> bool:
        return any(p in current for p in PUNCTUATION) or normalize_word(following) in CONJUNCTIONS

    def analyze_intonation(self, features: FeatureSet, transcript: str) -> IntonationProfile:
        contour = self.smooth_contour(features.pitch)
        voiced = [p for p in contour if p > 0]
        pitch_range = max(voiced) - min(voiced) if voiced else 0.0
        naturalness = self._intonation_naturalness(contour, transcript)
        return IntonationProfile(contour=contour, range=float(pitch_range), naturalness=naturalness)

    @staticmethod
    def smooth_contour(pitch: np.ndarray) -> list[float]:
        """窗口为 5 的滑动平均，只对有声帧取平均，窗口内全为清音则保持 0"""
        values = np.asarray(pitch, dtype=np.float64)
        half = SMOOTH_WINDOW // 2
        contour: list[float] = []
        for i in range(len(values)):
            window = values[max(0, i - half): i + half + 1]
            voiced = window[window > 0]
            contour.append(float(voiced.mean()) if len(voiced) else 0.0)
        return contour

    @staticmethod
    def _intonation_naturalness(contour: list[float], transcript: str) -> float:
        if len(contour) < 10:
            return 0.7

        def avg_voiced(segment: list[float]) -> float:
            voiced = [p for p in segment if p > 0]
            return sum(voiced) / len(voiced) if voiced else 0.0

        n = len(contour)
        start = avg_voiced(contour[: int(n * 0.2)])
        end = avg_voiced(contour[int(n * 0.8):])
        if start == 0 or end == 0:
            return 0.6

        change = (end - start) / start
        text = transcript.strip()
        if text.endswith("?"):
            return 0.9 if change > 0.1 else 0.5
        if text.endswith("."):
            return 0.9 if change < -0.05 else 0.6
        return 0.7

    def analyze_pace(self, features: FeatureSet, words: list[WordSegment]) -> PaceProfile:
        pauses = [max(0.0, words[i].start - words[i - 1].end) for i in range(1, len(words))]

        duration = words[-1].end - words[0].start if words else 0.0
        if duration <= 0:
            duration = features.frame_count * features.frame_duration
        wpm = len(words) / duration * 60 if duration > 0 else 0.0

        if 120 <= wpm <= 200:
            rate_score = 1.0
        elif 100 <= wpm <= 250:
            rate_score = 0.8
        else:
            rate_score = 0.6

        avg_pause = float(np.mean(pauses)) if pauses else -1.0
        pause_score = 1.0 if 0.1 <= avg_pause <= 0.5 else 0.7

        return PaceProfile(
            words_per_minute=float(wpm),
            pause_pattern=pauses,
            fluency=(rate_score + pause_score) / 2,
        )
