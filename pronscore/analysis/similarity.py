"""
发音评测引擎 - 母语者相似度

phonetic / prosodic / temporal 三个子分按 0.4 / 0.3 / 0.3 合成总分。
dtw_distance 优先使用与母语者参考 MFCC 轨迹的真实 DTW 距离；
参考轨迹缺失时退化为有界 [0, 1] 的 MFCC 方差近似，并在 dtw_method 中标注。
"""
import logging

import numpy as np
from fastdtw import fastdtw
from scipy.spatial.distance import euclidean

from pronscore.analysis.reference import ReferenceData
from pronscore.models import FeatureSet, NativeSimilarityScore, PhonemeSegment, ProsodyProfile

logger = logging.getLogger(__name__)

DEFAULT_PHONETIC = 0.5
DEFAULT_PROSODIC = 0.6
DEFAULT_TEMPORAL = 0.6
SAME_CLASS_SIMILARITY = 0.7
OTHER_CLASS_SIMILARITY = 0.3


def duration_similarity(ratio: float) -> float:
    if 0.8 <= ratio <= 1.2:
        return 1.0
    if 0.6 <= ratio <= 1.5:
        return 0.8
    if 0.4 <= ratio <= 2.0:
        return 0.6
    return 0.3


class NativeSimilarityAnalyzer:
    """与母语者参考的相似度分析"""

    def __init__(self, reference: ReferenceData | None = None) -> None:
        self.reference = reference or ReferenceData()

    def score(
        self,
        transcript: str,
        phonemes: list[PhonemeSegment],
        features: FeatureSet,
        prosody: ProsodyProfile | None,
    ) -> NativeSimilarityScore:
        phonetic = self.phonetic_similarity(phonemes)
        prosodic = self.prosodic_similarity(prosody)
        temporal = self.temporal_similarity(phonemes)
        dtw_distance, method = self.dtw_distance(transcript, features)

        overall = round(100 * (0.4 * phonetic + 0.3 * prosodic + 0.3 * temporal))

        subs = np.array([phonetic, prosodic, temporal])
        confidence = (float(subs.mean()) + max(0.0, 1.0 - 2.0 * float(subs.var()))) / 2.0

        return NativeSimilarityScore(
            overall=float(min(100, max(0, overall))),
            phonetic=float(round(100 * phonetic)),
            prosodic=float(round(100 * prosodic)),
            temporal=float(round(100 * temporal)),
            dtw_distance=max(0.0, float(dtw_distance)),
            confidence=float(round(100 * confidence)),
            dtw_method=method,
        )

    def phoneme_distance(self, actual: str, expected: str) -> float:
        if actual.upper() == expected.upper():
            return 1.0
        actual_class = self.reference.phoneme_class(actual)
        if actual_class is not None and actual_class == self.reference.phoneme_class(expected):
            return SAME_CLASS_SIMILARITY
        return OTHER_CLASS_SIMILARITY

    def phonetic_similarity(self, phonemes: list[PhonemeSegment]) -> float:
        """有期望音素时按类别相似度并乘以置信度，否则使用 accuracy / 100"""
        if not phonemes:
            return DEFAULT_PHONETIC
        total = 0.0
        for p in phonemes:
            if p.expected_phoneme:
                total += self.phoneme_distance(p.phoneme, p.expected_phoneme) * p.confidence
            else:
                total += p.accuracy / 100.0
        return max(0.0, min(1.0, total / len(phonemes)))

    @staticmethod
    def prosodic_similarity(prosody: ProsodyProfile | None) -> float:
        if prosody is None:
            return DEFAULT_PROSODIC
        return float(np.mean([
            prosody.stress.naturalness,
            prosody.rhythm.naturalness,
            prosody.intonation.naturalness,
        ]))

    def temporal_similarity(self, phonemes: list[PhonemeSegment]) -> float:
        scores = []
        for p in phonemes:
            expected = self.reference.native_duration(p.phoneme)
            if expected > 0:
                scores.append(duration_similarity(p.duration / expected))
        return float(np.mean(scores)) if scores else DEFAULT_TEMPORAL

    def dtw_distance(self, transcript: str, features: FeatureSet) -> tuple[float, str]:
        """
        与母语者参考轨迹的 DTW 距离（按对齐路径长度归一化）

        Returns:
            (距离, "dtw" 或 "variance-proxy")
        """
        if features.frame_count == 0:
            return 0.5, "variance-proxy"

        reference = self.reference.native_trajectory(transcript)
        if reference is not None and len(reference) > 0:
            n = min(features.mfcc.shape[1], reference.shape[1])
            distance, path = fastdtw(features.mfcc[:, :n], reference[:, :n], dist=euclidean)
            return float(distance) / max(1, len(path)), "dtw"

        # TODO: 为常用练习句子录制母语者参考轨迹后，可以去掉方差近似
        logger.info(f"无母语者参考轨迹，DTW 距离退化为 MFCC 方差近似: '{transcript[:30]}'")
        variance = float(np.mean(np.var(features.mfcc, axis=0)))
        return max(0.0, min(1.0, variance * 2)), "variance-proxy"
