"""
发音评测引擎 - GOP (Goodness of Pronunciation) 评分

音素分 = (0.7 * 特征似然 + 0.3 * 时长分) * 音素置信度
词分   = 0.6 * 词内音素均分 + 0.2 * 词时长分 + 0.2 * 重音
句子分 = 0.6 * 音素均分 + 0.4 * 词均分
总分   = round(100 * (0.4 * 音素均分 + 0.4 * 词均分 + 0.2 * 句子分))
"""
import logging

import numpy as np

from pronscore.analysis.reference import PhonemeModel, ReferenceData
from pronscore.models import FeatureSet, GOPScore, PhonemeSegment, WordSegment

logger = logging.getLogger(__name__)

UNKNOWN_PHONEME_SCORE = 0.5
EMPTY_WORD_SCORE = 0.5


def duration_score(ratio: float) -> float:
    """实际/期望时长之比落在 [0.7,1.3] 得 1.0，[0.5,1.8] 得 0.7，否则 0.3"""
    if 0.7 <= ratio <= 1.3:
        return 1.0
    if 0.5 <= ratio <= 1.8:
        return 0.7
    return 0.3


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    a, b = np.asarray(a[:n], dtype=np.float64), np.asarray(b[:n], dtype=np.float64)
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    return float(np.dot(a, b) / norm) if norm > 0 else 0.0


def _mean(values: list[float], default: float = 0.5) -> float:
    return float(np.mean(values)) if values else default


class GOPScorer:
    """基于参考音素模型的 GOP 评分器"""

    def __init__(self, reference: ReferenceData | None = None) -> None:
        self.reference = reference or ReferenceData()

    def score(
        self,
        phonemes: list[PhonemeSegment],
        words: list[WordSegment],
        features: FeatureSet,
    ) -> GOPScore:
        phoneme_scores = [self.phoneme_score(p, features) for p in phonemes]
        word_scores = [self.word_score(w, features) for w in words]

        mean_phoneme = _mean(phoneme_scores)
        mean_word = _mean(word_scores)
        sentence = 0.6 * mean_phoneme + 0.4 * mean_word

        all_scores = phoneme_scores + word_scores
        confidence = max(0.1, 1.0 - float(np.var(all_scores))) if all_scores else 0.5

        overall = round(100 * (0.4 * mean_phoneme + 0.4 * mean_word + 0.2 * sentence))
        result = GOPScore(
            overall=float(min(100, max(0, overall))),
            phoneme_level=[float(round(100 * s)) for s in phoneme_scores],
            word_level=[float(round(100 * s)) for s in word_scores],
            sentence_level=float(round(100 * sentence)),
            confidence=float(round(100 * confidence)),
        )
        logger.debug(
            f"GOP: overall={result.overall}, {len(phonemes)} 个音素, {len(words)} 个词"
        )
        return result

    def phoneme_score(self, phoneme: PhonemeSegment, features: FeatureSet) -> float:
        model = self.reference.phoneme_model(phoneme.phoneme)
        if model is None:
            return UNKNOWN_PHONEME_SCORE

        likelihood = self.feature_likelihood(phoneme, model, features)
        dur = duration_score(phoneme.duration * 1000.0 / model.duration_ms)
        gop = (0.7 * likelihood + 0.3 * dur) * phoneme.confidence
        return max(0.0, min(1.0, gop))

    @staticmethod
    def feature_likelihood(phoneme: PhonemeSegment, model: PhonemeModel, features: FeatureSet) -> float:
        """音素时间窗内平均 MFCC 与参考向量的余弦相似度，窗内无帧时退回 provider 置信度"""
        first, last = features.frame_range(phoneme.start, phoneme.end)
        if last <= first:
            return phoneme.confidence
        avg_mfcc = features.mfcc[first:last].mean(axis=0)
        return max(0.1, cosine_similarity(avg_mfcc, np.array(model.features)))

    def word_score(self, word: WordSegment, features: FeatureSet) -> float:
        if not word.phonemes:
            return EMPTY_WORD_SCORE

        phoneme_avg = _mean([self.phoneme_score(p, features) for p in word.phonemes])
        if word.expected_duration > 0:
            dur = duration_score(word.duration / word.expected_duration)
        else:
            dur = 1.0
        stress = max(0.0, min(1.0, word.stress))
        return 0.6 * phoneme_avg + 0.2 * dur + 0.2 * stress
