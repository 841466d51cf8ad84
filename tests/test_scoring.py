"""
GOP 评分与母语者相似度测试
"""
import numpy as np
import pytest


def phoneme(label, start, end, confidence=0.8, accuracy=0.0, expected=None):
    from pronscore.models import PhonemeSegment
    return PhonemeSegment(
        phoneme=label,
        start=start,
        end=end,
        confidence=confidence,
        accuracy=accuracy,
        expected_phoneme=expected,
    )


@pytest.fixture
def empty_features():
    from pronscore.models import FeatureSet
    return FeatureSet.empty(16000, 1024, 512)


class TestGOPHelpers:
    """测试 GOP 辅助函数"""

    @pytest.mark.parametrize("ratio, expected", [
        (1.0, 1.0), (0.7, 1.0), (1.3, 1.0),
        (0.5, 0.7), (1.8, 0.7),
        (0.4, 0.3), (2.0, 0.3),
    ])
    def test_duration_score(self, ratio, expected):
        from pronscore.analysis.gop import duration_score

        assert duration_score(ratio) == expected

    def test_cosine_similarity(self):
        """相同向量为 1，正交为 0，长度不同时按短的截断"""
        from pronscore.analysis.gop import cosine_similarity

        assert cosine_similarity(np.array([1.0, 2.0]), np.array([1.0, 2.0])) == pytest.approx(1.0)
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == 0.0
        assert cosine_similarity(np.array([1.0, 0.0, 5.0]), np.array([2.0, 0.0])) == pytest.approx(1.0)
        assert cosine_similarity(np.zeros(3), np.ones(3)) == 0.0


class TestGOPScorer:
    """测试 GOP 评分"""

    def test_unknown_phoneme(self, empty_features):
        """非 ARPAbet 音素得 0.5"""
        from pronscore.analysis.gop import GOPScorer

        assert GOPScorer().phoneme_score(phoneme("XX", 0.0, 0.1), empty_features) == 0.5

    def test_phoneme_without_frames(self, empty_features):
        """窗内无帧时特征似然退回置信度"""
        from pronscore.analysis.gop import GOPScorer

        score = GOPScorer().phoneme_score(phoneme("AA", 0.0, 0.12, confidence=0.8), empty_features)

        assert score == pytest.approx((0.7 * 0.8 + 0.3 * 1.0) * 0.8)

    def test_word_without_phonemes(self, empty_features):
        """没有音素的词得 0.5"""
        from pronscore.analysis.gop import GOPScorer
        from pronscore.models import WordSegment

        assert GOPScorer().word_score(WordSegment("hmm", 0.0, 0.3), empty_features) == 0.5

    def test_empty_input(self, empty_features):
        """没有音素和词时使用默认均分 0.5"""
        from pronscore.analysis.gop import GOPScorer

        gop = GOPScorer().score([], [], empty_features)

        assert gop.overall == 50
        assert gop.sentence_level == 50
        assert gop.confidence == 50
        assert gop.phoneme_level == []
        assert gop.word_level == []

    def test_score_aggregation(self, empty_features):
        """音素 / 词 / 句子 / 总分的组合"""
        from pronscore.analysis.gop import GOPScorer
        from pronscore.models import WordSegment

        p = phoneme("AA", 0.0, 0.12, confidence=0.8)
        w = WordSegment("ah", 0.0, 0.12, phonemes=[p])
        gop = GOPScorer().score([p], [w], empty_features)

        assert gop.phoneme_level == [69.0]
        assert gop.word_level == [61.0]
        assert gop.sentence_level == 66.0
        assert gop.overall == 65.0
        assert gop.confidence == 100.0

    def test_score_with_features(self, sine_sample):
        """带真实特征时输出在 0-100 且与输入等长"""
        from pronscore.analysis.gop import GOPScorer
        from pronscore.models import WordSegment
        from pronscore.pipeline.features import extract_features

        phonemes = [phoneme("K", 0.1, 0.2), phoneme("AE", 0.2, 0.35), phoneme("T", 0.35, 0.45)]
        words = [WordSegment("cat", 0.1, 0.45, stress=0.7, expected_duration=0.34, phonemes=phonemes)]
        gop = GOPScorer().score(phonemes, words, extract_features(sine_sample))

        assert len(gop.phoneme_level) == 3
        assert len(gop.word_level) == 1
        assert 0 <= gop.overall <= 100
        assert 10 <= gop.confidence <= 100
        assert all(0 <= s <= 100 for s in gop.phoneme_level)


class TestNativeSimilarity:
    """测试母语者相似度"""

    def test_phoneme_distance(self):
        """同音素 1.0，同类 0.7，异类 0.3"""
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer

        analyzer = NativeSimilarityAnalyzer()

        assert analyzer.phoneme_distance("AA", "aa") == 1.0
        assert analyzer.phoneme_distance("AA", "IY") == 0.7
        assert analyzer.phoneme_distance("AA", "S") == 0.3
        assert analyzer.phoneme_distance("QQ", "S") == 0.3

    def test_phonetic_similarity(self):
        """有期望音素时按类别相似度乘置信度，否则用 accuracy"""
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer

        analyzer = NativeSimilarityAnalyzer()

        assert analyzer.phonetic_similarity([]) == 0.5
        assert analyzer.phonetic_similarity([phoneme("AA", 0, 0.1, 0.9, expected="AA")]) == pytest.approx(0.9)
        assert analyzer.phonetic_similarity([phoneme("AA", 0, 0.1, accuracy=80)]) == pytest.approx(0.8)

    def test_temporal_similarity(self):
        """时长比接近 1 得满分"""
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer, duration_similarity

        analyzer = NativeSimilarityAnalyzer()

        assert analyzer.temporal_similarity([]) == 0.6
        assert analyzer.temporal_similarity([phoneme("AA", 0.0, 0.12)]) == 1.0
        assert analyzer.temporal_similarity([phoneme("AA", 0.0, 0.3)]) == 0.3
        assert duration_similarity(1.4) == 0.8
        assert duration_similarity(1.9) == 0.6

    def test_prosodic_default(self):
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer

        assert NativeSimilarityAnalyzer.prosodic_similarity(None) == 0.6

    def test_dtw_without_frames(self, empty_features):
        """没有帧时返回 0.5 的近似值"""
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer

        assert NativeSimilarityAnalyzer().dtw_distance("hello", empty_features) == (0.5, "variance-proxy")

    def test_dtw_variance_proxy(self, sine_sample):
        """没有参考轨迹时退化为方差近似，取值有界"""
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer
        from pronscore.pipeline.features import extract_features

        distance, method = NativeSimilarityAnalyzer().dtw_distance("hello", extract_features(sine_sample))

        assert method == "variance-proxy"
        assert 0.0 <= distance <= 1.0

    def test_dtw_with_registered_trajectory(self, sine_sample):
        """注册了参考轨迹时使用真正的 DTW，与自身距离为 0"""
        from pronscore.analysis.reference import ReferenceData
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer
        from pronscore.pipeline.features import extract_features

        features = extract_features(sine_sample)
        reference = ReferenceData()
        reference.register_trajectory("The cat sits.", features.mfcc)

        distance, method = NativeSimilarityAnalyzer(reference).dtw_distance("the cat sits", features)

        assert method == "dtw"
        assert distance == pytest.approx(0.0, abs=1e-9)

    def test_trajectory_from_directory(self, tmp_path):
        """从目录按句子 slug 加载 .npy 轨迹"""
        from pronscore.analysis.reference import ReferenceData

        trajectory = np.random.default_rng(0).normal(size=(20, 13))
        np.save(tmp_path / "the_cat_sits.npy", trajectory)

        reference = ReferenceData(trajectory_dir=tmp_path)

        assert np.array_equal(reference.native_trajectory("The cat sits."), trajectory)
        assert reference.native_trajectory("Another sentence") is None

    def test_score_ranges(self, sine_sample):
        """总分、子分数与置信度都在 0-100"""
        from pronscore.analysis.similarity import NativeSimilarityAnalyzer
        from pronscore.pipeline.features import extract_features

        phonemes = [phoneme("K", 0.1, 0.2, expected="K"), phoneme("AE", 0.2, 0.33, expected="EH")]
        score = NativeSimilarityAnalyzer().score("cat", phonemes, extract_features(sine_sample), None)

        for value in (score.overall, score.phonetic, score.prosodic, score.temporal, score.confidence):
            assert 0 <= value <= 100
        assert score.dtw_distance >= 0
        assert score.prosodic == 60


class TestReferenceData:
    """测试参考数据"""

    def test_lexicon(self):
        from pronscore.analysis.reference import ReferenceData

        reference = ReferenceData()

        assert reference.phonemes_for_word("Cat,") == ["K", "AE", "T"]
        assert reference.phonemes_for_word("sits") == ["S", "IH", "T", "S"]
        assert reference.phonemes_for_word("zorp")

    def test_tokenize_keeps_punctuation(self):
        from pronscore.analysis.reference import tokenize

        assert tokenize("Hello, world !") == ["Hello,", "world"]
