"""
发音评测引擎 - 多模型集成模块

负责 provider 选择、并发调用、Local 兜底以及加权融合。

流程:
1. 提取一次特征与音频质量（所有候选共用）
2. 并发调用所有启用的 provider，每个受自身超时约束
3. 全部失败时同步调用 Local 兜底，兜底也失败则抛出 AllProvidersFailed
4. 每个成功的 provider 结合本地 GOP / 韵律 / 相似度评分生成一个候选结果
5. 按 0.6·优先级 + 0.4·置信度 计算权重并融合
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

import httpx
import numpy as np

from pronscore.advice.generator import (
    MAX_IMPROVEMENTS,
    MAX_NEXT_STEPS,
    MAX_STRENGTHS,
    MAX_TIPS,
    generate_feedback,
)
from pronscore.analysis.gop import GOPScorer
from pronscore.analysis.prosody import ProsodyAnalyzer
from pronscore.analysis.reference import ReferenceData
from pronscore.analysis.similarity import NativeSimilarityAnalyzer
from pronscore.config import AnalysisConfig, ModelConfig
from pronscore.errors import AllProvidersFailed, InvalidFusedResult, InvalidInput
from pronscore.models import (
    LOCAL_FALLBACK_LABEL,
    AnalysisResult,
    AnalyzeOptions,
    AudioQualityMetrics,
    AudioSample,
    FeatureSet,
    Feedback,
    GOPScore,
    IntonationProfile,
    NativeSimilarityScore,
    PaceProfile,
    PhonemeSegment,
    ProsodyProfile,
    ProviderName,
    ProviderOutcome,
    ProviderResult,
    RhythmProfile,
    StressProfile,
    WordSegment,
)
from pronscore.pipeline.features import AudioFeatureExtractor
from pronscore.pipeline.preprocess import analyze_audio_quality
from pronscore.pipeline.providers.azure import AzureSpeechAdapter
from pronscore.pipeline.providers.base import ProviderAdapter
from pronscore.pipeline.providers.gemini import GeminiAdapter
from pronscore.pipeline.providers.google import GoogleSpeechAdapter
from pronscore.pipeline.providers.local import LocalAdapter

logger = logging.getLogger(__name__)

PRIORITY_WEIGHT = 0.6
CONFIDENCE_WEIGHT = 0.4
# 有声帧占比低于该值时按比例压低置信度
FULL_CONFIDENCE_VOICED_RATIO = 0.3
MIN_QUALITY_FACTOR = 0.1


@dataclass
class Candidate:
    """单个成功 provider 对应的候选结果"""
    label: str
    priority: float
    result: AnalysisResult


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _weighted(values: list[float], weights: list[float]) -> float:
    return float(sum(v * w for v, w in zip(values, weights)))


def _weighted_lists(lists: list[list[float]], weights: list[float]) -> list[float]:
    """
    逐下标加权融合

    某个候选在该下标越界时权重记为 0，其余权重在该下标上重新归一化。
    """
    length = max((len(values) for values in lists), default=0)
    fused: list[float] = []
    for i in range(length):
        pairs = [(values[i], w) for values, w in zip(lists, weights) if i < len(values)]
        total = sum(w for _, w in pairs)
        if total > 0:
            fused.append(float(sum(v * w for v, w in pairs) / total))
        else:
            fused.append(float(np.mean([v for v, _ in pairs])))
    return fused


def _union(groups: list[list[str]], cap: int) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for item in group:
            if item and item not in merged:
                merged.append(item)
    return merged[:cap]


def compute_weights(entries: list[tuple[float, float]]) -> list[float]:
    """
    计算融合权重

    Args:
        entries: [(priority, confidence 0-100)]，仅包含成功的 provider

    Returns:
        与 entries 对齐的权重，和为 1
    """
    if not entries:
        return []
    max_priority = max(p for p, _ in entries)
    raw = []
    for priority, confidence in entries:
        normalized = priority / max_priority if max_priority > 0 else 0.0
        raw.append(max(0.0, PRIORITY_WEIGHT * normalized + CONFIDENCE_WEIGHT * confidence / 100.0))
    total = sum(raw)
    if total <= 0:
        return [1.0 / len(entries)] * len(entries)
    return [w / total for w in raw]


def validate_result(result: AnalysisResult) -> None:
    """融合结果的不变量检查，违反即为内部缺陷，直接失败"""
    problems: list[str] = []
    for name, value in (
        ("overall_score", result.overall_score),
        ("confidence", result.confidence),
        ("gop_score.overall", result.gop_score.overall),
        ("native_similarity.overall", result.native_similarity.overall),
    ):
        if not math.isfinite(value) or not 0 <= value <= 100:
            problems.append(f"{name}={value}")
    if not math.isfinite(result.native_similarity.dtw_distance) or result.native_similarity.dtw_distance < 0:
        problems.append(f"dtw_distance={result.native_similarity.dtw_distance}")
    if not result.feedback.overall:
        problems.append("feedback.overall 为空")
    if not isinstance(result.words, list):
        problems.append("words 不是列表")
    if not result.model_used:
        problems.append("model_used 为空")
    if problems:
        raise InvalidFusedResult("融合结果不合法: " + "; ".join(problems))


def build_adapters(
    config: AnalysisConfig,
    reference: ReferenceData,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, ProviderAdapter]:
    """根据配置构建封闭集合内的适配器"""
    adapters: dict[str, ProviderAdapter] = {}
    backoff = config.retry_backoff_sec
    for name, model_config in config.models.items():
        if name == ProviderName.GOOGLE.value:
            adapters[name] = GoogleSpeechAdapter(model_config, http_client, reference, backoff)
        elif name == ProviderName.AZURE.value:
            adapters[name] = AzureSpeechAdapter(model_config, reference, backoff)
        elif name == ProviderName.GEMINI.value:
            adapters[name] = GeminiAdapter(model_config, reference, backoff)
        elif name == ProviderName.LOCAL.value:
            adapters[name] = LocalAdapter(model_config, reference, backoff, config.features)
        else:
            logger.warning(f"未知 provider，已忽略: {name}")
    return adapters


class EnsembleOrchestrator:
    """
    多 provider 集成评测

    Args:
        config: 显式配置值
        adapters: 注入的适配器（name -> adapter），为空时按配置构建
        reference: 参考数据源
        http_client: 供云端适配器共享的 httpx 客户端
    """

    def __init__(
        self,
        config: AnalysisConfig,
        adapters: dict[str, ProviderAdapter] | None = None,
        reference: ReferenceData | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.reference = reference or ReferenceData(trajectory_dir=config.native_reference_dir)
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient()
        self._owns_adapters = adapters is None
        self.adapters = adapters if adapters is not None else build_adapters(
            config, self.reference, self._http_client
        )
        self._build_components()

    def _build_components(self) -> None:
        self.extractor = AudioFeatureExtractor(self.config.features)
        self.prosody = ProsodyAnalyzer()
        self.gop = GOPScorer(self.reference)
        self.similarity = NativeSimilarityAnalyzer(self.reference)
        local_config = self.config.models.get(ProviderName.LOCAL.value) or ModelConfig(
            name=ProviderName.LOCAL.value, timeout=5000
        )
        # 兜底 Local 不受 enabled 开关影响
        self.fallback = LocalAdapter(
            replace(local_config, enabled=True),
            self.reference,
            self.config.retry_backoff_sec,
            self.config.features,
        )

    def update_config(self, updates: dict[str, Any]) -> AnalysisConfig:
        """
        更新配置（唯一的配置变更入口）

        由配置构建的适配器会随之重建；注入的适配器保持不变。
        """
        self.config = self.config.updated(updates)
        if self._owns_adapters:
            self.adapters = build_adapters(self.config, self.reference, self._http_client)
        self._build_components()
        logger.info(f"配置已更新: {sorted(updates)}")
        return self.config

    async def health(self) -> dict[str, bool]:
        """并发检查所有适配器"""
        names = list(self.adapters)
        checks = await asyncio.gather(
            *(self.adapters[n].health_check() for n in names), return_exceptions=True
        )
        status: dict[str, bool] = {}
        for name, ok in zip(names, checks):
            if isinstance(ok, Exception):
                logger.warning(f"{name} 健康检查异常: {ok}")
                ok = False
            status[name] = bool(ok)
        return status

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
        await self.fallback.close()
        if self._owns_client:
            await self._http_client.aclose()

    def select_adapters(self, preference: list[str] | None = None) -> list[tuple[ProviderAdapter, float]]:
        """
        选出启用的适配器并按优先级降序排列

        preference 中的 provider 优先级被覆盖为 len(preference) - index，
        未列出的保持配置中的优先级。
        """
        overrides: dict[str, float] = {}
        if preference:
            for index, name in enumerate(preference):
                if name not in self.adapters:
                    logger.warning(f"model_preference 中的 provider 不存在: {name}")
                    continue
                overrides[name] = float(len(preference) - index)

        selected = [
            (adapter, overrides.get(name, float(adapter.config.priority)))
            for name, adapter in self.adapters.items()
            if adapter.enabled
        ]
        selected.sort(key=lambda item: (-item[1], item[0].name))
        return selected

    async def analyze(
        self,
        sample: AudioSample,
        target: str,
        options: AnalyzeOptions | None = None,
        byte_length: int | None = None,
        bit_depth: int = 16,
    ) -> AnalysisResult:
        """
        执行一次完整的集成评测

        Args:
            sample: 解码后的音频
            target: 目标句子
            options: 请求选项（model_preference / user_accent）
            byte_length: 原始音频字节数，用于质量检查
            bit_depth: 解码得到的位深

        Raises:
            InvalidInput: 空音频或空目标句子
            AllProvidersFailed: 包括 Local 兜底在内全部失败
            InvalidFusedResult: 融合结果违反不变量
        """
        if len(sample.samples) == 0:
            raise InvalidInput("音频为空")
        if not target or not target.strip():
            raise InvalidInput("目标句子为空")

        options = options or AnalyzeOptions()
        started = time.monotonic()
        logger.info(
            f"开始集成评测: {sample.duration:.2f}s, 句子='{target}', "
            f"accent={options.user_accent or '-'}"
        )

        features = await asyncio.to_thread(self.extractor.extract, sample)
        quality = analyze_audio_quality(
            sample,
            features,
            byte_length if byte_length is not None else len(sample.samples) * 2,
            self.config.quality,
            bit_depth=bit_depth,
        )
        if quality.issues:
            logger.warning(f"音频质量问题: {quality.issues}")

        selected = self.select_adapters(options.model_preference)
        logger.info(f"启用的 provider: {[a.name for a, _ in selected] or '无'}")
        outcomes = await self._run_all(selected, sample, target)

        successes: list[tuple[str, float, ProviderResult]] = [
            (adapter.name, priority, outcome.result)
            for (adapter, priority), outcome in zip(selected, outcomes)
            if outcome.ok
        ]

        cloud_selected = [a for a, _ in selected if a.name != ProviderName.LOCAL.value]
        if cloud_selected and successes and all(
            name == ProviderName.LOCAL.value for name, _, _ in successes
        ):
            # 云端全部失败时，集成内的 Local 结果即为兜底结果
            logger.warning("所有云端 provider 均失败，使用 Local 结果作为兜底")
            for (adapter, _), outcome in zip(selected, outcomes):
                if adapter.name == ProviderName.LOCAL.value:
                    outcome.provider = LOCAL_FALLBACK_LABEL
            successes = [(LOCAL_FALLBACK_LABEL, 0.0, result) for _, _, result in successes]

        if not successes:
            logger.warning("所有 provider 均失败，启用 Local 兜底")
            fallback_outcome = await self.fallback.run(sample, target)
            fallback_outcome.provider = LOCAL_FALLBACK_LABEL
            outcomes.append(fallback_outcome)
            if not fallback_outcome.ok:
                raise AllProvidersFailed(outcomes)
            successes.append((LOCAL_FALLBACK_LABEL, 0.0, fallback_outcome.result))

        candidates = [
            Candidate(label, priority, self.score_candidate(result, features, quality, target, label))
            for label, priority, result in successes
        ]

        if len(candidates) == 1:
            fused = candidates[0].result
        else:
            weights = compute_weights([(c.priority, c.result.confidence) for c in candidates])
            for c, w in zip(candidates, weights):
                logger.info(f"融合权重 {c.label}: {w:.3f} (overall={c.result.overall_score:.1f})")
            fused = self.fuse(candidates, weights)

        fused = replace(
            fused,
            processing_time=int((time.monotonic() - started) * 1000),
            timestamp=datetime.now().isoformat(),
            provider_outcomes=[o.summary() for o in outcomes],
        )
        validate_result(fused)
        logger.info(
            f"集成评测完成: overall={fused.overall_score:.1f}, "
            f"confidence={fused.confidence:.1f}, 使用 {fused.model_used}, {fused.processing_time} ms"
        )
        return fused

    async def _run_all(
        self,
        selected: list[tuple[ProviderAdapter, float]],
        sample: AudioSample,
        target: str,
    ) -> list[ProviderOutcome]:
        """并发调用所有适配器；外层被取消时放弃仍在进行的调用"""
        tasks = [asyncio.create_task(adapter.run(sample, target)) for adapter, _ in selected]
        if not tasks:
            return []
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            logger.warning(f"评测被取消，放弃 {sum(not t.done() for t in tasks)} 个进行中的调用")
            raise

    def score_candidate(
        self,
        provider_result: ProviderResult,
        features: FeatureSet,
        quality: AudioQualityMetrics,
        target: str,
        label: str,
    ) -> AnalysisResult:
        """
        用本地评分器为单个 provider 的输出生成完整结果

        顺序: 韵律 -> 写回词重音与期望时长 -> GOP -> 写回准确度 -> 相似度 -> 建议
        """
        raw_words = sorted(provider_result.words, key=lambda w: w.start)
        prosody = self.prosody.analyze(features, raw_words, target)

        pattern = prosody.stress.pattern
        words = [
            replace(
                w,
                stress=pattern[i] if i < len(pattern) else w.stress,
                expected_duration=w.expected_duration or self.reference.expected_word_duration(w.word),
            )
            for i, w in enumerate(raw_words)
        ]

        gop = self.gop.score(provider_result.phonemes, words, features)

        # provider 没有给出准确度时使用 GOP 分数
        scored: dict[int, PhonemeSegment] = {}
        phonemes: list[PhonemeSegment] = []
        for p, gop_value in zip(provider_result.phonemes, gop.phoneme_level):
            updated = p if p.accuracy > 0 else replace(p, accuracy=gop_value)
            scored[id(p)] = updated
            phonemes.append(updated)
        words = [
            replace(
                w,
                accuracy=w.accuracy if w.accuracy > 0 else gop.word_level[i],
                phonemes=[scored.get(id(p), p) for p in w.phonemes],
            )
            for i, w in enumerate(words)
        ]

        similarity = self.similarity.score(target, phonemes, features, prosody)

        # provider 原生总分优先
        native_overall = provider_result.native_scores.get("overall")
        if native_overall is not None:
            overall = native_overall
        else:
            overall = (gop.overall + similarity.overall) / 2.0
        overall = float(round(_clamp(overall, 0.0, 100.0)))

        if provider_result.confidence is not None:
            confidence = 100.0 * _clamp(provider_result.confidence, 0.0, 1.0)
        else:
            confidence = (gop.confidence + similarity.confidence) / 2.0
        quality_factor = _clamp(
            features.voiced_ratio / FULL_CONFIDENCE_VOICED_RATIO, MIN_QUALITY_FACTOR, 1.0
        )
        confidence = float(round(_clamp(confidence * quality_factor, 0.0, 100.0), 1))

        feedback = generate_feedback(overall, gop, similarity, prosody, words, quality)
        if provider_result.feedback is not None:
            feedback = self.merge_feedback([provider_result.feedback, feedback])

        return AnalysisResult(
            overall_score=overall,
            gop_score=gop,
            native_similarity=similarity,
            prosody=prosody,
            words=words,
            audio_quality=quality,
            feedback=feedback,
            confidence=confidence,
            model_used=[label],
        )

    @staticmethod
    def merge_feedback(feedbacks: list[Feedback]) -> Feedback:
        """按给定顺序合并反馈，overall 取第一个非空值，列表去重并截断"""
        return Feedback(
            overall=next((f.overall for f in feedbacks if f.overall), ""),
            strengths=_union([f.strengths for f in feedbacks], MAX_STRENGTHS),
            improvements=_union([f.improvements for f in feedbacks], MAX_IMPROVEMENTS),
            specific_tips=_union([f.specific_tips for f in feedbacks], MAX_TIPS),
            next_steps=_union([f.next_steps for f in feedbacks], MAX_NEXT_STEPS),
        )

    def fuse(self, candidates: list[Candidate], weights: list[float]) -> AnalysisResult:
        """
        加权融合多个候选结果

        标量加权平均，数组逐下标加权，words 取最细粒度（最长）的候选，
        反馈按权重从高到低合并。
        """
        results = [c.result for c in candidates]
        order = sorted(range(len(candidates)), key=lambda i: (-weights[i], candidates[i].label))
        top = results[order[0]]

        def scalar(getter) -> float:
            return _weighted([getter(r) for r in results], weights)

        def series(getter) -> list[float]:
            return _weighted_lists([getter(r) for r in results], weights)

        gop = GOPScore(
            overall=round(scalar(lambda r: r.gop_score.overall), 2),
            phoneme_level=series(lambda r: r.gop_score.phoneme_level),
            word_level=series(lambda r: r.gop_score.word_level),
            sentence_level=round(scalar(lambda r: r.gop_score.sentence_level), 2),
            confidence=round(scalar(lambda r: r.gop_score.confidence), 2),
        )
        similarity = NativeSimilarityScore(
            overall=round(scalar(lambda r: r.native_similarity.overall), 2),
            phonetic=round(scalar(lambda r: r.native_similarity.phonetic), 2),
            prosodic=round(scalar(lambda r: r.native_similarity.prosodic), 2),
            temporal=round(scalar(lambda r: r.native_similarity.temporal), 2),
            dtw_distance=max(0.0, scalar(lambda r: r.native_similarity.dtw_distance)),
            confidence=round(scalar(lambda r: r.native_similarity.confidence), 2),
            dtw_method=top.native_similarity.dtw_method,
        )
        prosody = ProsodyProfile(
            stress=StressProfile(
                pattern=series(lambda r: r.prosody.stress.pattern),
                accuracy=scalar(lambda r: r.prosody.stress.accuracy),
                naturalness=scalar(lambda r: r.prosody.stress.naturalness),
            ),
            rhythm=RhythmProfile(
                timing=series(lambda r: r.prosody.rhythm.timing),
                regularity=scalar(lambda r: r.prosody.rhythm.regularity),
                naturalness=scalar(lambda r: r.prosody.rhythm.naturalness),
            ),
            intonation=IntonationProfile(
                contour=series(lambda r: r.prosody.intonation.contour),
                range=scalar(lambda r: r.prosody.intonation.range),
                naturalness=scalar(lambda r: r.prosody.intonation.naturalness),
            ),
            pace=PaceProfile(
                words_per_minute=scalar(lambda r: r.prosody.pace.words_per_minute),
                pause_pattern=series(lambda r: r.prosody.pace.pause_pattern),
                fluency=scalar(lambda r: r.prosody.pace.fluency),
            ),
        )

        # 粒度相同时取权重更高的候选
        words: list[WordSegment] = max((results[i].words for i in order), key=len)

        return AnalysisResult(
            overall_score=round(scalar(lambda r: r.overall_score), 2),
            gop_score=gop,
            native_similarity=similarity,
            prosody=prosody,
            words=list(words),
            audio_quality=top.audio_quality,
            feedback=self.merge_feedback([results[i].feedback for i in order]),
            confidence=round(scalar(lambda r: r.confidence), 2),
            model_used=[c.label for c in sorted(candidates, key=lambda c: (-c.priority, c.label))],
        )
