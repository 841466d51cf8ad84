"""
多模型集成测试
"""
import asyncio
import math

import pytest


TARGET = "The cat sits on the mat."


def minimal_result(**overrides):
    from pronscore.models import (
        AnalysisResult,
        AudioQualityMetrics,
        Feedback,
        GOPScore,
        NativeSimilarityScore,
        ProsodyProfile,
    )

    values = dict(
        overall_score=50.0,
        gop_score=GOPScore(overall=50.0),
        native_similarity=NativeSimilarityScore(overall=50.0),
        prosody=ProsodyProfile(),
        words=[],
        audio_quality=AudioQualityMetrics(),
        feedback=Feedback(overall="Keep practicing."),
        confidence=50.0,
        model_used=["local"],
    )
    values.update(overrides)
    return AnalysisResult(**values)


class TestWeights:
    """测试融合权重"""

    def test_priority_and_confidence(self):
        """Google(优先级 3, 置信度 90) 与 Local(0, 60): 0.96 : 0.24"""
        from pronscore.pipeline.ensemble import compute_weights

        weights = compute_weights([(3, 90.0), (0, 60.0)])

        assert weights == pytest.approx([0.8, 0.2])

    def test_weights_sum_to_one(self):
        from pronscore.pipeline.ensemble import compute_weights

        weights = compute_weights([(3, 10.0), (2, 55.0), (1, 99.0), (0, 0.0)])

        assert sum(weights) == pytest.approx(1.0)
        assert all(w >= 0 for w in weights)

    def test_all_zero_is_uniform(self):
        from pronscore.pipeline.ensemble import compute_weights

        assert compute_weights([(0, 0.0), (0, 0.0)]) == [0.5, 0.5]
        assert compute_weights([]) == []

    def test_weighted_lists_renormalize(self):
        """某个候选在该下标越界时，其余候选的权重重新归一化"""
        from pronscore.pipeline.ensemble import _weighted_lists

        fused = _weighted_lists([[1.0, 2.0, 3.0], [3.0]], [0.5, 0.5])

        assert fused == pytest.approx([2.0, 2.0, 3.0])


class TestValidateResult:
    """测试融合结果不变量"""

    def test_valid(self):
        from pronscore.pipeline.ensemble import validate_result

        validate_result(minimal_result())

    @pytest.mark.parametrize("overrides", [
        {"overall_score": 150.0},
        {"confidence": -1.0},
        {"overall_score": math.nan},
        {"model_used": []},
    ])
    def test_invalid(self, overrides):
        from pronscore.errors import InvalidFusedResult
        from pronscore.pipeline.ensemble import validate_result

        with pytest.raises(InvalidFusedResult):
            validate_result(minimal_result(**overrides))

    def test_fuse_does_not_clamp(self, analysis_config):
        """权重异常时融合结果越界并被拒绝，而不是被截断到 0-100"""
        from pronscore.errors import InvalidFusedResult
        from pronscore.models import GOPScore, NativeSimilarityScore
        from pronscore.pipeline.ensemble import Candidate, EnsembleOrchestrator, validate_result

        candidates = [
            Candidate(label, priority, minimal_result(
                overall_score=48.0,
                confidence=40.0,
                gop_score=GOPScore(overall=30.0),
                native_similarity=NativeSimilarityScore(overall=30.0),
                model_used=[label],
            ))
            for label, priority in (("google", 3.0), ("azure", 2.0))
        ]

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config, adapters={})
            try:
                return orchestrator.fuse(candidates, [1.5, 1.5])
            finally:
                await orchestrator.close()

        fused = asyncio.run(run())

        assert fused.overall_score == pytest.approx(144.0)
        assert fused.confidence == pytest.approx(120.0)
        with pytest.raises(InvalidFusedResult, match="overall_score=144"):
            validate_result(fused)

    def test_empty_feedback(self):
        from pronscore.errors import InvalidFusedResult
        from pronscore.models import Feedback
        from pronscore.pipeline.ensemble import validate_result

        with pytest.raises(InvalidFusedResult):
            validate_result(minimal_result(feedback=Feedback(overall="")))


class TestMergeFeedback:
    """测试反馈合并"""

    def test_caps_and_order(self):
        """按顺序去重合并，并截断到上限"""
        from pronscore.models import Feedback
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        first = Feedback(overall="", strengths=["a", "b", "c"], specific_tips=["t1", "t2"])
        second = Feedback(
            overall="Good job.",
            strengths=["b", "d", "e", "f"],
            specific_tips=["t2", "t3", "t4"],
            next_steps=["n1"],
        )

        merged = EnsembleOrchestrator.merge_feedback([first, second])

        assert merged.overall == "Good job."
        assert merged.strengths == ["a", "b", "c", "d", "e"]
        assert merged.specific_tips == ["t1", "t2", "t3"]
        assert merged.next_steps == ["n1"]


class TestSelectAdapters:
    """测试 provider 选择"""

    def test_priority_order(self, analysis_config, make_adapter):
        """按优先级降序，禁用的 provider 不参与"""
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        adapters = {
            "local": make_adapter("local", priority=0),
            "google": make_adapter("google", priority=3),
            "azure": make_adapter("azure", priority=2),
            "gemini": make_adapter("gemini", priority=1, enabled=False),
        }

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config, adapters=adapters)
            try:
                return orchestrator.select_adapters(), orchestrator.select_adapters(["local", "azure"])
            finally:
                await orchestrator.close()

        default, preferred = asyncio.run(run())

        assert [a.name for a, _ in default] == ["google", "azure", "local"]
        # 未列出的 google 保持配置优先级 3，local=2，azure=1
        assert [(a.name, p) for a, p in preferred] == [("google", 3.0), ("local", 2.0), ("azure", 1.0)]

    def test_unconfigured_cloud_disabled(self, analysis_config):
        """由配置构建时，未配置凭证的云端 provider 被跳过"""
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config)
            try:
                return orchestrator.select_adapters(), await orchestrator.health()
            finally:
                await orchestrator.close()

        selected, health = asyncio.run(run())

        assert [a.name for a, _ in selected] == ["local"]
        assert health == {"google": False, "azure": False, "gemini": False, "local": True}


class TestEnsembleAnalyze:
    """测试集成评测"""

    def run_analyze(self, config, adapters, sample, target=TARGET, options=None, fallback=None):
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        async def run():
            orchestrator = EnsembleOrchestrator(config, adapters=adapters)
            if fallback is not None:
                orchestrator.fallback = fallback
            try:
                return await orchestrator.analyze(sample, target, options)
            finally:
                await orchestrator.close()

        return asyncio.run(run())

    def test_two_providers_weighted(self, analysis_config, make_adapter, sine_sample):
        """高优先级、高置信度的 provider 主导融合结果"""
        adapters = {
            "google": make_adapter("google", priority=3, confidence=0.9, overall=90),
            "local": make_adapter("local", priority=0, confidence=0.6, overall=40),
        }

        result = self.run_analyze(analysis_config, adapters, sine_sample)

        assert result.model_used == ["google", "local"]
        assert 65 < result.overall_score < 90
        assert 0 <= result.confidence <= 100
        assert len(result.words) == 6
        assert [o["status"] for o in result.provider_outcomes] == ["ok", "ok"]
        assert result.feedback.overall

    def test_words_from_finest_candidate(self, analysis_config, make_adapter, sine_sample):
        """words 取词数最多的候选"""
        adapters = {
            "google": make_adapter("google", priority=3, words=["the", "cat"]),
            "azure": make_adapter("azure", priority=2),
        }

        result = self.run_analyze(analysis_config, adapters, sine_sample)

        assert len(result.words) == 6

    def test_single_success_equals_candidate(self, analysis_config, make_adapter, sine_sample):
        """只有一个 provider 成功时，结果等于其候选结果"""
        from pronscore.errors import ProviderUnavailable
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.pipeline.preprocess import analyze_audio_quality

        google = make_adapter("google", priority=3, confidence=0.9)
        azure = make_adapter("azure", priority=2, error=ProviderUnavailable("azure", "no key"))

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config, adapters={"google": google, "azure": azure})
            try:
                result = await orchestrator.analyze(sine_sample, TARGET)
                features = orchestrator.extractor.extract(sine_sample)
                quality = analyze_audio_quality(
                    sine_sample, features, len(sine_sample.samples) * 2, analysis_config.quality
                )
                provider_result = await google.analyze(sine_sample, TARGET)
                candidate = orchestrator.score_candidate(provider_result, features, quality, TARGET, "google")
                return result, candidate
            finally:
                await orchestrator.close()

        result, candidate = asyncio.run(run())

        assert result == candidate
        assert result.model_used == ["google"]
        statuses = {o["provider"]: o["status"] for o in result.provider_outcomes}
        assert statuses == {"google": "ok", "azure": "ProviderUnavailable"}

    def test_native_overall_used(self, analysis_config, make_adapter, sine_sample):
        """provider 原生总分直接作为候选总分"""
        result = self.run_analyze(
            analysis_config, {"google": make_adapter("google", overall=73.4)}, sine_sample
        )

        assert result.overall_score == 73

    def test_fallback_on_timeouts(self, local_disabled_config, make_adapter, sine_sample):
        """云端全部超时且 Local 被禁用时，Local 兜底仍会运行"""
        adapters = {
            "google": make_adapter("google", priority=3, delay=1.0, timeout_ms=50),
            "azure": make_adapter("azure", priority=2, delay=1.0, timeout_ms=50),
        }

        result = self.run_analyze(local_disabled_config, adapters, sine_sample)

        assert result.model_used == ["local-fallback"]
        statuses = [o["status"] for o in result.provider_outcomes]
        assert statuses == ["ProviderTimeout", "ProviderTimeout", "ok"]
        assert result.provider_outcomes[-1]["provider"] == "local-fallback"
        assert result.processing_time < 1000

    def test_timeouts_with_local_enabled(self, analysis_config, make_adapter, sine_sample):
        """Local 参与集成时，云端全部超时也以 local-fallback 标记结果"""
        from pronscore.pipeline.providers.local import LocalAdapter

        adapters = {
            "google": make_adapter("google", priority=3, delay=1.0, timeout_ms=50),
            "azure": make_adapter("azure", priority=2, delay=1.0, timeout_ms=50),
            "local": LocalAdapter(analysis_config.models["local"], backoff_sec=0.0),
        }

        result = self.run_analyze(analysis_config, adapters, sine_sample)

        assert result.model_used == ["local-fallback"]
        outcomes = {o["provider"]: o["status"] for o in result.provider_outcomes}
        assert outcomes == {"google": "ProviderTimeout", "azure": "ProviderTimeout", "local-fallback": "ok"}
        assert len(result.words) == 6

    def test_no_enabled_providers_uses_fallback(self, local_disabled_config, sine_sample):
        """没有任何启用的 provider 时直接走兜底"""
        result = self.run_analyze(local_disabled_config, {}, sine_sample)

        assert result.model_used == ["local-fallback"]
        assert len(result.words) == 6

    def test_all_failed(self, analysis_config, make_adapter, sine_sample):
        """兜底也失败时抛出 AllProvidersFailed，并带上每个 provider 的结局"""
        from pronscore.errors import AllProvidersFailed, ProviderInvalidResponse, ProviderUnavailable

        adapters = {"google": make_adapter("google", error=ProviderUnavailable("google", "down"))}
        broken_fallback = make_adapter("local", error=ProviderInvalidResponse("local", "boom"))

        with pytest.raises(AllProvidersFailed) as exc_info:
            self.run_analyze(analysis_config, adapters, sine_sample, fallback=broken_fallback)

        outcomes = exc_info.value.outcomes
        assert [o.provider for o in outcomes] == ["google", "local-fallback"]
        assert not any(o.ok for o in outcomes)

    @pytest.mark.parametrize("target", ["", "   "])
    def test_empty_target(self, analysis_config, make_adapter, sine_sample, target):
        """空目标句子在调用 provider 之前被拒绝"""
        from pronscore.errors import InvalidInput

        google = make_adapter("google")
        with pytest.raises(InvalidInput):
            self.run_analyze(analysis_config, {"google": google}, sine_sample, target=target)
        assert google.calls == 0

    def test_empty_audio(self, analysis_config, make_adapter):
        from pronscore.errors import InvalidInput
        from pronscore.models import AudioSample

        google = make_adapter("google")
        with pytest.raises(InvalidInput):
            self.run_analyze(analysis_config, {"google": google}, AudioSample([], 16000))
        assert google.calls == 0

    def test_model_preference(self, analysis_config, make_adapter, sine_sample):
        """model_preference 改变 model_used 的顺序"""
        from pronscore.models import AnalyzeOptions

        adapters = {
            "google": make_adapter("google", priority=3),
            "local": make_adapter("local", priority=0),
        }

        result = self.run_analyze(
            analysis_config, adapters, sine_sample, options=AnalyzeOptions(model_preference=["local", "google"])
        )

        assert result.model_used == ["local", "google"]

    def test_silence_lowers_confidence(self, analysis_config, make_adapter, silence_sample):
        """有声帧很少时置信度被压低"""
        result = self.run_analyze(analysis_config, {"google": make_adapter("google", confidence=0.9)}, silence_sample)

        assert result.confidence == pytest.approx(9.0)

    def test_cancellation_abandons_providers(self, analysis_config, make_adapter, sine_sample):
        """外层取消时放弃进行中的 provider 调用"""
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        slow = make_adapter("google", delay=5.0, timeout_ms=10000)

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config, adapters={"google": slow})
            try:
                task = asyncio.create_task(orchestrator.analyze(sine_sample, TARGET))
                for _ in range(200):
                    if slow.calls:
                        break
                    await asyncio.sleep(0.01)
                task.cancel()
                with pytest.raises(asyncio.CancelledError):
                    await task
                await asyncio.sleep(0.05)
            finally:
                await orchestrator.close()

        asyncio.run(run())

        assert slow.calls == 1
        assert slow.cancelled


class TestUpdateConfig:
    """测试配置更新"""

    def test_rebuilds_configured_adapters(self, analysis_config):
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config)
            try:
                updated = orchestrator.update_config({"models": {"google": {"priority": 7, "api_key": "k"}}})
                return updated, orchestrator.adapters["google"]
            finally:
                await orchestrator.close()

        updated, google = asyncio.run(run())

        assert updated.models["google"].priority == 7
        assert google.config.priority == 7
        assert google.enabled
        assert analysis_config.models["google"].priority == 3

    def test_injected_adapters_kept(self, analysis_config, make_adapter):
        from pronscore.pipeline.ensemble import EnsembleOrchestrator

        google = make_adapter("google")

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config, adapters={"google": google})
            try:
                orchestrator.update_config({"quality_thresholds": {"min_volume": 0.2}})
                return orchestrator
            finally:
                await orchestrator.close()

        orchestrator = asyncio.run(run())

        assert orchestrator.adapters["google"] is google
        assert orchestrator.config.quality.min_volume == 0.2
