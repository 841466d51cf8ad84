"""
缓存与任务队列测试
"""
import asyncio

import pytest


def make_result(score=80.0):
    from pronscore.models import (
        AnalysisResult,
        AudioQualityMetrics,
        Feedback,
        GOPScore,
        NativeSimilarityScore,
        ProsodyProfile,
    )

    return AnalysisResult(
        overall_score=score,
        gop_score=GOPScore(overall=score),
        native_similarity=NativeSimilarityScore(overall=score),
        prosody=ProsodyProfile(),
        words=[],
        audio_quality=AudioQualityMetrics(),
        feedback=Feedback(overall="Good."),
        confidence=70.0,
        model_used=["local"],
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestCacheKey:
    """测试缓存键"""

    def test_audio_hash(self):
        from pronscore.services.cache import audio_hash

        digest = audio_hash(b"abc")

        assert len(digest) == 16
        assert digest == audio_hash(b"abc")
        assert digest != audio_hash(b"abd")

    def test_key_includes_user(self):
        """用户不同则键不同，没有用户时不带后缀"""
        from pronscore.services.cache import cache_key

        anonymous = cache_key("d1", "The cat sits.")

        assert anonymous == "analysis:d1:VGhlIGNhdCBzaXRzLg=="
        assert cache_key("d1", "The cat sits.", "u1") == anonymous + ":u1"
        assert cache_key("d1", "The dog sits.") != anonymous


class TestInMemoryCache:
    """测试进程内缓存"""

    def test_get_and_set(self):
        from pronscore.services.cache import InMemoryAnalysisCache

        cache = InMemoryAnalysisCache()
        result = make_result()

        async def run():
            assert await cache.get_cached_analysis("d1", "hi") is None
            await cache.cache_analysis("d1", "hi", result)
            return await cache.get_cached_analysis("d1", "hi"), await cache.get_cached_analysis("d1", "hi", "u1")

        hit, other_user = asyncio.run(run())

        assert hit is result
        assert other_user is None

    def test_lru_eviction(self):
        """超出上限时淘汰最久未使用的条目"""
        from pronscore.services.cache import InMemoryAnalysisCache

        cache = InMemoryAnalysisCache(max_entries=2)

        async def run():
            await cache.cache_analysis("a", "s", make_result(1))
            await cache.cache_analysis("b", "s", make_result(2))
            await cache.get_cached_analysis("a", "s")
            await cache.cache_analysis("c", "s", make_result(3))
            return [await cache.get_cached_analysis(d, "s") for d in ("a", "b", "c")]

        a, b, c = asyncio.run(run())

        assert a.overall_score == 1
        assert b is None
        assert c.overall_score == 3

    def test_ttl_expiry(self):
        """过期条目视为未命中并被删除"""
        from pronscore.services.cache import InMemoryAnalysisCache

        clock = FakeClock()
        cache = InMemoryAnalysisCache(ttl_sec=60, clock=clock)

        async def run():
            await cache.cache_analysis("d", "s", make_result())
            await cache.cache_analysis("long", "s", make_result(), ttl_sec=600)
            clock.now += 61
            return await cache.get_cached_analysis("d", "s"), await cache.get_cached_analysis("long", "s")

        expired, alive = asyncio.run(run())

        assert expired is None
        assert alive is not None
        assert cache.stats()["size"] == 1

    def test_clear_user_cache(self):
        from pronscore.services.cache import InMemoryAnalysisCache

        cache = InMemoryAnalysisCache()

        async def run():
            await cache.cache_analysis("a", "s", make_result(), "u1")
            await cache.cache_analysis("b", "s", make_result(), "u1")
            await cache.cache_analysis("c", "s", make_result(), "u2")
            return await cache.clear_user_cache("u1")

        assert asyncio.run(run()) == 2
        assert cache.stats()["size"] == 1

    def test_from_config(self):
        from pronscore.config import AnalysisConfig
        from pronscore.services.cache import InMemoryAnalysisCache

        config = AnalysisConfig.from_dict({"cache": {"max_entries": 5, "ttl_sec": 10}})
        cache = InMemoryAnalysisCache.from_config(config)

        assert cache.max_entries == 5
        assert cache.ttl_sec == 10


class TestJobQueue:
    """测试任务队列"""

    def run_jobs(self, config, adapters, submissions, jobs_file=None):
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.services.queue import JobQueue

        async def run():
            orchestrator = EnsembleOrchestrator(config, adapters=adapters)
            queue = JobQueue(orchestrator, workers=2, jobs_file=jobs_file)
            queue.start()
            try:
                job_ids = [await queue.enqueue(audio, sentence, context) for audio, sentence, context in submissions]
                await queue.join()
                return queue, job_ids
            finally:
                await queue.stop()
                await orchestrator.close()

        return asyncio.run(run())

    def test_completed_job(self, analysis_config, make_adapter, pcm_bytes, make_sine):
        """任务完成后可以查询状态与结果"""
        from pronscore.services.queue import JobStatus

        google = make_adapter("google")
        queue, (job_id,) = self.run_jobs(
            analysis_config,
            {"google": google},
            [(pcm_bytes(make_sine()), "The cat sits.", {"user_id": "u1", "session_id": "s1"})],
        )

        job = queue.get_status(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 1.0
        assert job.user_id == "u1"
        assert job.session_id == "s1"
        assert job.result["model_used"] == ["google"]
        assert queue.get_result(job_id).model_used == ["google"]
        assert google.calls == 1

    def test_failed_job(self, analysis_config, make_adapter, pcm_bytes, make_sine):
        """失败的任务记录错误类型，不影响其他任务"""
        from pronscore.services.queue import JobStatus

        queue, (bad, good) = self.run_jobs(
            analysis_config,
            {"google": make_adapter("google")},
            [(b"", "The cat sits.", None), (pcm_bytes(make_sine()), "The cat sits.", None)],
        )

        assert queue.get_status(bad).status == JobStatus.FAILED
        assert queue.get_status(bad).error.startswith("InvalidInput")
        assert queue.get_result(bad) is None
        assert queue.get_status(good).status == JobStatus.COMPLETED

    def test_model_preference_from_context(self, analysis_config, make_adapter, pcm_bytes, make_sine):
        adapters = {"google": make_adapter("google", priority=3), "local": make_adapter("local", priority=0)}

        queue, (job_id,) = self.run_jobs(
            analysis_config,
            adapters,
            [(pcm_bytes(make_sine()), "The cat sits.", {"model_preference": ["local", "google"]})],
        )

        assert queue.get_result(job_id).model_used == ["local", "google"]

    def test_unknown_job(self, analysis_config):
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.services.queue import JobQueue

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config)
            try:
                queue = JobQueue.from_config(analysis_config, orchestrator)
                return queue, queue.get_status("missing")
            finally:
                await orchestrator.close()

        queue, status = asyncio.run(run())

        assert status is None
        assert queue.num_workers == 2

    def test_persistence(self, analysis_config, make_adapter, pcm_bytes, make_sine, tmp_path):
        """重启后已完成的任务保留，未完成的任务标记为失败"""
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.services.queue import JobQueue, JobStatus

        jobs_file = tmp_path / "jobs.json"
        queue, (job_id,) = self.run_jobs(
            analysis_config,
            {"google": make_adapter("google")},
            [(pcm_bytes(make_sine()), "The cat sits.", None)],
            jobs_file=jobs_file,
        )
        stale = queue.jobs[job_id].model_copy(update={"id": "stale", "status": JobStatus.PROCESSING})
        queue.jobs["stale"] = stale
        queue.save_jobs()

        async def reload():
            orchestrator = EnsembleOrchestrator(analysis_config)
            try:
                restored = JobQueue(orchestrator, jobs_file=jobs_file)
                return restored, restored.load_jobs()
            finally:
                await orchestrator.close()

        restored, count = asyncio.run(reload())

        assert count == 2
        assert restored.get_status(job_id).status == JobStatus.COMPLETED
        assert restored.get_status("stale").status == JobStatus.FAILED
        assert restored.get_status("stale").error == "Server restarted during processing"

    def test_finished_jobs_evicted(self, analysis_config, make_adapter, pcm_bytes, make_sine):
        """已结束的任务超过上限时淘汰最早结束的任务及其结果"""
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.services.queue import JobQueue

        audio = pcm_bytes(make_sine())

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config, adapters={"google": make_adapter("google")})
            queue = JobQueue(orchestrator, workers=1, max_finished=2)
            queue.start()
            try:
                job_ids = [await queue.enqueue(audio, f"Sentence {i}.") for i in range(3)]
                await queue.join()
                return queue, job_ids
            finally:
                await queue.stop()
                await orchestrator.close()

        queue, (first, second, third) = asyncio.run(run())

        assert queue.get_status(first) is None
        assert queue.get_result(first) is None
        assert set(queue.jobs) == {second, third}
        assert queue.get_result(third) is not None
        assert len(queue._results) == 2

    def test_max_finished_from_config(self, analysis_config):
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.services.queue import JobQueue

        config = analysis_config.updated({"queue": {"max_finished": 7}})

        async def run():
            orchestrator = EnsembleOrchestrator(config)
            try:
                return JobQueue.from_config(config, orchestrator).max_finished
            finally:
                await orchestrator.close()

        assert asyncio.run(run()) == 7

    @pytest.mark.parametrize("workers", [0, 3])
    def test_worker_count(self, analysis_config, workers):
        """worker 数量至少为 1"""
        from pronscore.pipeline.ensemble import EnsembleOrchestrator
        from pronscore.services.queue import JobQueue

        async def run():
            orchestrator = EnsembleOrchestrator(analysis_config)
            try:
                return JobQueue(orchestrator, workers=workers).num_workers
            finally:
                await orchestrator.close()

        assert asyncio.run(run()) == max(1, workers)
