"""
异步任务队列

enqueue() 返回 job_id，get_status() 查询 {status, progress, result?, error?}。
每个 worker 的任务体就是一次 analyze_audio 调用。
"""
import asyncio
import json
import logging
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from pronscore.config import AnalysisConfig
from pronscore.models import AnalysisResult, AnalyzeOptions
from pronscore.pipeline.ensemble import EnsembleOrchestrator
from pronscore.pipeline.runner import analyze_audio
from pronscore.services.cache import AnalysisCache

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(BaseModel):
    id: str
    status: JobStatus
    sentence: str
    user_id: str | None = None
    session_id: str | None = None
    timestamp: float
    finished_at: float | None = None
    progress: float = 0.0
    stage: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None


class JobQueue:
    """
    进程内任务队列

    Args:
        orchestrator: 集成评测器（所有 worker 共享）
        cache: 可选的结果缓存
        workers: worker 数量，即最大并发评测数
        max_pending: 等待中的任务上限，队列满时 enqueue 会等待
        max_finished: 保留的已结束任务上限，超出时淘汰最早的
        jobs_file: 任务状态持久化文件，为空时不持久化
    """

    def __init__(
        self,
        orchestrator: EnsembleOrchestrator,
        cache: AnalysisCache | None = None,
        workers: int = 2,
        max_pending: int = 100,
        max_finished: int = 1000,
        jobs_file: Path | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.cache = cache
        self.num_workers = max(1, workers)
        self.max_finished = max(0, max_finished)
        self.jobs_file = jobs_file
        self.jobs: dict[str, Job] = {}
        self._results: dict[str, AnalysisResult] = {}
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._workers: list[asyncio.Task] = []

    @classmethod
    def from_config(
        cls,
        config: AnalysisConfig,
        orchestrator: EnsembleOrchestrator,
        cache: AnalysisCache | None = None,
        jobs_file: Path | None = None,
    ) -> "JobQueue":
        section = config.raw.get("queue", {})
        return cls(
            orchestrator,
            cache,
            workers=int(section.get("workers", 2)),
            max_pending=int(section.get("max_pending", 100)),
            max_finished=int(section.get("max_finished", 1000)),
            jobs_file=jobs_file,
        )

    def start(self) -> None:
        if self._workers:
            return
        logger.info(f"启动 {self.num_workers} 个 worker")
        self._workers = [asyncio.create_task(self._worker(i)) for i in range(self.num_workers)]

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def join(self) -> None:
        """等待所有已入队任务处理完毕"""
        await self._queue.join()

    async def enqueue(
        self,
        audio_bytes: bytes,
        sentence: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        """
        提交任务

        Args:
            audio_bytes: 原始音频
            sentence: 目标句子
            context: user_id / session_id / model_preference / user_accent

        Returns:
            job_id
        """
        context = context or {}
        job = Job(
            id=uuid.uuid4().hex,
            status=JobStatus.QUEUED,
            sentence=sentence,
            user_id=context.get("user_id"),
            session_id=context.get("session_id"),
            timestamp=time.time(),
        )
        options = AnalyzeOptions(
            model_preference=context.get("model_preference"),
            user_accent=context.get("user_accent"),
            enable_real_time=bool(context.get("enable_real_time", False)),
        )
        self.jobs[job.id] = job
        self.save_jobs()
        await self._queue.put((job.id, audio_bytes, sentence, options))
        logger.info(f"任务入队: {job.id}")
        return job.id

    def get_status(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    def get_result(self, job_id: str) -> AnalysisResult | None:
        return self._results.get(job_id)

    async def _worker(self, index: int) -> None:
        logger.info(f"Worker {index} started")
        while True:
            job_id, audio_bytes, sentence, options = await self._queue.get()
            job = self.jobs[job_id]
            job.status = JobStatus.PROCESSING
            self.save_jobs()

            def on_progress(desc: str, progress: float) -> None:
                job.stage = desc
                job.progress = progress

            try:
                result = await analyze_audio(
                    audio_bytes,
                    sentence,
                    options,
                    orchestrator=self.orchestrator,
                    cache=self.cache,
                    user_id=job.user_id,
                    progress_callback=on_progress,
                )
            except asyncio.CancelledError:
                job.status = JobStatus.FAILED
                job.error = "Worker cancelled"
                self._queue.task_done()
                raise
            except Exception as e:
                logger.error(f"Job {job_id} failed: {e}")
                job.status = JobStatus.FAILED
                job.error = f"{type(e).__name__}: {e}"
            else:
                self._results[job_id] = result
                job.result = result.to_dict()
                job.status = JobStatus.COMPLETED
                job.progress = 1.0
                logger.info(f"Job {job_id} completed")
            job.finished_at = time.time()
            self.evict_finished()
            self.save_jobs()
            self._queue.task_done()

    def evict_finished(self) -> int:
        """已结束的任务超出上限时，按结束顺序淘汰最早的任务及其结果"""
        finished = sorted(
            (job for job in self.jobs.values() if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)),
            key=lambda job: job.finished_at or job.timestamp,
        )
        evicted = [job.id for job in finished[:max(0, len(finished) - self.max_finished)]]
        for job_id in evicted:
            del self.jobs[job_id]
            self._results.pop(job_id, None)
        if evicted:
            logger.info(f"淘汰 {len(evicted)} 个已结束的任务")
        return len(evicted)

    def save_jobs(self) -> None:
        """持久化任务状态"""
        if self.jobs_file is None:
            return
        try:
            self.jobs_file.parent.mkdir(parents=True, exist_ok=True)
            data = {k: v.model_dump(mode="json") for k, v in self.jobs.items()}
            with open(self.jobs_file, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to save jobs: {e}")

    def load_jobs(self) -> int:
        """
        加载持久化的任务状态

        进程退出时仍在处理或排队的任务无法恢复（音频不落盘），标记为失败。
        """
        if self.jobs_file is None or not self.jobs_file.exists():
            return 0
        with open(self.jobs_file, encoding="utf-8") as f:
            data = json.load(f)
        for k, v in data.items():
            job = Job(**v)
            if job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
                job.status = JobStatus.FAILED
                job.error = "Server restarted during processing"
            self.jobs[k] = job
        self.evict_finished()
        logger.info(f"Loaded {len(self.jobs)} jobs from disk")
        return len(self.jobs)
