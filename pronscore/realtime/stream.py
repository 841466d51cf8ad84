"""
实时音频流处理

每收到一帧（约 bufferSize / sampleRate 秒）:
1. 提取该帧特征，推送电平 / VAD / 质量给 on_audio_data（不论是否有声）
2. 帧写入有界环形缓冲区，溢出时丢弃最旧的帧
3. VAD 活跃且置信度超过阈值时，把帧交给流式后端生成部分结果
"""
import asyncio
import logging
import time
from collections import deque
from typing import AsyncIterable, Callable

import numpy as np

from pronscore.config import FeatureSettings, StreamingSettings
from pronscore.errors import InvalidInput
from pronscore.models import (
    AnalysisResult,
    AnalyzeOptions,
    AudioSample,
    RealTimeAudioData,
    StreamingAnalysisResult,
)
from pronscore.pipeline.ensemble import EnsembleOrchestrator
from pronscore.pipeline.features import AudioFeatureExtractor
from pronscore.realtime.backends import LocalPartial, StreamingBackend, select_backend

logger = logging.getLogger(__name__)

AudioDataCallback = Callable[[RealTimeAudioData], None]
ResultCallback = Callable[[StreamingAnalysisResult], None]

VOICE_WINDOW_FRAMES = 5
QUALITY_WINDOW_FRAMES = 10


def frame_rms(frame: np.ndarray) -> float:
    if len(frame) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.asarray(frame, dtype=np.float64) ** 2)))


class RealTimeStreamProcessor:
    """
    实时流处理器

    同一时刻只服务一个流会话；环形缓冲区归当前会话独占。

    Args:
        settings: 实时模式配置（采样率、缓冲区大小、VAD 阈值、远端地址）
        features: 特征提取配置
        backend: 部分结果后端，为空时按配置选择
    """

    def __init__(
        self,
        settings: StreamingSettings | None = None,
        features: FeatureSettings | None = None,
        backend: StreamingBackend | None = None,
    ) -> None:
        self.settings = settings or StreamingSettings()
        self.features = features or FeatureSettings()
        self.extractor = AudioFeatureExtractor(self.features)
        self.backend = backend or select_backend(self.settings)
        self._local = LocalPartial()
        self._buffer: deque[np.ndarray] = deque(maxlen=self.settings.ring_buffer_frames)
        self._on_result: ResultCallback | None = None
        self._on_audio_data: AudioDataCallback | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._started_at = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(
        self,
        source: AsyncIterable[np.ndarray] | None,
        on_result: ResultCallback,
        on_audio_data: AudioDataCallback | None = None,
    ) -> None:
        """
        开始处理

        Args:
            source: 异步帧来源；为空时由调用方通过 push_frame() 推帧
            on_result: 部分结果回调
            on_audio_data: 每帧电平 / VAD / 质量回调
        """
        if self._running:
            raise RuntimeError("Real-time analysis already running")

        self._running = True
        self._buffer.clear()
        self._on_result = on_result
        self._on_audio_data = on_audio_data
        self._started_at = time.monotonic()

        if not await self.backend.connect(self._deliver):
            logger.info(f"流式后端 {self.backend.name} 不可用，使用本地部分结果")

        if source is not None:
            self._task = asyncio.create_task(self._consume(source))
        logger.info(
            f"实时分析已启动: {self.settings.sample_rate}Hz, "
            f"buffer={self.settings.buffer_size}, backend={self.backend.name}"
        )

    async def wait(self) -> None:
        """等待帧来源耗尽"""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _consume(self, source: AsyncIterable[np.ndarray]) -> None:
        async for frame in source:
            if not self._running:
                break
            self.push_frame(frame)

    def push_frame(self, frame: np.ndarray) -> RealTimeAudioData | None:
        """处理一帧音频，可直接在采集回调中调用"""
        if not self._running:
            return None

        samples = np.asarray(frame, dtype=np.float32)
        features = self.extractor.extract(AudioSample(samples, self.settings.sample_rate))
        vad = self.extractor.voice_activity(features)
        self._buffer.append(samples)

        data = RealTimeAudioData(
            samples=samples,
            timestamp=time.monotonic() - self._started_at,
            vad=vad,
            level=frame_rms(samples),
            quality=self.quality_metrics(),
        )
        if self._on_audio_data is not None:
            self._on_audio_data(data)

        # 回调中可能已经调用了 stop()
        if not self._running:
            return data
        if vad.is_active and vad.confidence > self.settings.vad_confidence_threshold:
            backend = self.backend if self.backend.available else self._local
            backend.submit(data, self._deliver)
        return data

    def _deliver(self, result: StreamingAnalysisResult) -> None:
        if self._running and self._on_result is not None:
            self._on_result(result)

    def stop(self) -> None:
        """停止处理，可重复调用，不等待网络 I/O"""
        if not self._running:
            return
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self.backend.close()
        self._on_result = None
        self._on_audio_data = None
        logger.info(f"实时分析已停止，缓冲 {len(self._buffer)} 帧")

    def buffered_audio(self) -> np.ndarray:
        """拼接环形缓冲区中的所有帧"""
        if not self._buffer:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(list(self._buffer))

    def clear_buffer(self) -> None:
        self._buffer.clear()

    @property
    def buffered_frames(self) -> int:
        return len(self._buffer)

    async def analyze_buffered(
        self,
        orchestrator: EnsembleOrchestrator,
        target: str,
        options: AnalyzeOptions | None = None,
    ) -> AnalysisResult:
        """对缓冲区中的音频做一次完整评测"""
        audio = self.buffered_audio()
        if len(audio) == 0:
            raise InvalidInput("No audio data available")
        return await orchestrator.analyze(AudioSample(audio, self.settings.sample_rate), target, options)

    def audio_level(self) -> float:
        """最新一帧的 RMS 电平"""
        if not self._buffer:
            return 0.0
        return frame_rms(self._buffer[-1])

    def is_voice_active(self) -> bool:
        """最近 5 帧的平均 RMS 是否超过 VAD 能量阈值"""
        if not self._buffer:
            return False
        recent = list(self._buffer)[-VOICE_WINDOW_FRAMES:]
        return float(np.mean([frame_rms(f) for f in recent])) > self.features.vad_energy_threshold

    def quality_metrics(self) -> dict[str, float]:
        """基于最近 10 帧能量的简易质量指标"""
        if not self._buffer:
            return {"snr": 0.0, "clarity": 0.0, "stability": 0.0}
        energies = np.array([frame_rms(f) for f in list(self._buffer)[-QUALITY_WINDOW_FRAMES:]])
        avg = float(energies.mean())
        variance = float(energies.var())
        return {
            "snr": min(100.0, avg * 100),
            "clarity": max(0.0, 1.0 - variance),
            "stability": max(0.0, 1.0 - variance / avg) if avg > 0 else 0.0,
        }
