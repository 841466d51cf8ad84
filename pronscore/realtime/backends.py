"""
实时部分结果的后端

RemoteStreaming 通过 WebSocket 把有声帧推给远端分析服务，
LocalPartial 在本地直接给出只含 VAD 置信度的部分结果。
两者的 submit() 都不会阻塞采集线程。
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import websockets
from websockets.exceptions import WebSocketException

from pronscore.config import StreamingSettings
from pronscore.models import PhonemeSegment, RealTimeAudioData, StreamingAnalysisResult

logger = logging.getLogger(__name__)

ResultCallback = Callable[[StreamingAnalysisResult], None]

# 待发送帧的上限，满了直接丢帧
MAX_PENDING_FRAMES = 32
CONNECT_TIMEOUT_SEC = 3.0


class StreamingBackend(ABC):
    name: str = ""

    @property
    @abstractmethod
    def available(self) -> bool:
        """当前能否接收帧"""

    async def connect(self, on_result: ResultCallback) -> bool:
        return self.available

    @abstractmethod
    def submit(self, data: RealTimeAudioData, on_result: ResultCallback) -> None:
        """提交一帧有声音频（不得阻塞）"""

    def close(self) -> None:
        """释放资源（不得等待网络 I/O）"""


class LocalPartial(StreamingBackend):
    """本地部分结果：没有识别能力，只上报 VAD 置信度"""

    name = "local"

    @property
    def available(self) -> bool:
        return True

    def submit(self, data: RealTimeAudioData, on_result: ResultCallback) -> None:
        on_result(StreamingAnalysisResult(
            partial=True,
            transcript="",
            confidence=data.vad.confidence,
            phonemes=[],
            timestamp=data.timestamp,
        ))


def parse_stream_message(message: str | bytes) -> StreamingAnalysisResult | None:
    """解析远端推送的 analysis_result 消息，其他消息返回 None"""
    try:
        data = json.loads(message)
    except (TypeError, ValueError):
        logger.warning("远端消息不是合法 JSON，已忽略")
        return None
    if not isinstance(data, dict) or data.get("type", "analysis_result") != "analysis_result":
        return None
    payload: dict[str, Any] = data.get("result", data)
    phonemes = []
    for p in payload.get("phonemes", []):
        try:
            phonemes.append(PhonemeSegment(
                phoneme=str(p["phoneme"]),
                start=float(p["start"]),
                end=float(p["end"]),
                confidence=float(p.get("confidence", 1.0)),
            ))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"跳过非法音素: {p} ({e})")
    return StreamingAnalysisResult(
        partial=bool(payload.get("partial", True)),
        transcript=str(payload.get("transcript", "")),
        confidence=float(payload.get("confidence", 0.0)),
        phonemes=phonemes,
        timestamp=float(payload.get("timestamp", 0.0)),
    )


class RemoteStreaming(StreamingBackend):
    """
    WebSocket 流式后端

    发送与接收各由一个后台任务负责，submit() 只把帧放进有界队列。
    """

    name = "remote"

    def __init__(self, url: str, connect_timeout: float = CONNECT_TIMEOUT_SEC) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self._ws: Any = None
        self._pending: asyncio.Queue | None = None
        self._tasks: list[asyncio.Task] = []
        self._closing: asyncio.Task | None = None
        self.dropped_frames = 0

    @property
    def available(self) -> bool:
        return self._ws is not None and not self._closed()

    def _closed(self) -> bool:
        return any(t.done() for t in self._tasks)

    async def connect(self, on_result: ResultCallback) -> bool:
        try:
            self._ws = await asyncio.wait_for(websockets.connect(self.url), self.connect_timeout)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.warning(f"无法连接实时分析服务 {self.url}: {e}")
            self._ws = None
            return False

        logger.info(f"Connected to real-time analysis server: {self.url}")
        self._pending = asyncio.Queue(maxsize=MAX_PENDING_FRAMES)
        self._tasks = [
            asyncio.create_task(self._send_loop()),
            asyncio.create_task(self._receive_loop(on_result)),
        ]
        return True

    def submit(self, data: RealTimeAudioData, on_result: ResultCallback) -> None:
        if self._pending is None:
            return
        message = json.dumps({
            "type": "analyze_audio",
            "audio": [round(float(x), 5) for x in data.samples],
            "timestamp": data.timestamp,
            "vad": {"is_active": data.vad.is_active, "confidence": data.vad.confidence},
            "level": data.level,
        })
        try:
            self._pending.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped_frames += 1

    async def _send_loop(self) -> None:
        while True:
            message = await self._pending.get()
            try:
                await self._ws.send(message)
            except WebSocketException as e:
                logger.warning(f"实时分析连接已断开: {e}")
                return

    async def _receive_loop(self, on_result: ResultCallback) -> None:
        try:
            async for message in self._ws:
                result = parse_stream_message(message)
                if result is not None:
                    on_result(result)
        except WebSocketException as e:
            logger.warning(f"实时分析连接已断开: {e}")
        logger.info("Disconnected from real-time analysis server")

    def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        self._pending = None
        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("没有运行中的事件循环，直接丢弃连接")
                return
            # 关闭握手放到后台，不等待
            self._closing = loop.create_task(self._close_socket(ws))

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.send(json.dumps({"type": "stop_analysis"}))
            await ws.close()
        except WebSocketException as e:
            logger.debug(f"关闭实时分析连接时出错: {e}")


def select_backend(settings: StreamingSettings) -> StreamingBackend:
    """配置了远端地址时使用 RemoteStreaming，否则 LocalPartial"""
    if settings.remote_url:
        return RemoteStreaming(settings.remote_url)
    return LocalPartial()
