"""
Gemini 多模态适配器 - 让 Gemini 直接听音频并返回结构化 JSON 评估

支持逗号分隔的多个 API Key，遇到配额 / 服务端错误时轮换 Key 后交由基类退避重试。
每个 Key 使用独立的 GenerativeServiceClient，不修改 SDK 的全局配置，
并发请求之间不会串用 Key。
"""
import asyncio
import io
import json
import logging
import random
import threading
from typing import Any

from pydub import AudioSegment

from pronscore.analysis.reference import ReferenceData, tokenize
from pronscore.config import ModelConfig
from pronscore.errors import ProviderError, ProviderInvalidResponse, ProviderUnavailable
from pronscore.models import AudioSample, Feedback, ProviderName, ProviderResult
from pronscore.pipeline.providers.base import (
    ProviderAdapter,
    build_words,
    even_word_spans,
    float_to_pcm16,
)

logger = logging.getLogger(__name__)

# 延迟导入（google-generativeai 附带的底层 API 客户端）
_glm = None


def get_glm():
    global _glm
    if _glm is None:
        from google.ai import generativelanguage as glm
        _glm = glm
    return _glm


PROMPT_TEMPLATE = """
You are an expert English pronunciation assessor. Listen to the attached recording of a
learner reading the target sentence and compare it with native pronunciation.

Target sentence:
"{target}"

Return ONLY a JSON object (no markdown) with this shape:
{{
  "transcript": "what the learner actually said",
  "confidence": 0.0,
  "overall_score": 0.0,
  "accuracy_score": 0.0,
  "fluency_score": 0.0,
  "completeness_score": 0.0,
  "words": [
    {{"word": "target word", "start": 0.0, "end": 0.0, "score": 0.0}}
  ],
  "feedback": {{
    "overall": "one or two sentences",
    "strengths": ["..."],
    "improvements": ["..."],
    "specific_tips": ["..."],
    "next_steps": ["..."]
  }}
}}

Scores are 0-100, confidence is 0-1, word times are seconds from the start of the audio.
"""


def strip_code_fence(text: str) -> str:
    """去掉 ```json ... ``` 包裹"""
    text = text.strip()
    if "```json" in text:
        text = text.split("```json")[-1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].strip() if text.count("```") >= 2 else text.strip("`").strip()
    return text


def to_wav_bytes(sample: AudioSample) -> bytes:
    segment = AudioSegment(
        data=float_to_pcm16(sample.samples),
        sample_width=2,
        frame_rate=sample.sample_rate,
        channels=1,
    )
    buffer = io.BytesIO()
    segment.export(buffer, format="wav")
    return buffer.getvalue()


class GeminiAdapter(ProviderAdapter):
    """Gemini 多模态评估适配器 (原生听感模式)"""

    name = ProviderName.GEMINI.value

    def __init__(
        self,
        model_config: ModelConfig,
        reference: ReferenceData | None = None,
        backoff_sec: float = 0.5,
    ) -> None:
        super().__init__(model_config, reference, backoff_sec)
        raw_keys = model_config.api_key or ""
        self.api_keys = [k.strip() for k in raw_keys.split(",") if k.strip()]
        # 随机起始下标，避免多个 worker 同时打到同一个 Key
        self.current_key_index = random.randint(0, len(self.api_keys) - 1) if self.api_keys else 0
        self.model_name = model_config.options.get("model", "gemini-1.5-flash")
        self._clients: dict[str, Any] = {}
        self._clients_lock = threading.Lock()

        if not self.api_keys:
            logger.warning("Gemini API Key 未配置，GeminiAdapter 已禁用")

    def _rotate_key(self) -> bool:
        if len(self.api_keys) <= 1:
            return False
        self.current_key_index = (self.current_key_index + 1) % len(self.api_keys)
        logger.warning(f"Gemini 切换到 Key #{self.current_key_index}")
        return True

    async def health_check(self) -> bool:
        if not self.enabled:
            return False
        try:
            get_glm()
        except ImportError:
            logger.warning("google-generativeai 库未安装")
            return False
        return True

    def client_for(self, glm: Any, key: str) -> Any:
        """返回该 Key 专用的客户端（首次使用时创建）"""
        with self._clients_lock:
            client = self._clients.get(key)
            if client is None:
                client = glm.GenerativeServiceClient(client_options={"api_key": key})
                self._clients[key] = client
            return client

    async def close(self) -> None:
        with self._clients_lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.transport.close()

    async def analyze(self, sample: AudioSample, target: str) -> ProviderResult:
        if not self.api_keys:
            raise ProviderUnavailable(self.name, "未配置 API Key")
        try:
            glm = get_glm()
        except ImportError as e:
            raise ProviderUnavailable(self.name, "请安装 google-generativeai") from e

        logger.info(f"Gemini 适配器：正在听取音频 ({sample.duration:.2f}s)")
        text = await asyncio.to_thread(self._generate, glm, sample, target)
        return self.parse_response(text, sample, target)

    def _generate(self, glm: Any, sample: AudioSample, target: str) -> str:
        """阻塞调用，在工作线程中运行"""
        from google.api_core import exceptions as api_exceptions

        key = self.api_keys[self.current_key_index]
        client = self.client_for(glm, key)
        request = glm.GenerateContentRequest(
            model=f"models/{self.model_name}",
            contents=[
                glm.Content(
                    role="user",
                    parts=[
                        glm.Part(text=PROMPT_TEMPLATE.format(target=target)),
                        glm.Part(inline_data=glm.Blob(mime_type="audio/wav", data=to_wav_bytes(sample))),
                    ],
                )
            ],
            generation_config=glm.GenerationConfig(temperature=0.0),
        )
        try:
            response = client.generate_content(request=request)
        except (
            api_exceptions.ResourceExhausted,
            api_exceptions.ServiceUnavailable,
            api_exceptions.InternalServerError,
        ) as e:
            self._rotate_key()
            raise ProviderError(self.name, f"服务繁忙: {e}") from e
        except (api_exceptions.PermissionDenied, api_exceptions.Unauthenticated) as e:
            raise ProviderUnavailable(self.name, f"鉴权失败: {e}") from e
        except api_exceptions.GoogleAPICallError as e:
            raise ProviderInvalidResponse(self.name, str(e)) from e

        if not response.candidates:
            raise ProviderInvalidResponse(self.name, "没有候选结果")
        text = "".join(part.text for part in response.candidates[0].content.parts)
        logger.info("Gemini 适配器：已收到 AI 反馈")
        return text

    def parse_response(self, text: str, sample: AudioSample, target: str) -> ProviderResult:
        cleaned = strip_code_fence(text)
        logger.debug(f"Gemini Raw Response: {cleaned[:200]}...")
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise ProviderInvalidResponse(self.name, f"JSON 解析失败: {e}") from e
        if not isinstance(data, dict):
            raise ProviderInvalidResponse(self.name, "返回内容不是 JSON 对象")

        confidence = data.get("confidence")
        confidence = max(0.0, min(1.0, float(confidence))) if confidence is not None else None
        phoneme_conf = confidence if confidence is not None else 0.5

        raw_words = [w for w in data.get("words", []) if isinstance(w, dict) and w.get("word")]
        if raw_words and all(float(w.get("end", 0)) > float(w.get("start", 0)) for w in raw_words):
            spans = [
                (w["word"], float(w["start"]), float(w["end"]), phoneme_conf) for w in raw_words
            ]
        else:
            # 时间戳缺失时按整段时长平均分配
            texts = [w["word"] for w in raw_words] or tokenize(target)
            spans = [
                (t, start, end, phoneme_conf)
                for t, (start, end) in zip(texts, even_word_spans(texts, sample.duration))
            ]
        accuracies = [float(w.get("score", 0.0)) for w in raw_words] if len(raw_words) == len(spans) else None
        words, phonemes = build_words(self, spans, accuracies)

        native_scores = {
            key: float(data[src])
            for key, src in (
                ("overall", "overall_score"),
                ("accuracy", "accuracy_score"),
                ("fluency", "fluency_score"),
                ("completeness", "completeness_score"),
            )
            if data.get(src) is not None
        }

        raw_feedback = data.get("feedback") or {}
        feedback = None
        if isinstance(raw_feedback, dict) and raw_feedback.get("overall"):
            feedback = Feedback(
                overall=str(raw_feedback["overall"]),
                strengths=list(raw_feedback.get("strengths", [])),
                improvements=list(raw_feedback.get("improvements", [])),
                specific_tips=list(raw_feedback.get("specific_tips", [])),
                next_steps=list(raw_feedback.get("next_steps", [])),
            )

        return ProviderResult(
            provider=self.name,
            transcript=str(data.get("transcript", "")),
            confidence=confidence,
            words=words,
            phonemes=phonemes,
            native_scores=native_scores,
            feedback=feedback,
        )
