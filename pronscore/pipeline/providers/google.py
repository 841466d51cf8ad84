"""
Google Cloud Speech 适配器 - 通过 REST speech:recognize 获取词级时间戳和置信度

Google 不提供音素级结果，音素由词典 / 拼写规则展开后按词时长平均切分。
"""
import base64
import logging
from typing import Any

import httpx

from pronscore.analysis.reference import ReferenceData
from pronscore.config import ModelConfig
from pronscore.errors import ProviderInvalidResponse, ProviderTimeout, ProviderUnavailable
from pronscore.models import AudioSample, ProviderName, ProviderResult
from pronscore.pipeline.providers.base import ProviderAdapter, build_words, float_to_pcm16

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://speech.googleapis.com/v1/speech:recognize"


def parse_duration(value: Any) -> float:
    """解析 "1.300s" 形式的时长"""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return float(str(value).rstrip("s") or 0)


class GoogleSpeechAdapter(ProviderAdapter):
    """
    Google 云端识别适配器

    httpx.AsyncClient 可在多个并发请求之间共享。
    """

    name = ProviderName.GOOGLE.value

    def __init__(
        self,
        model_config: ModelConfig,
        client: httpx.AsyncClient | None = None,
        reference: ReferenceData | None = None,
        backoff_sec: float = 0.5,
    ) -> None:
        super().__init__(model_config, reference, backoff_sec)
        self.endpoint = model_config.endpoint or DEFAULT_ENDPOINT
        self.language = model_config.options.get("language", "en-US")
        self._client = client
        self._owns_client = client is None

        if not model_config.api_key:
            logger.warning("Google API Key 未配置，GoogleSpeechAdapter 已禁用")

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        return self.enabled

    def build_request(self, sample: AudioSample, target: str) -> dict[str, Any]:
        return {
            "config": {
                "encoding": "LINEAR16",
                "sampleRateHertz": sample.sample_rate,
                "languageCode": self.language,
                "enableWordTimeOffsets": True,
                "enableWordConfidence": True,
                "enableAutomaticPunctuation": True,
                "speechContexts": [{"phrases": [target], "boost": 20}],
            },
            "audio": {"content": base64.b64encode(float_to_pcm16(sample.samples)).decode("ascii")},
        }

    async def analyze(self, sample: AudioSample, target: str) -> ProviderResult:
        if not self.config.api_key:
            raise ProviderUnavailable(self.name, "未配置 API Key")

        logger.info(f"Google 适配器：开始识别 ({sample.duration:.2f}s)")
        try:
            response = await self.client.post(
                self.endpoint,
                params={"key": self.config.api_key},
                json=self.build_request(sample, target),
                timeout=self.config.timeout_sec,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(self.name, f"请求超时: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403, 404):
                raise ProviderUnavailable(self.name, f"HTTP {status}") from e
            raise ProviderInvalidResponse(self.name, f"HTTP {status}", retryable=status >= 429) from e
        except httpx.ConnectError as e:
            raise ProviderUnavailable(self.name, f"连接失败: {e}") from e
        except httpx.TransportError as e:
            # 连接建立后的读写中断按可重试的无效响应处理
            raise ProviderInvalidResponse(self.name, f"传输中断: {e}", retryable=True) from e

        return self.parse_response(response.json())

    def parse_response(self, data: dict[str, Any]) -> ProviderResult:
        results = data.get("results") or []
        if not results:
            raise ProviderInvalidResponse(self.name, "没有识别结果")
        alternatives = results[0].get("alternatives") or []
        if not alternatives:
            raise ProviderInvalidResponse(self.name, "没有候选结果")

        alt = alternatives[0]
        confidence = float(alt.get("confidence", 0.0))
        spans = [
            (
                w.get("word", ""),
                parse_duration(w.get("startTime")),
                parse_duration(w.get("endTime")),
                float(w.get("confidence", confidence)),
            )
            for w in alt.get("words", [])
        ]
        words, phonemes = build_words(self, spans)

        return ProviderResult(
            provider=self.name,
            transcript=alt.get("transcript", ""),
            confidence=confidence,
            words=words,
            phonemes=phonemes,
        )
