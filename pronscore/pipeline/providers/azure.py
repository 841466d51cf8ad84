"""
Azure 语音评价适配器 - 使用 Microsoft Azure Pronunciation Assessment

提供音素级准确度和 PronScore / Accuracy / Fluency / Completeness 原生分数。
SDK 调用是阻塞的，放到工作线程中执行。
"""
import asyncio
import json
import logging
from typing import Any

from pronscore.analysis.reference import ReferenceData, normalize_label
from pronscore.config import ModelConfig
from pronscore.errors import ProviderInvalidResponse, ProviderUnavailable
from pronscore.models import (
    AudioSample,
    PhonemeSegment,
    ProviderName,
    ProviderResult,
    WordSegment,
)
from pronscore.pipeline.providers.base import ProviderAdapter, float_to_pcm16

logger = logging.getLogger(__name__)

# Azure 时间单位为 100ns
TICKS_PER_SEC = 10_000_000

# en-US SAPI 音素与 ARPAbet 不一致的部分
SAPI_TO_ARPABET = {"AX": "AH", "H": "HH"}

# 延迟导入，防止在未安装 SDK 时导致启动失败
_speech_sdk = None


def get_speech_sdk():
    global _speech_sdk
    if _speech_sdk is None:
        import azure.cognitiveservices.speech as sdk
        _speech_sdk = sdk
    return _speech_sdk


def to_arpabet(phoneme: str) -> str:
    label = normalize_label(phoneme)
    return SAPI_TO_ARPABET.get(label, label)


class AzureSpeechAdapter(ProviderAdapter):
    """Azure 发音评估适配器 (云端权威模式)"""

    name = ProviderName.AZURE.value

    def __init__(
        self,
        model_config: ModelConfig,
        reference: ReferenceData | None = None,
        backoff_sec: float = 0.5,
    ) -> None:
        super().__init__(model_config, reference, backoff_sec)
        self.region = model_config.options.get("region")
        self.language = model_config.options.get("language", "en-US")

        if not model_config.has_credentials:
            logger.warning("Azure API Key 或 Region 未配置，AzureSpeechAdapter 已禁用")

    async def health_check(self) -> bool:
        if not self.enabled:
            return False
        try:
            get_speech_sdk()
        except ImportError:
            logger.warning("azure-cognitiveservices-speech 库未安装")
            return False
        return True

    async def analyze(self, sample: AudioSample, target: str) -> ProviderResult:
        if not self.config.has_credentials:
            raise ProviderUnavailable(self.name, "未配置 API Key / Region")
        try:
            sdk = get_speech_sdk()
        except ImportError as e:
            raise ProviderUnavailable(self.name, "请安装 azure-cognitiveservices-speech") from e

        logger.info(f"Azure 适配器：开始评估 ({sample.duration:.2f}s)")
        raw_json = await asyncio.to_thread(self._recognize, sdk, sample, target)
        try:
            data = json.loads(raw_json)
        except (TypeError, json.JSONDecodeError) as e:
            raise ProviderInvalidResponse(self.name, f"JSON 解析失败: {e}") from e
        return self.parse_result(data)

    def _recognize(self, sdk: Any, sample: AudioSample, target: str) -> str:
        """阻塞调用，在工作线程中运行"""
        speech_config = sdk.SpeechConfig(subscription=self.config.api_key, region=self.region)
        stream_format = sdk.audio.AudioStreamFormat(
            samples_per_second=sample.sample_rate, bits_per_sample=16, channels=1
        )
        stream = sdk.audio.PushAudioInputStream(stream_format=stream_format)
        stream.write(float_to_pcm16(sample.samples))
        stream.close()
        audio_config = sdk.audio.AudioConfig(stream=stream)

        pronunciation_config = sdk.PronunciationAssessmentConfig(
            reference_text=target,
            grading_system=sdk.PronunciationAssessmentGradingSystem.HundredMark,
            granularity=sdk.PronunciationAssessmentGranularity.Phoneme,
            enable_miscue=True,
        )
        recognizer = sdk.SpeechRecognizer(
            speech_config=speech_config,
            language=self.language,
            audio_config=audio_config,
        )
        pronunciation_config.apply_to(recognizer)

        result = recognizer.recognize_once()

        if result.reason == sdk.ResultReason.RecognizedSpeech:
            return result.properties.get(sdk.PropertyId.SpeechServiceResponse_JsonResult)
        if result.reason == sdk.ResultReason.NoMatch:
            raise ProviderInvalidResponse(self.name, "未能识别到有效语音", retryable=False)
        if result.reason == sdk.ResultReason.Canceled:
            details = result.cancellation_details
            if details.error_code == sdk.CancellationErrorCode.AuthenticationFailure:
                raise ProviderUnavailable(self.name, f"鉴权失败: {details.error_details}")
            raise ProviderInvalidResponse(
                self.name, f"评估被取消: {details.reason} {details.error_details}", retryable=True
            )
        raise ProviderInvalidResponse(self.name, f"未知 reason={result.reason}")

    def parse_result(self, data: dict[str, Any]) -> ProviderResult:
        """
        解析 Azure 返回结果

        结果层级: NBest -> Words -> Phonemes，每层都带 PronunciationAssessment。
        """
        nbest_list = data.get("NBest") or []
        if not nbest_list:
            raise ProviderInvalidResponse(self.name, "缺少 NBest")
        nbest = nbest_list[0]
        assessment = nbest.get("PronunciationAssessment", {})

        words: list[WordSegment] = []
        phonemes: list[PhonemeSegment] = []
        for w in nbest.get("Words", []):
            w_assessment = w.get("PronunciationAssessment", {})
            error_type = w_assessment.get("ErrorType", "None")
            start = w.get("Offset", 0) / TICKS_PER_SEC
            end = (w.get("Offset", 0) + w.get("Duration", 0)) / TICKS_PER_SEC
            # 漏读的词没有时长
            if end <= start:
                end = start + 0.01

            segs: list[PhonemeSegment] = []
            raw_phonemes = w.get("Phonemes", [])
            for i, p in enumerate(raw_phonemes):
                p_score = p.get("PronunciationAssessment", {}).get("AccuracyScore", 0.0)
                if "Offset" in p and p.get("Duration", 0) > 0:
                    p_start = p["Offset"] / TICKS_PER_SEC
                    p_end = (p["Offset"] + p["Duration"]) / TICKS_PER_SEC
                else:
                    step = (end - start) / len(raw_phonemes)
                    p_start, p_end = start + i * step, start + (i + 1) * step
                segs.append(PhonemeSegment(
                    phoneme=to_arpabet(p.get("Phoneme", "")),
                    start=p_start,
                    end=p_end,
                    confidence=max(0.0, min(1.0, p_score / 100.0)),
                    accuracy=float(p_score),
                    issues=[] if p_score >= 60 else ["low-accuracy"],
                ))

            words.append(WordSegment(
                word=w.get("Word", ""),
                start=start,
                end=end,
                accuracy=float(w_assessment.get("AccuracyScore", 0.0)),
                phonemes=segs,
                issues=[] if error_type == "None" else [error_type.lower()],
            ))
            phonemes.extend(segs)

        native_scores = {
            key: float(assessment[src])
            for key, src in (
                ("overall", "PronScore"),
                ("accuracy", "AccuracyScore"),
                ("fluency", "FluencyScore"),
                ("completeness", "CompletenessScore"),
            )
            if src in assessment
        }

        return ProviderResult(
            provider=self.name,
            transcript=nbest.get("Display", data.get("DisplayText", "")),
            confidence=float(nbest["Confidence"]) if "Confidence" in nbest else None,
            words=words,
            phonemes=phonemes,
            native_scores=native_scores,
        )
