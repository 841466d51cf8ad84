"""
发音评测引擎 - 预处理模块

负责音频解码和质量检测。
容器格式（WAV/MP3/OGG/WebM 等）交给 pydub 解码，其余字节按 16-bit 小端 PCM 处理。
"""
import io
import logging

import numpy as np
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from pronscore.config import QualitySettings
from pronscore.errors import InvalidInput
from pronscore.models import AudioQualityMetrics, AudioSample, FeatureSet

logger = logging.getLogger(__name__)

# 容器文件头 -> pydub 格式名
CONTAINER_MAGIC = {
    b"RIFF": "wav",
    b"ID3": "mp3",
    b"OggS": "ogg",
    b"fLaC": "flac",
    b"\x1a\x45\xdf\xa3": "webm",  # WebM / Matroska
}

# MPEG 音频帧头参数表（kbps / Hz），码率下标 0 与 15 非法
MPEG_BITRATES = {
    (1, 1): [0, 32, 64, 96, 128, 160, 192, 224, 256, 288, 320, 352, 384, 416, 448],
    (1, 2): [0, 32, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320, 384],
    (1, 3): [0, 32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320],
    (2, 1): [0, 32, 48, 56, 64, 80, 96, 112, 128, 144, 160, 176, 192, 224, 256],
    (2, 2): [0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160],
    (2, 3): [0, 8, 16, 24, 32, 40, 48, 56, 64, 80, 96, 112, 128, 144, 160],
}
MPEG_SAMPLE_RATES = {
    3: [44100, 48000, 32000],  # MPEG-1
    2: [22050, 24000, 16000],  # MPEG-2
    0: [11025, 12000, 8000],  # MPEG-2.5
}

SILENCE_THRESHOLD = 0.01
CLIPPING_THRESHOLD = 0.99
# rms 低于该 dB 时视为无信号，不再评估噪声与清晰度
SILENT_RMS_DB = -60.0


def mpeg_frame_length(data: bytes, offset: int = 0) -> int | None:
    """
    解析 offset 处的 MPEG 音频帧头

    Returns:
        帧长度（字节），不是合法帧头时返回 None
    """
    if len(data) < offset + 4:
        return None
    b1, b2 = data[offset + 1], data[offset + 2]
    if data[offset] != 0xFF or (b1 & 0xE0) != 0xE0:
        return None

    version = (b1 >> 3) & 0x03
    layer = 4 - ((b1 >> 1) & 0x03)
    bitrate_index = b2 >> 4
    rate_index = (b2 >> 2) & 0x03
    if version == 1 or layer == 4 or bitrate_index in (0, 15) or rate_index == 3:
        return None

    bitrate = MPEG_BITRATES[(1 if version == 3 else 2, layer)][bitrate_index] * 1000
    sample_rate = MPEG_SAMPLE_RATES[version][rate_index]
    padding = (b2 >> 1) & 0x01
    if layer == 1:
        return (12 * bitrate // sample_rate + padding) * 4
    if layer == 3 and version != 3:
        return 72 * bitrate // sample_rate + padding
    return 144 * bitrate // sample_rate + padding


def _is_mpeg_stream(data: bytes) -> bool:
    """帧同步字可能只是 PCM 样本（例如 -1），要求连续两个合法帧头"""
    length = mpeg_frame_length(data)
    return length is not None and mpeg_frame_length(data, length) is not None


def _container_format(data: bytes) -> str | None:
    """识别容器格式，裸 PCM 返回 None"""
    for magic, fmt in CONTAINER_MAGIC.items():
        if data.startswith(magic):
            return fmt
    if len(data) > 12 and data[4:8] == b"ftyp":  # MP4 / M4A
        return "mp4"
    if _is_mpeg_stream(data):
        return "mp3"
    return None


def decode_audio(audio_bytes: bytes, raw_sample_rate: int = 16000) -> tuple[AudioSample, int]:
    """
    把上传的字节解码为单声道 AudioSample

    Args:
        audio_bytes: 原始音频字节
        raw_sample_rate: 无文件头 PCM 的采样率

    Returns:
        (AudioSample, 位深)

    Raises:
        InvalidInput: 空音频或无法解码
    """
    if not audio_bytes:
        raise InvalidInput("音频为空")

    fmt = _container_format(audio_bytes)
    audio = None
    if fmt is not None:
        try:
            audio = AudioSegment.from_file(io.BytesIO(audio_bytes), format=fmt)
        except (CouldntDecodeError, OSError) as e:
            # 没有 ID3 标签的 MP3 只凭帧头判断，解码失败时按裸 PCM 处理
            if fmt != "mp3" or audio_bytes.startswith(b"ID3"):
                raise InvalidInput(f"音频解码失败: {e}") from e
            logger.warning(f"按 MP3 解码失败，改按裸 PCM 处理: {e}")

    if audio is not None:
        audio = audio.set_channels(1)
        samples = np.array(audio.get_array_of_samples(), dtype=np.float32)
        max_val = float(2 ** (audio.sample_width * 8 - 1))
        sample = AudioSample(samples=samples / max_val, sample_rate=audio.frame_rate)
        bit_depth = audio.sample_width * 8
    else:
        usable = len(audio_bytes) - (len(audio_bytes) % 2)
        pcm = np.frombuffer(audio_bytes[:usable], dtype="<i2").astype(np.float32)
        sample = AudioSample(samples=pcm / 32768.0, sample_rate=raw_sample_rate)
        bit_depth = 16

    logger.info(f"音频解码完成: 时长 {sample.duration:.2f}s, 采样率 {sample.sample_rate}Hz")
    return sample, bit_depth


def _weighted_spectral_mean(values: np.ndarray, weights: np.ndarray) -> float:
    total = float(weights.sum())
    return float((values * weights).sum() / total) if total > 0 else 0.0


def analyze_audio_quality(
    sample: AudioSample,
    features: FeatureSet,
    byte_length: int,
    thresholds: QualitySettings | None = None,
    bit_depth: int = 16,
) -> AudioQualityMetrics:
    """
    分析音频质量并给出问题与建议

    计算以下指标：
    - volume: 全局 RMS
    - snr: 20*log10(volume / 噪声底)，噪声底取帧能量的 10% 分位
    - clarity: 谱质心与谱滚降的归一化均值
    - silence_ratio / rms_db / clipping_ratio
    """
    t = thresholds or QualitySettings()
    samples = np.asarray(sample.samples, dtype=np.float64)
    sr = sample.sample_rate

    volume = float(np.sqrt(np.mean(samples ** 2))) if len(samples) else 0.0
    rms_db = float(20 * np.log10(volume + 1e-10))

    # NOTE: 噪声底只在有帧时可估计
    if features.frame_count > 0:
        energies = np.sort(features.energy)
        noise = float(energies[int(len(energies) * 0.1)]) or 0.001
        snr = float(20 * np.log10(volume / noise)) if volume > 0 and noise > 0 else 0.0
        centroid = _weighted_spectral_mean(features.spectral_centroid, features.energy)
        rolloff = _weighted_spectral_mean(features.spectral_rolloff, features.energy)
        clarity = (min(1.0, centroid / 4000.0) + min(1.0, rolloff / 8000.0)) / 2.0
    else:
        snr, clarity = 0.0, 0.0

    # 静音占比：25ms 帧 / 10ms 步长
    frame_length = max(1, int(sr * 0.025))
    hop_length = max(1, int(sr * 0.010))
    if len(samples) > frame_length:
        frames = np.lib.stride_tricks.sliding_window_view(samples, frame_length)[::hop_length]
        frame_rms = np.sqrt(np.mean(frames ** 2, axis=1))
        silence_ratio = float(np.mean(frame_rms < SILENCE_THRESHOLD))
    else:
        silence_ratio = 1.0

    clipping_ratio = float(np.mean(np.abs(samples) > CLIPPING_THRESHOLD)) if len(samples) else 0.0

    issues: list[str] = []
    recommendations: list[str] = []

    if byte_length < t.min_bytes:
        issues.append("Audio too short")
        recommendations.append("Record for at least 2-3 seconds")
    if byte_length > t.max_bytes:
        issues.append("Audio file too large")
        recommendations.append("Keep recordings under 30 seconds")
    if volume < t.min_volume:
        issues.append("Audio level too low")
        recommendations.append("Speak louder or move closer to microphone")
    if rms_db > SILENT_RMS_DB:
        if 1.0 - clarity > t.max_background_noise:
            issues.append("High background noise")
            recommendations.append("Record in a quieter environment")
        if clarity < t.min_clarity:
            issues.append("Poor audio clarity")
            recommendations.append("Check microphone quality and positioning")

    metrics = AudioQualityMetrics(
        snr=snr,
        clarity=float(clarity),
        volume=volume,
        background_noise=float(1.0 - clarity),
        rms_db=rms_db,
        silence_ratio=silence_ratio,
        clipping_ratio=clipping_ratio,
        voiced_ratio=features.voiced_ratio,
        sample_rate=sr,
        bit_depth=bit_depth,
        duration=sample.duration,
        issues=issues,
        recommendations=recommendations,
    )

    logger.info(
        f"音频质量: 时长={sample.duration:.2f}s, "
        f"静音占比={silence_ratio:.2%}, "
        f"RMS={rms_db:.1f}dB, "
        f"SNR={snr:.1f}dB, "
        f"问题={issues or '无'}"
    )
    return metrics
