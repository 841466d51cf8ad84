"""
发音评测引擎 - 声学特征提取

把 PCM 样本切帧后计算 MFCC、基频、能量、过零率、谱质心、谱滚降、谱熵以及逐帧 VAD。

帧数公式: n = floor((L - F) / H) + 1（L < F 时为 0，返回空 FeatureSet）。
同一输入永远得到同一输出，不读写任何全局状态。
"""
import logging
from functools import lru_cache

import librosa
import numpy as np
from scipy.fft import dct

from pronscore.config import FeatureSettings
from pronscore.models import AudioSample, FeatureSet, VoiceActivity

logger = logging.getLogger(__name__)

LOG_FLOOR = 1e-10
ROLLOFF_PERCENT = 0.85
# 低于此 RMS 的帧视为静音，不做基频搜索
SILENCE_RMS = 1e-4


@lru_cache(maxsize=16)
def _mel_filterbank(sample_rate: int, n_fft: int, n_mels: int) -> np.ndarray:
    """HTK mel 刻度滤波器组，覆盖 0 ~ Nyquist"""
    return librosa.filters.mel(
        sr=sample_rate,
        n_fft=n_fft,
        n_mels=n_mels,
        fmin=0.0,
        fmax=sample_rate / 2.0,
        htk=True,
        norm=None,
    )


@lru_cache(maxsize=16)
def _hamming(frame_size: int) -> np.ndarray:
    return np.hamming(frame_size)


def frame_count(length: int, frame_size: int, hop_size: int) -> int:
    if length < frame_size or hop_size <= 0:
        return 0
    return (length - frame_size) // hop_size + 1


def frame_signal(samples: np.ndarray, frame_size: int, hop_size: int) -> np.ndarray:
    """切帧，返回 (n_frames, frame_size) 的只读视图"""
    n = frame_count(len(samples), frame_size, hop_size)
    if n == 0:
        return np.zeros((0, frame_size), dtype=np.float64)
    frames = np.lib.stride_tricks.sliding_window_view(samples, frame_size)[::hop_size]
    return np.asarray(frames[:n], dtype=np.float64)


def _safe_divide(num: np.ndarray, den: np.ndarray) -> np.ndarray:
    out = np.zeros_like(num, dtype=np.float64)
    np.divide(num, den, out=out, where=den > 0)
    return out


class AudioFeatureExtractor:
    """
    逐帧声学特征提取器

    - MFCC: 功率谱 -> mel 滤波器组 -> log(下限 1e-10) -> DCT-II，保留前 n_mfcc 维
    - 基频: 归一化自相关，搜索 50~500 Hz 对应的延迟区间，峰值不超过阈值记为 0 Hz
    - VAD: 能量、过零率、谱熵分别与各自阈值比较，三者同时满足才判为语音
    """

    def __init__(self, settings: FeatureSettings | None = None) -> None:
        self.settings = settings or FeatureSettings()

    def extract(self, sample: AudioSample) -> FeatureSet:
        s = self.settings
        sr = int(sample.sample_rate)
        samples = np.asarray(sample.samples, dtype=np.float64)

        if sr <= 0 or len(samples) < s.frame_size:
            logger.debug(f"音频过短 ({len(samples)} samples)，返回空特征集")
            return FeatureSet.empty(sr, s.frame_size, s.hop_size, s.n_mfcc)

        samples = np.nan_to_num(samples, nan=0.0, posinf=0.0, neginf=0.0)
        frames = frame_signal(samples, s.frame_size, s.hop_size)

        energy = np.sqrt(np.mean(frames ** 2, axis=1))
        zcr = self._zero_crossing_rate(frames)

        windowed = frames * _hamming(s.frame_size)
        spectrum = np.fft.rfft(windowed, axis=1)
        magnitude = np.abs(spectrum)
        power = magnitude ** 2 / s.frame_size
        freqs = np.fft.rfftfreq(s.frame_size, d=1.0 / sr)

        mfcc = self._mfcc(power, sr)
        centroid = _safe_divide((magnitude * freqs).sum(axis=1), magnitude.sum(axis=1))
        rolloff = self._rolloff(power, freqs)
        entropy = self._spectral_entropy(power)
        pitch = np.array([self._pitch(frame, sr, rms) for frame, rms in zip(frames, energy)])

        vad_active, vad_confidence = self._vad(energy, zcr, entropy)

        return FeatureSet(
            mfcc=np.nan_to_num(mfcc),
            pitch=np.nan_to_num(pitch),
            energy=np.nan_to_num(energy),
            zero_crossing_rate=np.nan_to_num(zcr),
            spectral_centroid=np.nan_to_num(centroid),
            spectral_rolloff=np.nan_to_num(rolloff),
            spectral_entropy=np.nan_to_num(entropy),
            vad_active=vad_active,
            vad_confidence=np.nan_to_num(vad_confidence),
            sample_rate=sr,
            frame_size=s.frame_size,
            hop_size=s.hop_size,
        )

    def voice_activity(self, features: FeatureSet) -> VoiceActivity:
        """把一段特征的逐帧 VAD 汇总为整体判定（实时模式按块使用）"""
        if features.frame_count == 0:
            return VoiceActivity(is_active=False, confidence=0.0)
        active = bool(np.mean(features.vad_active) >= 0.5)
        confidence = float(np.mean(features.vad_confidence[features.vad_active])) if active else 0.0
        return VoiceActivity(
            is_active=active,
            confidence=confidence,
            energy=float(np.mean(features.energy)),
            zero_crossing_rate=float(np.mean(features.zero_crossing_rate)),
            spectral_entropy=float(np.mean(features.spectral_entropy)),
        )

    def _mfcc(self, power: np.ndarray, sample_rate: int) -> np.ndarray:
        s = self.settings
        fb = _mel_filterbank(sample_rate, s.frame_size, s.n_mels)
        mel_energy = power @ fb.T
        log_mel = np.log(np.maximum(mel_energy, LOG_FLOOR))
        return dct(log_mel, type=2, axis=1, norm="ortho")[:, : s.n_mfcc]

    @staticmethod
    def _zero_crossing_rate(frames: np.ndarray) -> np.ndarray:
        if frames.shape[1] < 2:
            return np.zeros(len(frames))
        crossings = np.count_nonzero(np.diff(np.signbit(frames), axis=1), axis=1)
        return crossings / (frames.shape[1] - 1)

    @staticmethod
    def _rolloff(power: np.ndarray, freqs: np.ndarray) -> np.ndarray:
        total = power.sum(axis=1)
        cumulative = np.cumsum(power, axis=1)
        idx = np.argmax(cumulative >= (ROLLOFF_PERCENT * total)[:, None], axis=1)
        return np.where(total > 0, freqs[idx], 0.0)

    @staticmethod
    def _spectral_entropy(power: np.ndarray) -> np.ndarray:
        """归一化谱熵 [0, 1]；全零频谱视为最大熵"""
        n_bins = power.shape[1]
        total = power.sum(axis=1, keepdims=True)
        p = _safe_divide(power, np.broadcast_to(total, power.shape))
        with np.errstate(divide="ignore", invalid="ignore"):
            h = -np.sum(np.where(p > 0, p * np.log(p), 0.0), axis=1)
        entropy = h / np.log(n_bins) if n_bins > 1 else np.zeros(len(power))
        return np.where(total[:, 0] > 0, entropy, 1.0)

    def _pitch(self, frame: np.ndarray, sample_rate: int, rms: float) -> float:
        """归一化自相关基频估计，未检测到清晰峰值返回 0"""
        s = self.settings
        if rms < SILENCE_RMS:
            return 0.0

        n = len(frame)
        min_lag = max(1, int(sample_rate / s.pitch_max_hz))
        max_lag = min(int(sample_rate / s.pitch_min_hz), n - 2)
        if max_lag <= min_lag + 1:
            return 0.0

        x = frame - frame.mean()
        spec = np.fft.rfft(x, 2 * n)
        ac = np.fft.irfft(spec * np.conj(spec))[:n]

        sq = np.concatenate(([0.0], np.cumsum(x ** 2)))
        lags = np.arange(min_lag, max_lag + 1)
        head = sq[n - lags]
        tail = sq[n] - sq[lags]
        r = _safe_divide(ac[lags], np.sqrt(head * tail))

        best = float(r.max())
        if best <= s.pitch_threshold:
            return 0.0

        # 取第一个接近全局最大值的局部峰，避免倍周期误判
        for i in range(1, len(r) - 1):
            if r[i] >= 0.9 * best and r[i] >= r[i - 1] and r[i] >= r[i + 1]:
                break
        else:
            i = int(np.argmax(r))

        lag = float(lags[i])
        if 0 < i < len(r) - 1:
            denom = r[i - 1] - 2 * r[i] + r[i + 1]
            if denom != 0:
                lag += 0.5 * (r[i - 1] - r[i + 1]) / denom
        return sample_rate / lag if lag > 0 else 0.0

    def _vad(
        self, energy: np.ndarray, zcr: np.ndarray, entropy: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """三项指标同时越过阈值才判为语音；置信度为各项越过阈值幅度的均值"""
        s = self.settings
        active = (
            (energy > s.vad_energy_threshold)
            & (zcr < s.vad_zcr_threshold)
            & (entropy < s.vad_entropy_threshold)
        )
        energy_margin = np.clip(
            (energy - s.vad_energy_threshold) / max(s.vad_energy_threshold, 1e-12), 0.0, 1.0
        )
        zcr_margin = np.clip((s.vad_zcr_threshold - zcr) / s.vad_zcr_threshold, 0.0, 1.0)
        entropy_margin = np.clip(
            (s.vad_entropy_threshold - entropy) / s.vad_entropy_threshold, 0.0, 1.0
        )
        confidence = (energy_margin + zcr_margin + entropy_margin) / 3.0
        return active, confidence


def extract_features(sample: AudioSample, settings: FeatureSettings | None = None) -> FeatureSet:
    """便捷入口"""
    return AudioFeatureExtractor(settings).extract(sample)
