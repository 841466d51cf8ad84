"""
发音评测引擎 - 配置加载模块

分层加载配置：内置默认值 -> config/default.yaml -> 用户配置文件 -> 环境变量凭证。
加载结果再转换为不可变的 AnalysisConfig，通过依赖注入传给 orchestrator 与各处理器。
"""
import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 默认配置文件路径
DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "default.yaml"
# 用户配置路径（可通过环境变量覆盖，便于容器部署）
USER_CONFIG_PATH = Path(os.getenv("PRONSCORE_CONFIG", Path.home() / ".pronscore" / "config.yaml"))

# provider 凭证对应的环境变量
CREDENTIAL_ENV = {
    "models.google.api_key": "GOOGLE_CLOUD_API_KEY",
    "models.azure.api_key": "AZURE_SPEECH_KEY",
    "models.azure.region": "AZURE_SPEECH_REGION",
    "models.gemini.api_key": "GEMINI_API_KEY",
}


def merge_config(base: dict, update: dict) -> dict:
    """递归合并配置字典（原地修改 base）"""
    for k, v in update.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, dict):
            merge_config(base[k], v)
        else:
            base[k] = v
    return base


def default_config() -> dict[str, Any]:
    """返回内置默认配置"""
    return {
        "models": {
            "google": {
                "enabled": True,
                "priority": 3,
                "timeout_ms": 10000,
                "retry_attempts": 2,
                "api_key": None,
                "endpoint": "https://speech.googleapis.com/v1/speech:recognize",
                "language": "en-US",
            },
            "azure": {
                "enabled": True,
                "priority": 2,
                "timeout_ms": 10000,
                "retry_attempts": 2,
                "api_key": None,
                "region": None,
                "language": "en-US",
            },
            "gemini": {
                "enabled": True,
                "priority": 1,
                "timeout_ms": 15000,
                "retry_attempts": 1,
                "api_key": None,
                "model": "gemini-1.5-flash",
            },
            "local": {
                "enabled": True,
                "priority": 0,
                "timeout_ms": 5000,
                "retry_attempts": 1,
            },
        },
        "audio": {
            "raw_sample_rate": 16000,
            "bit_depth": 16,
        },
        "features": {
            "frame_size": 1024,
            "hop_size": 512,
            "n_mfcc": 13,
            "n_mels": 26,
            "pitch_min_hz": 50,
            "pitch_max_hz": 500,
            "pitch_threshold": 0.3,
        },
        "vad": {
            "energy_threshold": 0.01,
            "zcr_threshold": 0.3,
            "entropy_threshold": 0.85,
        },
        "quality_thresholds": {
            "min_bytes": 1000,
            "max_bytes": 10_000_000,
            "min_volume": 0.1,
            "max_background_noise": 0.3,
            "min_clarity": 0.6,
        },
        "analysis": {
            "retry_backoff_sec": 0.5,
            "native_reference_dir": None,
        },
        "streaming": {
            "sample_rate": 44100,
            "buffer_size": 4096,
            "ring_buffer_frames": 100,
            "vad_confidence_threshold": 0.5,
            "remote_url": None,
        },
        "cache": {
            "max_entries": 1000,
            "ttl_sec": 3600,
        },
        "queue": {
            "workers": 2,
            "max_pending": 100,
            "max_finished": 1000,
        },
    }


class Config:
    """分层配置，支持点号分隔的嵌套键"""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = data if data is not None else default_config()

    def load(self, config_path: Path | None = None) -> "Config":
        """
        加载配置文件

        如果指定了 config_path 则使用它，否则尝试合并用户配置。
        最后用环境变量补齐未配置的凭证。
        """
        self._data = default_config()

        if DEFAULT_CONFIG_PATH.exists():
            self._merge_file(DEFAULT_CONFIG_PATH)

        if config_path:
            if config_path.exists():
                self._merge_file(config_path)
                logger.info(f"已加载自定义配置文件: {config_path}")
            else:
                logger.warning(f"指定配置文件不存在: {config_path}")
        elif USER_CONFIG_PATH.exists():
            try:
                self._merge_file(USER_CONFIG_PATH)
                logger.info(f"已加载用户配置文件: {USER_CONFIG_PATH}")
            except yaml.YAMLError as e:
                logger.warning(f"加载用户配置失败: {e}")

        self._apply_env_credentials()
        return self

    def _merge_file(self, path: Path) -> None:
        with open(path, encoding="utf-8") as f:
            merge_config(self._data, yaml.safe_load(f) or {})

    def _apply_env_credentials(self) -> None:
        for key, env_name in CREDENTIAL_ENV.items():
            value = os.getenv(env_name)
            if value and not self.get(key):
                self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取配置值，支持点号分隔的嵌套键

        Args:
            key: 配置键，支持 "a.b.c" 格式
            default: 默认值
        """
        value: Any = self._data
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        keys = key.split(".")
        node = self._data
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value

    def as_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)


def load_config(config_path: Path | None = None) -> Config:
    """
    加载配置并返回配置实例

    Args:
        config_path: 配置文件路径
    """
    return Config().load(config_path)


@dataclass(frozen=True)
class ModelConfig:
    """单个 provider 的配置"""
    name: str
    enabled: bool = True
    priority: int = 0
    timeout: int = 10000  # ms
    retry_attempts: int = 1
    api_key: str | None = None
    endpoint: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        if self.name == "local":
            return True
        if self.name == "azure":
            return bool(self.api_key and self.options.get("region"))
        return bool(self.api_key)

    @property
    def timeout_sec(self) -> float:
        return self.timeout / 1000.0


@dataclass(frozen=True)
class FeatureSettings:
    frame_size: int = 1024
    hop_size: int = 512
    n_mfcc: int = 13
    n_mels: int = 26
    pitch_min_hz: float = 50.0
    pitch_max_hz: float = 500.0
    pitch_threshold: float = 0.3
    vad_energy_threshold: float = 0.01
    vad_zcr_threshold: float = 0.3
    vad_entropy_threshold: float = 0.85


@dataclass(frozen=True)
class QualitySettings:
    min_bytes: int = 1000
    max_bytes: int = 10_000_000
    min_volume: float = 0.1
    max_background_noise: float = 0.3
    min_clarity: float = 0.6


@dataclass(frozen=True)
class StreamingSettings:
    sample_rate: int = 44100
    buffer_size: int = 4096
    ring_buffer_frames: int = 100
    vad_confidence_threshold: float = 0.5
    remote_url: str | None = None


@dataclass(frozen=True)
class AnalysisConfig:
    """
    评测引擎的显式配置值

    由 Config 构建后注入 orchestrator、处理器和实时模块，
    运行期间只能通过 EnsembleOrchestrator.update_config 整体替换。
    """
    models: dict[str, ModelConfig]
    features: FeatureSettings = field(default_factory=FeatureSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    streaming: StreamingSettings = field(default_factory=StreamingSettings)
    raw_sample_rate: int = 16000
    retry_backoff_sec: float = 0.5
    native_reference_dir: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_config(cls, config: Config) -> "AnalysisConfig":
        return cls.from_dict(config.as_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisConfig":
        merged = merge_config(default_config(), copy.deepcopy(data))
        cfg = Config(merged)

        models: dict[str, ModelConfig] = {}
        for name, raw_model in merged.get("models", {}).items():
            known = {"enabled", "priority", "timeout_ms", "retry_attempts", "api_key", "endpoint"}
            models[name] = ModelConfig(
                name=name,
                enabled=bool(raw_model.get("enabled", True)),
                priority=int(raw_model.get("priority", 0)),
                timeout=int(raw_model.get("timeout_ms", 10000)),
                retry_attempts=int(raw_model.get("retry_attempts", 1)),
                api_key=raw_model.get("api_key"),
                endpoint=raw_model.get("endpoint"),
                options={k: v for k, v in raw_model.items() if k not in known},
            )

        features = FeatureSettings(
            frame_size=int(cfg.get("features.frame_size")),
            hop_size=int(cfg.get("features.hop_size")),
            n_mfcc=int(cfg.get("features.n_mfcc")),
            n_mels=int(cfg.get("features.n_mels")),
            pitch_min_hz=float(cfg.get("features.pitch_min_hz")),
            pitch_max_hz=float(cfg.get("features.pitch_max_hz")),
            pitch_threshold=float(cfg.get("features.pitch_threshold")),
            vad_energy_threshold=float(cfg.get("vad.energy_threshold")),
            vad_zcr_threshold=float(cfg.get("vad.zcr_threshold")),
            vad_entropy_threshold=float(cfg.get("vad.entropy_threshold")),
        )
        quality = QualitySettings(**merged["quality_thresholds"])
        streaming = StreamingSettings(**merged["streaming"])

        return cls(
            models=models,
            features=features,
            quality=quality,
            streaming=streaming,
            raw_sample_rate=int(cfg.get("audio.raw_sample_rate")),
            retry_backoff_sec=float(cfg.get("analysis.retry_backoff_sec")),
            native_reference_dir=cfg.get("analysis.native_reference_dir"),
            raw=merged,
        )

    @classmethod
    def load(cls, config_path: Path | None = None) -> "AnalysisConfig":
        return cls.from_config(load_config(config_path))

    def updated(self, updates: dict[str, Any]) -> "AnalysisConfig":
        """返回合并了 updates 的新配置（原配置不变）"""
        return AnalysisConfig.from_dict(merge_config(copy.deepcopy(self.raw), updates))
