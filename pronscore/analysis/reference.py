"""
发音评测引擎 - 参考数据源

提供 GOP 音素模型、音素类别、母语者音素时长、词典，以及按句子存放的母语者 MFCC 轨迹。
表格数据来自 reference.yaml；MFCC 轨迹可从目录中的 <句子 slug>.npy 加载，或在运行时注册。
"""
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import yaml

logger = logging.getLogger(__name__)

# 参考表路径
REFERENCE_PATH = Path(__file__).parent / "reference.yaml"

# 缓存的参考表
_table_cache: dict[str, Any] | None = None

ARPABET = {
    "AA", "AE", "AH", "AO", "AW", "AY", "B", "CH", "D", "DH", "EH", "ER", "EY", "F", "G",
    "HH", "IH", "IY", "JH", "K", "L", "M", "N", "NG", "OW", "OY", "P", "R", "S", "SH",
    "T", "TH", "UH", "UW", "V", "W", "Y", "Z", "ZH",
}

# 字母到音素的近似规则，双字母优先
DIGRAPHS = {
    "th": ["TH"], "sh": ["SH"], "ch": ["CH"], "ng": ["NG"], "ph": ["F"], "ck": ["K"],
    "wh": ["W"], "qu": ["K", "W"], "ee": ["IY"], "ea": ["IY"], "oo": ["UW"], "ai": ["EY"],
    "ay": ["EY"], "ou": ["AW"], "ow": ["OW"], "oi": ["OY"], "oy": ["OY"], "er": ["ER"],
    "ir": ["ER"], "ur": ["ER"], "ar": ["AA", "R"], "or": ["AO", "R"],
}
LETTERS = {
    "a": ["AE"], "b": ["B"], "c": ["K"], "d": ["D"], "e": ["EH"], "f": ["F"], "g": ["G"],
    "h": ["HH"], "i": ["IH"], "j": ["JH"], "k": ["K"], "l": ["L"], "m": ["M"], "n": ["N"],
    "o": ["AA"], "p": ["P"], "q": ["K"], "r": ["R"], "s": ["S"], "t": ["T"], "u": ["AH"],
    "v": ["V"], "w": ["W"], "x": ["K", "S"], "y": ["Y"], "z": ["Z"],
}


def load_reference_table() -> dict[str, Any]:
    """加载参考表（模块级缓存）"""
    global _table_cache

    if _table_cache is not None:
        return _table_cache

    with open(REFERENCE_PATH, encoding="utf-8") as f:
        _table_cache = yaml.safe_load(f) or {}

    logger.info(
        f"已加载参考表: {len(_table_cache.get('phoneme_models', {}))} 个音素模型, "
        f"{len(_table_cache.get('lexicon', {}))} 个词条"
    )
    return _table_cache


def normalize_label(phoneme: str) -> str:
    """去掉重音数字并转大写，如 ah0 -> AH"""
    return phoneme.upper().rstrip("012")


def normalize_word(word: str) -> str:
    return re.sub(r"[^a-z']", "", word.lower())


def sentence_slug(text: str) -> str:
    words = [normalize_word(w) for w in text.split()]
    return "_".join(w for w in words if w)


def tokenize(text: str) -> list[str]:
    """按空白切分，保留标点（韵律分析需要用标点判断停顿位置）"""
    return [w for w in text.split() if normalize_word(w)]


@dataclass(frozen=True)
class PhonemeModel:
    """GOP 用的音素参考模型"""
    label: str
    features: tuple[float, ...]
    duration_ms: float
    formants: tuple[float, ...]


class ReferenceData:
    """
    可插拔参考数据源

    native_trajectory() 返回 None 时，相似度分析会退化为有界的 MFCC 方差近似。
    """

    def __init__(
        self,
        table: dict[str, Any] | None = None,
        trajectory_dir: str | Path | None = None,
    ) -> None:
        self.table = table if table is not None else load_reference_table()
        self.trajectory_dir = Path(trajectory_dir) if trajectory_dir else None
        self._trajectories: dict[str, np.ndarray] = {}

        self._class_of: dict[str, str] = {}
        for name, members in self.table.get("phoneme_classes", {}).items():
            for member in members:
                self._class_of[member] = name

    def phoneme_class(self, phoneme: str) -> str | None:
        return self._class_of.get(normalize_label(phoneme))

    def phoneme_model(self, phoneme: str) -> PhonemeModel | None:
        """返回音素模型；非 ARPAbet 标签返回 None"""
        label = normalize_label(phoneme)
        if label not in ARPABET:
            return None

        raw = self.table.get("phoneme_models", {}).get(label)
        if raw is None:
            class_models = self.table.get("class_models", {})
            raw = class_models.get(self.phoneme_class(label) or "default") or class_models.get("default")
        if raw is None:
            return None

        return PhonemeModel(
            label=label,
            features=tuple(raw.get("features", [0.5] * 5)),
            duration_ms=float(raw.get("duration_ms", 100)),
            formants=tuple(raw.get("formants", [500, 1500, 2500])),
        )

    def native_duration(self, phoneme: str) -> float:
        durations = self.table.get("native_durations", {})
        return float(durations.get(normalize_label(phoneme), durations.get("default", 0.09)))

    def lexicon_phonemes(self, word: str) -> list[str] | None:
        entry = self.table.get("lexicon", {}).get(normalize_word(word))
        return list(entry) if entry else None

    def phonemes_for_word(self, word: str) -> list[str]:
        """词典优先，否则按拼写规则近似"""
        known = self.lexicon_phonemes(word)
        if known:
            return known
        return letters_to_phonemes(normalize_word(word))

    @staticmethod
    def expected_word_duration(word: str) -> float:
        """词的期望时长（秒），按字母数估算"""
        return len(normalize_word(word)) * 0.08 + 0.1

    def register_trajectory(self, text: str, mfcc: np.ndarray) -> None:
        """注册某句话的母语者 MFCC 轨迹 (n_frames, n_mfcc)"""
        self._trajectories[sentence_slug(text)] = np.asarray(mfcc, dtype=np.float64)

    def native_trajectory(self, text: str) -> np.ndarray | None:
        slug = sentence_slug(text)
        if not slug:
            return None
        if slug in self._trajectories:
            return self._trajectories[slug]

        if self.trajectory_dir:
            path = self.trajectory_dir / f"{slug}.npy"
            if path.exists():
                trajectory = np.load(path)
                self._trajectories[slug] = trajectory
                logger.info(f"已加载母语者参考轨迹: {path.name} ({len(trajectory)} 帧)")
                return trajectory
        return None


def letters_to_phonemes(word: str) -> list[str]:
    """非常粗略的拼写到 ARPAbet 映射，仅用于词典外的词"""
    if not word:
        return []
    # 词尾不发音的 e
    if len(word) > 2 and word.endswith("e") and word[-2] not in "aeiou":
        word = word[:-1]

    phonemes: list[str] = []
    i = 0
    while i < len(word):
        pair = word[i:i + 2]
        if len(pair) == 2 and pair in DIGRAPHS:
            phonemes.extend(DIGRAPHS[pair])
            i += 2
            continue
        ch = word[i]
        if ch == "y" and i > 0:
            phonemes.append("IY")
        elif ch in LETTERS:
            phonemes.extend(LETTERS[ch])
        i += 1

    # 合并相邻重复音素（如 ll / ss）
    merged: list[str] = []
    for p in phonemes:
        if not merged or merged[-1] != p:
            merged.append(p)
    return merged
