"""
发音评测引擎 - 建议生成模块

根据 GOP、相似度、韵律和音频质量，结合规则库生成 strengths / improvements / tips / next steps。
"""
import logging
from pathlib import Path
from typing import Any

import yaml

from pronscore.analysis.reference import normalize_label
from pronscore.models import (
    AudioQualityMetrics,
    Feedback,
    GOPScore,
    NativeSimilarityScore,
    ProsodyProfile,
    WordSegment,
)

logger = logging.getLogger(__name__)

# 规则库路径
RULES_PATH = Path(__file__).parent / "feedback_rules.yaml"

# 缓存的规则库
_rules_cache: dict[str, Any] | None = None

MAX_STRENGTHS = 5
MAX_IMPROVEMENTS = 5
MAX_TIPS = 3
MAX_NEXT_STEPS = 3
WEAK_WORD_THRESHOLD = 60


def load_rules() -> dict[str, Any]:
    """
    加载反馈规则库

    Returns:
        规则库数据
    """
    global _rules_cache

    if _rules_cache is not None:
        return _rules_cache

    if not RULES_PATH.exists():
        logger.warning(f"规则库不存在: {RULES_PATH}")
        _rules_cache = {"phoneme_rules": [], "fallback_advice": {}, "overall_tiers": []}
        return _rules_cache

    with open(RULES_PATH, encoding="utf-8") as f:
        _rules_cache = yaml.safe_load(f) or {}

    logger.info(f"已加载反馈规则库，共 {len(_rules_cache.get('phoneme_rules', []))} 条音素规则")
    return _rules_cache


def find_phoneme_rule(phoneme: str) -> dict[str, Any] | None:
    """查找音素对应的规则（忽略重音数字）"""
    target = normalize_label(phoneme)
    for rule in load_rules().get("phoneme_rules", []):
        if rule.get("phoneme", "").upper() == target:
            return rule
    return None


def overall_text(score: float, quality: AudioQualityMetrics | None = None) -> str:
    rules = load_rules()
    if quality is not None and "Audio level too low" in quality.issues:
        return rules.get("low_signal_text", "Please record again closer to the microphone.")
    for tier in rules.get("overall_tiers", []):
        if score >= tier.get("min", 0):
            return tier["text"]
    return "Keep practicing."


def _append_unique(items: list[str], value: str) -> None:
    if value and value not in items:
        items.append(value)


def generate_feedback(
    overall_score: float,
    gop: GOPScore,
    similarity: NativeSimilarityScore,
    prosody: ProsodyProfile,
    words: list[WordSegment],
    quality: AudioQualityMetrics | None = None,
) -> Feedback:
    """
    生成改进建议

    Args:
        overall_score: 综合得分 (0-100)
        gop: GOP 评分
        similarity: 母语者相似度
        prosody: 韵律分析
        words: 带准确度的词列表
        quality: 音频质量指标
    """
    strengths: list[str] = []
    improvements: list[str] = []
    tips: list[str] = []
    next_steps: list[str] = []

    if gop.overall >= 80:
        strengths.append("Excellent overall pronunciation accuracy")
    if similarity.overall >= 80:
        strengths.append("Close to native-speaker pronunciation")
    if prosody.stress.naturalness >= 0.8:
        strengths.append("Natural word stress patterns")
    if prosody.rhythm.regularity >= 0.8:
        strengths.append("Consistent speaking rhythm")
    if prosody.intonation.naturalness >= 0.8:
        strengths.append("Appropriate intonation")
    if prosody.pace.fluency >= 0.8:
        strengths.append("Good speaking pace")

    if gop.overall < 70:
        improvements.append("Focus on clearer pronunciation of individual sounds")
    if prosody.stress.accuracy < 0.7:
        improvements.append("Work on word stress patterns")
    if prosody.rhythm.regularity < 0.6:
        improvements.append("Practice maintaining a steady rhythm")
    if prosody.intonation.naturalness < 0.7:
        improvements.append("Pay attention to rising and falling intonation")
    wpm = prosody.pace.words_per_minute
    if 0 < wpm < 100:
        improvements.append("Try speaking a little faster")
    elif wpm > 200:
        improvements.append("Slow down slightly for clarity")
    if similarity.temporal < 60:
        improvements.append("Keep sound durations closer to native timing")

    # 最弱的几个词：针对其中最弱的音素给出规则提示
    weak_words = sorted(
        (w for w in words if w.accuracy < WEAK_WORD_THRESHOLD), key=lambda w: w.accuracy
    )
    for word in weak_words:
        if word.phonemes:
            weakest = min(word.phonemes, key=lambda p: p.accuracy)
            rule = find_phoneme_rule(weakest.phoneme)
            if rule:
                _append_unique(tips, rule.get("tip", ""))
                continue
        _append_unique(tips, f"Practice the word '{word.word}' slowly, sound by sound")
    if weak_words:
        _append_unique(next_steps, "Repeat the words: " + ", ".join(w.word for w in weak_words[:3]))

    if quality is not None:
        for rec in quality.recommendations:
            _append_unique(tips, rec)

    fallback = load_rules().get("fallback_advice", {})
    if len(tips) < 2:
        for tip in fallback.get("tips", []):
            _append_unique(tips, tip)
    for step in fallback.get("next_steps", []):
        _append_unique(next_steps, step)

    feedback = Feedback(
        overall=overall_text(overall_score, quality),
        strengths=strengths[:MAX_STRENGTHS],
        improvements=improvements[:MAX_IMPROVEMENTS],
        specific_tips=tips[:MAX_TIPS],
        next_steps=next_steps[:MAX_NEXT_STEPS],
    )
    logger.info(
        f"建议生成完成: 优点={len(feedback.strengths)}, "
        f"改进项={len(feedback.improvements)}, 提示={len(feedback.specific_tips)}"
    )
    return feedback
