"""Heuristic complexity scoring for routing turns between tiers."""

from __future__ import annotations

import math
import re

from agent.response import ComplexityResult


_CODE = re.compile(r"\b(code|program|script|function|implement|debug)\b", re.IGNORECASE)
_MULTI_STEP = re.compile(r"\b(and then|after that|step \d+|first|second|finally)\b", re.IGNORECASE)
_NUMBERED = re.compile(r"\d+\.\s+")
_CREATIVE = re.compile(r"\b(write|compose|create|draft|design)\b", re.IGNORECASE)
_RESEARCH = re.compile(r"\b(research|investigate|analyze|explain|describe)\b", re.IGNORECASE)
_MEMORY = re.compile(r"\b(remember|recall|what did (i|we)|last time)\b", re.IGNORECASE)
_QUESTION_START = re.compile(
    r"^(what|how|why|when|where|who|which|is|are|can|do)\b", re.IGNORECASE
)
_COMMAND_START = re.compile(
    r"^(please\s+)?(do|make|run|open|show|list|find|get|set|start|stop|create|delete|write|fix|build|tell)\b",
    re.IGNORECASE,
)
_TOOL_PATTERNS = [
    re.compile(r"\b(file|folder|directory|read|write|delete|create|move|copy)\b", re.IGNORECASE),
    re.compile(r"\b(run|execute|command|terminal|shell|bash|powershell)\b", re.IGNORECASE),
    re.compile(r"\b(browse|browser|website|web page|url|open)\b", re.IGNORECASE),
    re.compile(r"\b(search|google|look up online)\b", re.IGNORECASE),
    re.compile(r"\b(git|github|commit|push|pull|branch)\b", re.IGNORECASE),
    re.compile(r"\b(database|sql|query|table)\b", re.IGNORECASE),
]


class ComplexityClassifier:
    """Score an utterance 0-100 and bucket it into simple/moderate/complex."""

    def __init__(self, simple_threshold: int = 30, complex_threshold: int = 60):
        if complex_threshold <= simple_threshold:
            raise ValueError("complex_threshold must be greater than simple_threshold")
        self.simple_threshold = simple_threshold
        self.complex_threshold = complex_threshold

    def classify(self, text: str) -> ComplexityResult:
        features = self.extract_features(text)
        score = self.score(features)

        if score < self.simple_threshold:
            level = "simple"
        elif score < self.complex_threshold:
            level = "moderate"
        else:
            level = "complex"

        return ComplexityResult(
            level=level,
            score=score,
            prefer_local=level == "simple",
            reason=self._reason(level, features),
            features=features,
        )

    @staticmethod
    def extract_features(text: str) -> dict:
        stripped = (text or "").strip()
        words = stripped.split()
        return {
            "word_count": len(words),
            "has_code_request": bool(_CODE.search(stripped)) or "```" in stripped,
            "has_multi_step": bool(_MULTI_STEP.search(stripped) or _NUMBERED.search(stripped)),
            "has_creative_request": bool(_CREATIVE.search(stripped)),
            "has_research_request": bool(_RESEARCH.search(stripped)),
            "has_memory_request": bool(_MEMORY.search(stripped)),
            "has_tool_request": any(p.search(stripped) for p in _TOOL_PATTERNS),
            "is_question": stripped.endswith("?") or bool(_QUESTION_START.search(stripped)),
            "is_command": bool(_COMMAND_START.search(stripped)),
            "estimated_tokens": math.ceil(len(stripped) / 4),
        }

    @staticmethod
    def score(features: dict) -> int:
        word_count = features["word_count"]
        if word_count < 5:
            score = 0
        elif word_count < 15:
            score = 10
        elif word_count < 30:
            score = 20
        else:
            score = 25

        if features["has_code_request"]:
            score += 30
        if features["has_multi_step"]:
            score += 20
        if features["has_creative_request"]:
            score += 25
        if features["has_research_request"]:
            score += 20
        if features["has_tool_request"]:
            score += 15
        if features["has_memory_request"]:
            score += 5

        # short factual questions are the cheapest turns
        if features["is_question"] and word_count < 10 and not features["has_code_request"]:
            score -= 15

        return max(0, min(100, score))

    @staticmethod
    def _reason(level: str, features: dict) -> str:
        triggers = []
        if features["has_code_request"]:
            triggers.append("code")
        if features["has_multi_step"]:
            triggers.append("multi-step")
        if features["has_creative_request"]:
            triggers.append("creative")
        if features["has_research_request"]:
            triggers.append("research")
        if features["has_tool_request"]:
            triggers.append("tool-like")
        if features["has_memory_request"]:
            triggers.append("memory")
        if not triggers:
            triggers.append("short query" if features["word_count"] < 15 else "plain text")
        return f"{level} ({', '.join(triggers)})"
