"""Tier routing.

Recall requests are recognised by pattern before any model call. Everything
else is classified by one cheap model call, then passed through guardrails:
deep research only on an explicit request, hybrid research only when the user
asks to research something, and low-confidence answers lowered one tier.
"""
from __future__ import annotations

import re

from loguru import logger

from medresearch.agents.base import ModelAgent, clamp
from medresearch.errors import RoutingError
from medresearch.models.research import CallMetrics, Query, RouterDecision, Tier
from medresearch.services.prompt_store import render_prompt

RECALL_PATTERNS = [
    # Past tense
    re.compile(p, re.IGNORECASE)
    for p in (
        r"neydi",
        r"ne\s+konuşmuştuk",
        r"ne\s+araştırmıştık",
        r"ne\s+bulmuştuk",
        r"ne\s+öğrenmiştik",
        r"ne\s+demiştik",
        r"ne\s+çıkmıştı",
        r"nasıldı",
        # Memory phrases
        r"hatırlıyor\s+musun",
        r"hatırla",
        r"hatırlat\s+bana",
        r"daha\s+önce",
        r"geçen\s+sefer",
        r"geçenlerde",
        # References to earlier material
        r"o\s+şey",
        r"şu\s+konu",
        r"o\s+araştırma",
        r"o\s+bilgi",
        r"\bdo\s+you\s+remember\b",
        r"\bremind\s+me\b",
        r"\bwe\s+(?:talked|discussed|researched)\s+(?:about\s+)?(?:earlier|before|last\s+time)\b",
        r"\bwhat\s+did\s+(?:we|you)\s+(?:find|say|discuss)\b",
        r"\blast\s+time\b",
    )
]

RECALL_FILLERS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"hatırlıyor\s+musun",
        r"hatırlat(?:\s+bana)?",
        r"hatırla",
        r"daha\s+önce",
        r"geçen\s+sefer",
        r"geçen",
        r"o\s+zaman",
        r"o\s+şey",
        r"neydi",
        r"nasıldı",
        r"\bşu\b",
        r"\bdo\s+you\s+remember\b",
        r"\bremind\s+me\s+(?:about|of)?\b",
        r"\blast\s+time\b",
        r"\bwhat\s+did\s+(?:we|you)\s+(?:find|say|discuss)\b",
    )
]

DEEP_TRIGGERS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"derinlemesine\s+(?:.*\s+)?araştır",
        r"dikkatlice\s+araştır",
        r"kapsamlı\s+(?:.*\s+)?araştır",
        r"detaylı\s+(?:.*\s+)?araştır",
        r"thoroughly\s+research",
        r"comprehensive\s+research",
        r"in-depth\s+research",
        r"deep\s+research",
        r"deep\s+dive",
    )
]

RESEARCH_KEYWORDS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"araştır",
        r"\bresearch\b",
        r"\blook\s+up\b",
        r"\bfind\s+studies\b",
        r"internetten.*bak",
        r"kontrol\s+eder\s+misin",
        r"\bfact[- ]check\b",
        r"\bverify\b",
    )
]

_TURKISH_CHARS = set("çğıöşüÇĞİÖŞÜ")
_TURKISH_WORDS = {
    "nedir", "ne", "nasıl", "mi", "mı", "mu", "mü", "ve", "ile", "için",
    "bir", "bu", "şeker", "araştır", "neden", "hangi", "var", "yok",
}


def detect_recall(text: str) -> bool:
    return any(pattern.search(text) for pattern in RECALL_PATTERNS)


def has_deep_trigger(text: str) -> bool:
    return any(pattern.search(text) for pattern in DEEP_TRIGGERS)


def has_research_keyword(text: str) -> bool:
    return any(pattern.search(text) for pattern in RESEARCH_KEYWORDS)


def extract_search_terms(text: str) -> str:
    cleaned = text
    for filler in RECALL_FILLERS:
        cleaned = filler.sub(" ", cleaned)
    cleaned = re.sub(r"[?!.,]+", " ", cleaned)
    return " ".join(cleaned.split())


def detect_language(text: str) -> str:
    if any(ch in _TURKISH_CHARS for ch in text):
        return "tr"
    words = set(re.findall(r"\w+", text.lower()))
    return "tr" if words & _TURKISH_WORDS else "en"


def apply_guardrails(
    tier: Tier,
    confidence: float,
    text: str,
    threshold: float,
) -> tuple[Tier, list[str]]:
    """Clamp a model-proposed tier; returns the tier and notes on what changed."""
    notes: list[str] = []
    deep = has_deep_trigger(text)
    if deep:
        if tier != Tier.DEEP:
            notes.append("explicit deep research request")
        return Tier.DEEP, notes
    if tier == Tier.DEEP:
        tier = Tier.HYBRID
        notes.append("deep research requires an explicit request")
    if tier == Tier.HYBRID and not has_research_keyword(text):
        tier = Tier.MODEL
        notes.append("no research request")
    if tier == Tier.RECALL:
        # Recall is decided by pattern; a model-only tier 0 has nothing to recall.
        tier = Tier.MODEL
        notes.append("recall not detected")
    if confidence < threshold and tier >= Tier.HYBRID:
        tier = Tier(max(int(tier) - 1, int(Tier.MODEL)))
        notes.append(f"low confidence {confidence:.2f}")
    return tier, notes


def _profile_block(query: Query) -> str:
    if not query.profile:
        return ""
    parts = []
    if query.profile.diabetes_type:
        parts.append(f"Diabetes type: {query.profile.diabetes_type}")
    if query.profile.medications:
        parts.append(f"Medications: {', '.join(query.profile.medications)}")
    return ("User profile: " + "; ".join(parts) + "\n") if parts else ""


def _history_block(query: Query) -> str:
    previous = query.last_user_turn()
    if not previous:
        return ""
    return f'Previous question: "{previous[:300]}"\n'


class QueryRouter(ModelAgent):
    name = "router"
    error = RoutingError

    def __init__(self, *args, confidence_threshold: float = 0.6, **kwargs):
        super().__init__(*args, **kwargs)
        self.confidence_threshold = confidence_threshold

    async def route(self, query: Query) -> RouterDecision:
        if detect_recall(query.text):
            return RouterDecision(
                tier=Tier.RECALL,
                reasoning="Question refers to an earlier conversation",
                confidence=1.0,
                is_recall_request=True,
                search_terms=extract_search_terms(query.text),
                metrics=CallMetrics(model="pattern"),
            )

        system = render_prompt("router.system")
        user = render_prompt(
            "router.user",
            question=query.text,
            profile_block=_profile_block(query),
            history_block=_history_block(query),
        )
        payload, metrics = await self.ask_json(system, user)

        raw_tier = payload.get("tier")
        if isinstance(raw_tier, bool) or not isinstance(raw_tier, (int, float)) or int(raw_tier) not in (0, 1, 2, 3):
            raise RoutingError(f"router returned an invalid tier: {raw_tier!r}")

        confidence = clamp(payload.get("confidence"), default=0.0)
        tier, notes = apply_guardrails(
            Tier(int(raw_tier)),
            confidence,
            query.text,
            self.confidence_threshold,
        )
        reasoning = str(payload.get("reasoning") or "").strip()
        if notes:
            logger.info(f"Router adjusted tier {int(raw_tier)} -> {int(tier)} ({'; '.join(notes)})")
            reasoning = f"{reasoning} [adjusted: {'; '.join(notes)}]".strip()

        decision = RouterDecision(
            tier=tier,
            reasoning=reasoning,
            confidence=confidence,
            explicit_deep_request=has_deep_trigger(query.text),
            is_recall_request=False,
            metrics=metrics,
        )
        if bool(payload.get("explicitDeepRequest")) and not decision.explicit_deep_request:
            logger.debug("Router flagged a deep request without a trigger phrase; ignoring")
        return decision
