"""Enrichment stage: sentiment, complaint flag, keywords and embedding per post."""

import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List

from complaint_pipeline.inference.client import InferenceClient
from complaint_pipeline.jobs.models import WorkItem
from complaint_pipeline.stages.base import PipelineStage, StageParameters

NEGATIVE_TERMS = (
    "frustrat", "annoying", "broken", "hate", "terrible", "awful", "worst",
    "bug", "crash", "slow", "fail", "problem", "issue", "error", "useless",
)
POSITIVE_TERMS = ("love", "great", "awesome", "excellent", "amazing", "helpful", "fast")
STOPWORDS = frozenset(
    "the a an and or but if then this that with for from have has had was were are is "
    "not you your our they them their its it's i'm i've just what when where which who "
    "how why can could would should will about into over than there here been being "
    "very really also more most some any all my me we he she his her of to in on at by".split()
)
_WORD = re.compile(r"[a-z][a-z0-9'-]{2,}")


def heuristic_sentiment(text: str) -> float:
    lowered = text.lower()
    negatives = sum(1 for term in NEGATIVE_TERMS if term in lowered)
    positives = sum(1 for term in POSITIVE_TERMS if term in lowered)
    if negatives == positives:
        return 0.0
    score = (positives - negatives) / max(negatives + positives, 1)
    return round(max(-1.0, min(1.0, score)), 2)


def heuristic_keywords(text: str, limit: int = 8) -> List[str]:
    words = [w for w in _WORD.findall(text.lower()) if w not in STOPWORDS]
    return [word for word, _ in Counter(words).most_common(limit)]


def sentiment_label(score: float) -> str:
    if score > 0.2:
        return "positive"
    if score < -0.2:
        return "negative"
    return "neutral"


class EnrichStage(PipelineStage):
    name = "enrich"
    jobs_table = "enrich_jobs"
    guard_column = "enriched_at"
    columns = ("id", "title", "body", "platform", "created_at", "sentiment", "keywords")
    next_stage = "summarize"

    def __init__(self, inference: InferenceClient):
        self.inference = inference

    async def process(self, item: WorkItem, params: StageParameters) -> Dict[str, Any]:
        classification = await self.inference.classify(item.text)
        embedding = await self.inference.embed(item.text)
        return {
            "sentiment": classification["sentiment_score"],
            "sentiment_label": classification.get("sentiment_label")
            or sentiment_label(classification["sentiment_score"]),
            "is_complaint": classification["is_complaint"],
            "keywords": classification["keywords"][:8],
            "embedding": embedding,
            "enrich_status": "completed",
            "enriched_at": datetime.utcnow().isoformat(),
        }

    def fallback(self, item: WorkItem, params: StageParameters) -> Dict[str, Any]:
        score = heuristic_sentiment(item.text)
        return {
            "sentiment": score,
            "sentiment_label": sentiment_label(score),
            "is_complaint": score < 0,
            "keywords": heuristic_keywords(item.text),
            "embedding": None,
            "enrich_status": "fallback",
            "enriched_at": datetime.utcnow().isoformat(),
        }
