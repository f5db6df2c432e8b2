"""Async client for the external inference API (classification, embeddings, summaries).

SDK-level retries are disabled; retrying is the resilient executor's job.
Every SDK failure is mapped onto the three-way error classification the
executor's retry policy is keyed on.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import numpy as np
import openai
from openai import AsyncOpenAI

from complaint_pipeline.config import settings
from complaint_pipeline.errors import (
    InferenceError,
    PermanentInferenceError,
    RateLimitedError,
    TransientServerError,
)
from complaint_pipeline.processing.text import chunk_text, clean_text

logger = logging.getLogger(__name__)

CLASSIFY_SYSTEM_PROMPT = (
    "You are a JSON-only classifier for social media posts. Return strictly valid JSON "
    "with these keys:\n"
    '- sentiment_label: "negative" | "neutral" | "positive"\n'
    "- sentiment_score: number in [-1, 1]\n"
    "- is_complaint: boolean (true if expressing frustration, problems, or complaints)\n"
    "- keywords: array of 3-8 relevant lowercase keywords/phrases from the text"
)

SUMMARY_SYSTEM_PROMPT = (
    "Summarize the user's complaint in one or two sentences. Name the product or "
    "workflow involved and the concrete problem. Do not add advice."
)


def map_openai_error(exc: Exception) -> InferenceError:
    """Translate an openai SDK exception into the pipeline's error classes."""
    if isinstance(exc, openai.RateLimitError):
        return RateLimitedError(str(exc), status_code=429)
    if isinstance(exc, openai.APIConnectionError):  # includes timeouts
        return TransientServerError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return TransientServerError(str(exc), status_code=exc.status_code)
        return PermanentInferenceError(str(exc), status_code=exc.status_code)
    return PermanentInferenceError(str(exc))


def combine_classifications(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge per-chunk classifications into one."""
    if len(results) == 1:
        return results[0]
    scores = [r["sentiment_score"] for r in results]
    average = sum(scores) / len(scores)
    if average > 0.2:
        label = "positive"
    elif average < -0.2:
        label = "negative"
    else:
        label = "neutral"
    keywords: List[str] = []
    for r in results:
        for keyword in r.get("keywords", []):
            if keyword not in keywords:
                keywords.append(keyword)
    return {
        "sentiment_label": label,
        "sentiment_score": round(average, 2),
        "is_complaint": any(r["is_complaint"] for r in results),
        "keywords": keywords[:8],
    }


class InferenceClient:
    """Thin wrapper around AsyncOpenAI."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        classification_model: str = settings.classification_model,
        summary_model: str = settings.summary_model,
        embedding_model: str = settings.embedding_model,
        timeout: float = settings.inference_timeout_seconds,
    ):
        api_key = api_key if api_key is not None else settings.openai_api_key
        if client is None and api_key:
            client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._client = client
        self.classification_model = classification_model
        self.summary_model = summary_model
        self.embedding_model = embedding_model
        if self._client is None:
            logger.warning("No OpenAI API key provided, stages will use fallback heuristics")

    @property
    def configured(self) -> bool:
        return self._client is not None

    def _require_client(self) -> AsyncOpenAI:
        if self._client is None:
            raise PermanentInferenceError("Inference API key not configured")
        return self._client

    async def _chat(self, model: str, system: str, text: str, **kwargs) -> str:
        client = self._require_client()
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": text},
                ],
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise PermanentInferenceError("Empty response from inference API")
        return content

    async def classify(self, text: str) -> Dict[str, Any]:
        cleaned = clean_text(text)
        if not cleaned:
            raise PermanentInferenceError("Nothing to classify after cleaning")

        chunks = chunk_text(cleaned, settings.classify_char_limit)[: settings.max_classify_chunks]
        results = []
        for chunk in chunks:
            content = await self._chat(
                self.classification_model,
                CLASSIFY_SYSTEM_PROMPT,
                chunk,
                response_format={"type": "json_object"},
                temperature=0.1,
                max_tokens=300,
            )
            results.append(self._parse_classification(content))
        return combine_classifications(results)

    @staticmethod
    def _parse_classification(content: str) -> Dict[str, Any]:
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise PermanentInferenceError(f"Classification is not valid JSON: {e}") from e
        if (
            not isinstance(parsed, dict)
            or not isinstance(parsed.get("sentiment_score"), (int, float))
            or not isinstance(parsed.get("is_complaint"), bool)
            or not isinstance(parsed.get("keywords"), list)
        ):
            raise PermanentInferenceError("Classification has an unexpected structure")
        parsed["sentiment_score"] = max(-1.0, min(1.0, float(parsed["sentiment_score"])))
        return parsed

    async def embed(self, text: str) -> List[float]:
        """Embed text; long text is chunked and the chunk vectors averaged."""
        client = self._require_client()
        cleaned = clean_text(text)
        if not cleaned:
            raise PermanentInferenceError("Nothing to embed after cleaning")

        chunks = chunk_text(cleaned, settings.embed_char_limit)
        try:
            response = await client.embeddings.create(model=self.embedding_model, input=chunks)
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        vectors = [d.embedding for d in response.data]
        if not vectors:
            raise PermanentInferenceError("Embedding response contained no vectors")
        if len(vectors) == 1:
            return list(vectors[0])
        return np.mean(np.asarray(vectors, dtype=float), axis=0).tolist()

    async def summarize(self, text: str) -> str:
        cleaned = clean_text(text)
        if not cleaned:
            raise PermanentInferenceError("Nothing to summarize after cleaning")
        content = await self._chat(
            self.summary_model,
            SUMMARY_SYSTEM_PROMPT,
            chunk_text(cleaned, settings.classify_char_limit)[0],
            temperature=0.3,
            max_tokens=200,
        )
        return content.strip()
