"""
Language detection for the persistence gate.

Sessions are only saved when their speech is confirmed English. After enough words
have been recognized, a sample of the most recent words is posted to a remote
detector which answers with a confidence score (0-100); at or above the threshold
the session counts as English.

When the detector cannot be reached the outcome is LANGUAGE_ASSUME_ON_FAILURE
(default True): an outage must not silently discard every session.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from fluency.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LanguageDetector(ABC):
    @abstractmethod
    async def is_english(self, text: str) -> bool:
        """True if the sample is English. Implementations must not raise."""
        ...


class StaticLanguageDetector(LanguageDetector):
    """Fixed answer; used when language is known up front (and in tests)."""

    def __init__(self, result: bool = True) -> None:
        self._result = result
        self.samples: list[str] = []

    async def is_english(self, text: str) -> bool:
        self.samples.append(text)
        return self._result


class HttpLanguageDetector(LanguageDetector):
    """POST {"text": sample} to LANGUAGE_DETECTION_URL; response {"confidence": 0-100}."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        settings = settings or get_settings()
        self._url = settings.LANGUAGE_DETECTION_URL
        self._threshold = settings.LANGUAGE_CONFIDENCE_THRESHOLD
        self._max_chars = settings.LANGUAGE_MAX_CHARS
        self._timeout = settings.LANGUAGE_TIMEOUT_SECONDS
        self._assume_on_failure = settings.LANGUAGE_ASSUME_ON_FAILURE
        self._client = client

    async def _post(self, payload: dict) -> dict:
        if self._client is not None:
            resp = await self._client.post(self._url, json=payload, timeout=self._timeout)
            resp.raise_for_status()
            return resp.json()
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._url, json=payload)
            resp.raise_for_status()
            return resp.json()

    async def is_english(self, text: str) -> bool:
        sample = (text or "")[: self._max_chars]
        if not sample.strip():
            return True
        try:
            data = await self._post({"text": sample})
            confidence = float(data.get("confidence", 0.0))
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning(
                "Language detection failed (%s); assuming English=%s", e, self._assume_on_failure
            )
            return self._assume_on_failure
        result = confidence >= self._threshold
        logger.info(
            "Language detection: confidence=%.1f threshold=%.1f english=%s cached=%s",
            confidence,
            self._threshold,
            result,
            data.get("cached"),
        )
        return result


def create_language_detector() -> Optional[LanguageDetector]:
    """HTTP detector when LANGUAGE_DETECTION_URL is set; otherwise None."""
    settings = get_settings()
    if not settings.LANGUAGE_DETECTION_URL:
        return None
    return HttpLanguageDetector(settings)
