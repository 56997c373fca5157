"""
AI analysis module for the pipeline.

Sends images to an OpenAI vision model and returns a structured
description, caption and keyword list. Provides:
- JSON response parsing and validation
- Retries with capped exponential backoff
- A minimum interval between requests
- A fixed fallback analysis for degraded operation
"""

import base64
import json
import logging
import re
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from openai import OpenAI

from pipeline.formats import get_mime_type
from pipeline.settings import AnalyzerSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
MAX_BACKOFF_SECONDS = 10

SYSTEM_PROMPT = (
    "You are a professional photo librarian. Describe images accurately "
    "for search and cataloguing."
)

ANALYSIS_PROMPT = (
    "Analyze this image and respond with a JSON object only, using this structure:\n"
    "{\n"
    '  "description": "A detailed description of the image (2-3 sentences)",\n'
    '  "caption": "A short caption suitable for display (under 15 words)",\n'
    '  "keywords": ["5 to 15 lowercase search keywords"],\n'
    '  "confidence": 0.0\n'
    "}\n"
    "Cover subject matter, setting, colors, mood and composition. "
    "Confidence is a number between 0 and 1."
)


class AnalysisError(Exception):
    """Exception raised when image analysis fails."""
    pass


@dataclass
class AnalysisResult:
    """Structured analysis returned by the vision model."""
    description: str
    caption: str
    keywords: list[str] = field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


FALLBACK_ANALYSIS = AnalysisResult(
    description="Image analysis temporarily unavailable. Please try again later.",
    caption="Image uploaded successfully",
    keywords=["image", "photo", "upload", "content"],
    confidence=0.1,
)


def parse_analysis(text: str | None) -> AnalysisResult:
    """
    Parse a model reply into an AnalysisResult.

    The reply may wrap the JSON object in prose or a code fence.

    Args:
        text: Raw reply content.

    Returns:
        Validated AnalysisResult.

    Raises:
        AnalysisError: If no valid analysis object is found.
    """
    if not text:
        raise AnalysisError("Empty response from vision model")

    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise AnalysisError("No JSON object found in model response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AnalysisError(f"Invalid JSON in model response: {e}") from e

    description = data.get("description")
    caption = data.get("caption")
    keywords = data.get("keywords")

    if not isinstance(description, str) or not isinstance(caption, str):
        raise AnalysisError("Response is missing description or caption")
    if not isinstance(keywords, list):
        raise AnalysisError("Response keywords must be a list")

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = DEFAULT_CONFIDENCE
    confidence = min(max(float(confidence), 0.0), 1.0)

    return AnalysisResult(
        description=description.strip(),
        caption=caption.strip(),
        keywords=[str(k).strip().lower() for k in keywords if str(k).strip()],
        confidence=confidence,
    )


class VisionAnalyzer:
    """
    Image analysis using the OpenAI Vision API.

    One instance is shared by all enrichment workers; the request
    interval is enforced across them.
    """

    def __init__(
        self,
        client: OpenAI | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        min_request_interval: float | None = None,
        detail: str = "high"
    ):
        """
        Initialize the analyzer.

        Args:
            client: OpenAI client (created on first use if omitted, which
                    reads OPENAI_API_KEY and OPENAI_BASE_URL).
            model: Vision model name.
            max_retries: Attempts per image before giving up.
            min_request_interval: Minimum seconds between API requests.
            detail: Image detail level for API ("low", "high", "auto").
        """
        settings = AnalyzerSettings()
        self._client = client
        self.model = model or settings.model
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.min_request_interval = (
            min_request_interval if min_request_interval is not None
            else settings.min_request_interval
        )
        self.detail = detail

        self._rate_lock = threading.Lock()
        self._last_request = 0.0

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def analyze(
        self,
        image_bytes: bytes,
        mime_type: str = "image/jpeg",
        use_fallback: bool = False,
        prompt: str | None = None
    ) -> AnalysisResult:
        """
        Analyze an image.

        Args:
            image_bytes: Encoded image.
            mime_type: MIME type of image_bytes. Non-image types are sent
                       as image/jpeg.
            use_fallback: Return the fixed fallback analysis without
                          calling the API.
            prompt: Instruction text sent with the image in place of the
                    default analysis prompt.

        Returns:
            AnalysisResult.

        Raises:
            AnalysisError: If analysis fails after all retries.
        """
        if use_fallback:
            logger.debug("Fallback mode enabled, returning placeholder analysis")
            return AnalysisResult(**FALLBACK_ANALYSIS.to_dict())

        if not image_bytes:
            raise AnalysisError("No image data to analyze")

        if not mime_type or not mime_type.startswith("image/"):
            mime_type = "image/jpeg"

        data_url = f"data:{mime_type};base64," + base64.b64encode(image_bytes).decode()

        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                self._wait_for_slot()
                result = parse_analysis(self._request(data_url, prompt or ANALYSIS_PROMPT))
                logger.debug(
                    f"Analysis complete: {len(result.keywords)} keywords, "
                    f"confidence {result.confidence:.2f}"
                )
                return result

            except Exception as e:
                last_error = e
                logger.warning(
                    f"Analysis attempt {attempt}/{self.max_retries} failed: {e}"
                )
                if attempt < self.max_retries:
                    time.sleep(min(2 ** (attempt - 1), MAX_BACKOFF_SECONDS))

        raise AnalysisError(
            f"Analysis failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    def analyze_path(self, path: str | Path, use_fallback: bool = False) -> AnalysisResult:
        """
        Analyze an image file.

        Args:
            path: Path to the image file.
            use_fallback: Return the fallback analysis without calling the API.

        Returns:
            AnalysisResult.

        Raises:
            FileNotFoundError: If file doesn't exist.
            AnalysisError: If analysis fails after all retries.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Image not found: {path}")
        return self.analyze(path.read_bytes(), get_mime_type(path), use_fallback)

    def _request(self, data_url: str, prompt: str = ANALYSIS_PROMPT) -> str | None:
        """Make one vision API call and return the reply text."""
        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=500,
            temperature=0.2,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": data_url, "detail": self.detail},
                        },
                    ],
                },
            ],
        )
        return response.choices[0].message.content

    def _wait_for_slot(self) -> None:
        """Block until min_request_interval has passed since the last request."""
        with self._rate_lock:
            elapsed = time.monotonic() - self._last_request
            if elapsed < self.min_request_interval:
                time.sleep(self.min_request_interval - elapsed)
            self._last_request = time.monotonic()
