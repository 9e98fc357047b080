"""
HTTP client for the external face comparison service.

The comparator accepts two base64 data URLs and returns a similarity
percentage with its own match verdict. Local threshold gating happens in
the face match service, not here.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import httpx

from src.config import settings

logger = logging.getLogger(__name__)

COMPARE_PATH = "/api/compare-faces"
DEFAULT_METHOD = "face_recognition"


class FaceMatchError(Exception):
    """Base exception for face comparison failures."""
    pass


class InvalidInput(FaceMatchError):
    """Raised when an input image is missing or cannot be decoded."""
    pass


class ComparisonServiceError(FaceMatchError):
    """Raised when the comparator rejects the request or reports failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(FaceMatchError):
    """Raised when the comparator cannot be reached."""
    pass


@dataclass(frozen=True)
class ComparatorVerdict:
    """Raw comparator response, before rounding and gating."""

    match_percentage: float
    is_match: bool
    method: str


class FaceComparatorClient:
    """
    Async client for the face comparison HTTP endpoint.

    Owns an httpx.AsyncClient unless one is injected.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize comparator client.

        Args:
            base_url: Comparator base URL (default: settings.comparator_url)
            timeout: Request timeout in seconds (default: settings.comparator_timeout)
            client: Pre-built httpx client, mainly for tests
        """
        self.base_url = (base_url or settings.comparator_url).rstrip("/")
        self.timeout = timeout or settings.comparator_timeout
        self._client = client
        self._owns_client = client is None

        logger.info(f"Initialized face comparator client for {self.base_url}")

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "FaceComparatorClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def compare(self, id_image: str, live_image: str) -> ComparatorVerdict:
        """
        Compare a document photo with a live photo.

        Args:
            id_image: Document image as a data URL
            live_image: Live image as a data URL

        Returns:
            ComparatorVerdict with the raw percentage and verdict

        Raises:
            InvalidInput: If either image is missing
            TransportError: If the comparator is unreachable or times out
            ComparisonServiceError: If the comparator returns an error or failure
        """
        if not id_image or not live_image:
            raise InvalidInput("Both id_image and live_image are required")

        await self.connect()
        url = f"{self.base_url}{COMPARE_PATH}"

        try:
            response = await self._client.post(
                url,
                json={"id_image": id_image, "live_image": live_image},
                timeout=self.timeout
            )
        except httpx.TransportError as e:
            logger.error(f"Face comparator unreachable at {url}: {e}")
            raise TransportError(f"Face comparison service unavailable: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not response.is_success:
            message = body.get("error") or f"Comparator error: {response.status_code}"
            logger.error(f"Face comparator returned {response.status_code}: {message}")
            raise ComparisonServiceError(message, status_code=response.status_code)

        if not body.get("success"):
            message = body.get("error") or "Face comparison failed"
            logger.warning(f"Face comparator reported failure: {message}")
            raise ComparisonServiceError(message, status_code=response.status_code)

        percentage = body.get("match_percentage")
        if not isinstance(percentage, (int, float)) or isinstance(percentage, bool):
            raise ComparisonServiceError(
                "Comparator response is missing match_percentage",
                status_code=response.status_code
            )
        try:
            percentage = float(percentage)
        except OverflowError:
            percentage = math.inf
        if not math.isfinite(percentage):
            logger.error(f"Face comparator returned non-finite match_percentage: {percentage}")
            raise ComparisonServiceError(
                "Comparator returned a non-finite match_percentage",
                status_code=response.status_code
            )

        verdict = ComparatorVerdict(
            match_percentage=percentage,
            is_match=bool(body.get("is_match")),
            method=body.get("method") or DEFAULT_METHOD
        )
        logger.info(
            f"Comparator verdict: {verdict.match_percentage:.1f}% match={verdict.is_match} ({verdict.method})"
        )
        return verdict
