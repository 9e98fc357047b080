"""
Face match orchestration.

Sends a document image and a live image to the comparator and turns the
response into a gated MatchResult. A result is a match only when the
comparator agrees and the rounded percentage reaches the local threshold.
"""

import logging
import time
from typing import Optional

from src.clients.comparator_client import (
    FaceComparatorClient,
    FaceMatchError,
    InvalidInput,
)
from src.config import settings
from src.models.internal_models import MatchResult
from src.observability import record_face_match_metrics, record_match_disagreement
from src.utils.image_utils import ImageProcessingError, load_image, to_data_url

logger = logging.getLogger(__name__)


class FaceMatchService:
    """Decision layer over the face comparator."""

    def __init__(self, comparator: FaceComparatorClient, threshold: Optional[int] = None):
        """
        Initialize face match service.

        Args:
            comparator: Comparator client used for each attempt
            threshold: Minimum match percentage (default: settings.match_threshold)
        """
        self.comparator = comparator
        self.threshold = settings.match_threshold if threshold is None else threshold

        logger.info(f"Face match service initialized with threshold: {self.threshold}%")

    async def compare(
        self,
        document_image: bytes,
        live_image: bytes,
        artifact_id: Optional[str] = None
    ) -> MatchResult:
        """
        Compare a document photo with a live photo.

        Args:
            document_image: Encoded document image
            live_image: Encoded live image
            artifact_id: Id of the live photo the result belongs to

        Returns:
            MatchResult gated by the local threshold

        Raises:
            InvalidInput: If an image is empty or cannot be decoded (no request is made)
            ComparisonServiceError: If the comparator reports an error
            TransportError: If the comparator is unreachable
        """
        for label, image in (("document", document_image), ("live", live_image)):
            if not image:
                raise InvalidInput(f"The {label} image is empty")
            try:
                load_image(image)
            except ImageProcessingError as e:
                raise InvalidInput(f"The {label} image could not be decoded: {e}")

        start_time = time.time()
        try:
            verdict = await self.comparator.compare(to_data_url(document_image), to_data_url(live_image))
        except FaceMatchError as e:
            logger.error(f"Face comparison failed ({type(e).__name__}): {e}")
            record_face_match_metrics(False, time.time() - start_time, None, None)
            raise

        result = MatchResult.from_comparator(
            match_percentage=verdict.match_percentage,
            verdict=verdict.is_match,
            method=verdict.method,
            threshold=self.threshold,
            artifact_id=artifact_id
        )

        meets_threshold = result.match_percentage >= self.threshold
        if verdict.is_match != meets_threshold:
            logger.warning(
                f"Comparator verdict ({verdict.is_match}) disagrees with threshold check "
                f"({result.match_percentage}% vs {self.threshold}%); treating as no match"
            )
            record_match_disagreement(verdict.is_match, result.match_percentage, self.threshold)

        record_face_match_metrics(True, time.time() - start_time, result.match_percentage, result.is_match)
        logger.info(f"Face match result: {result.match_percentage}% match={result.is_match}")
        return result
