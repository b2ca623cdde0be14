"""
Label-detection image comparison used as the search fallback tier.

A label detector (Amazon Rekognition by default) returns named labels
with confidence scores in [0, 100] for each image. Two images are
compared by a confidence-weighted overlap of their label sets.

The whole component is optional: without AWS credentials, or with
SKIP_AMAZON_REKOGNITION=true, no detector is built and
``CloudVisionComparator.is_available()`` returns False.
"""

import os
import logging
from dataclasses import dataclass
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ProviderUnavailable, VisionProviderError
from .matcher import round_half_up

logger = logging.getLogger(__name__)

# Minimum similarity (percent) for a vision-tier match. Independent of
# HASH_MATCH_THRESHOLD even though both default to 60.
VISION_MATCH_THRESHOLD = float(os.environ.get("VISION_MATCH_THRESHOLD", "60"))

REKOGNITION_MAX_LABELS = int(os.environ.get("REKOGNITION_MAX_LABELS", "20"))
REKOGNITION_MIN_CONFIDENCE = float(os.environ.get("REKOGNITION_MIN_CONFIDENCE", "60"))

# Labels whose confidences differ by less than this are listed as common
EXPLANATION_CONFIDENCE_GAP = 30
KEYWORD_MIN_CONFIDENCE = 70
MAX_KEYWORDS = 10


@dataclass(frozen=True)
class Label:
    name: str
    confidence: float


@dataclass(frozen=True)
class VisionComparison:
    similarity: int
    explanation: str


class LabelDetector:
    """Interface for providers that detect labelled features in an image."""

    def detect_labels(self, image_bytes: bytes) -> List[Label]:
        raise NotImplementedError


class RekognitionLabelDetector(LabelDetector):
    """Label detection backed by Amazon Rekognition's DetectLabels."""

    def __init__(self, client,
                 max_labels: int = REKOGNITION_MAX_LABELS,
                 min_confidence: float = REKOGNITION_MIN_CONFIDENCE):
        self.client = client
        self.max_labels = max_labels
        self.min_confidence = min_confidence

    @classmethod
    def from_env(cls) -> Optional["RekognitionLabelDetector"]:
        """
        Build a detector from AWS environment variables.

        Returns:
            A detector, or None when Rekognition is disabled or the
            credentials are not configured.
        """
        if os.environ.get("SKIP_AMAZON_REKOGNITION", "false").lower() == "true":
            logger.info("Amazon Rekognition is disabled via SKIP_AMAZON_REKOGNITION=true")
            return None

        access_key = os.environ.get("AWS_ACCESS_KEY_ID")
        secret_key = os.environ.get("AWS_SECRET_ACCESS_KEY")
        region = os.environ.get("AWS_REGION", "us-east-1")

        if not access_key or not secret_key:
            logger.warning(
                "AWS credentials not configured. Image search fallback will be disabled."
            )
            return None

        client = boto3.client(
            "rekognition",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        logger.info(f"Amazon Rekognition initialised (region={region})")
        return cls(client)

    def detect_labels(self, image_bytes: bytes) -> List[Label]:
        try:
            response = self.client.detect_labels(
                Image={"Bytes": image_bytes},
                MaxLabels=self.max_labels,
                MinConfidence=self.min_confidence,
            )
        except (BotoCoreError, ClientError) as e:
            raise VisionProviderError(f"Rekognition DetectLabels failed: {e}") from e

        return [
            Label(name=item["Name"], confidence=float(item["Confidence"]))
            for item in response.get("Labels", [])
        ]


def calculate_label_similarity(labels_a: List[Label], labels_b: List[Label]) -> int:
    """
    Confidence-weighted overlap of two label sets, as a percentage.

    For every label in A with a same-named label in B, A's confidence is
    added to the match score, scaled by how close the two confidences
    are. The total is divided by the sum of all of A's confidences.

    Args:
        labels_a: Labels of the first image (the reference set).
        labels_b: Labels of the second image.

    Returns:
        Similarity in [0, 100]. Two label-free images score 100; a
        label-free image against a labelled one scores 0.
    """
    if not labels_a and not labels_b:
        return 100
    if not labels_a or not labels_b:
        return 0

    by_name = {}
    for label in labels_b:
        by_name.setdefault(label.name, label)

    match_score = 0.0
    total_possible = 0.0
    for label in labels_a:
        total_possible += label.confidence
        match = by_name.get(label.name)
        if match is not None:
            quality = max(0.0, 100 - abs(label.confidence - match.confidence)) / 100
            match_score += label.confidence * quality

    similarity = (match_score / total_possible) * 100 if total_possible > 0 else 0.0
    return round_half_up(min(100.0, max(0.0, similarity)))


def explain_common_labels(labels_a: List[Label], labels_b: List[Label]) -> str:
    common = [
        a.name for a in labels_a
        if any(b.name == a.name and abs(b.confidence - a.confidence) < EXPLANATION_CONFIDENCE_GAP
               for b in labels_b)
    ]
    if common:
        return f"Common features: {', '.join(common)}"
    return "No significant common features detected"


class CloudVisionComparator:
    """
    Compares images through a label detector.

    Every public call is gated by ``is_available()``; calling without a
    detector raises ProviderUnavailable.
    """

    def __init__(self, detector: Optional[LabelDetector] = None):
        self.detector = detector

    @classmethod
    def from_env(cls) -> "CloudVisionComparator":
        return cls(RekognitionLabelDetector.from_env())

    def is_available(self) -> bool:
        return self.detector is not None

    def _require(self):
        if not self.is_available():
            raise ProviderUnavailable(
                "Cloud vision provider is not configured. Set AWS credentials to enable it."
            )

    def compare(self, image_a: bytes, image_b: bytes) -> VisionComparison:
        """
        Compare two encoded images by their detected labels.

        Raises:
            ProviderUnavailable: If no detector is configured.
            VisionProviderError: If label detection fails.
        """
        self._require()

        labels_a = self.detector.detect_labels(image_a)
        labels_b = self.detector.detect_labels(image_b)

        similarity = calculate_label_similarity(labels_a, labels_b)
        explanation = explain_common_labels(labels_a, labels_b)

        logger.debug(f"Vision comparison complete. Similarity: {similarity}%")
        return VisionComparison(similarity=similarity, explanation=explanation)

    def analyze_image(self, image_bytes: bytes) -> str:
        """Describe an image as 'Label (N% confidence), ...'."""
        self._require()

        labels = self.detector.detect_labels(image_bytes)
        logger.info(f"Image analysis complete. Found {len(labels)} labels")

        description = ", ".join(
            f"{label.name} ({round_half_up(label.confidence)}% confidence)" for label in labels
        )
        return description or "No significant features detected"

    def generate_search_keywords(self, image_bytes: bytes) -> List[str]:
        """
        Lower-cased names of high-confidence labels, for text search.

        Returns an empty list if the provider call fails.
        """
        self._require()

        try:
            labels = self.detector.detect_labels(image_bytes)
        except VisionProviderError as e:
            logger.error(f"Error generating search keywords: {e}")
            return []

        keywords = [
            label.name.lower() for label in labels
            if label.confidence > KEYWORD_MIN_CONFIDENCE
        ]
        return keywords[:MAX_KEYWORDS]
