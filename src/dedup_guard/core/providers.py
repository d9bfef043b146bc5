"""
Provider consensus: merge external similarity votes with the local
perceptual score.

Providers are optional and best-effort. A failing provider only loses its own
vote; with zero providers the consensus is the local score alone.
"""

import base64
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import build_http
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from dedup_guard.core.errors import ProviderFailure
from dedup_guard.core.models import DetectionMethod, SimilarityScore
from dedup_guard.core.perceptual import ImageFeatures, PerceptualEngine
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)

PathLike = Union[str, Path]

LOCAL_VOTE = "local"
UNKNOWN_PROVIDER_WEIGHT = 0.1
MAX_RGB_DISTANCE = math.sqrt(3) * 255


@dataclass(frozen=True)
class ProviderVote:
    provider: str
    similarity: float
    confidence: float
    weight: float


class SimilarityProvider(ABC):
    """An external service able to judge whether two images are the same."""

    name = "provider"

    @abstractmethod
    def compare(self, path_a: str, path_b: str) -> Tuple[float, float]:
        """
        Compare two images.

        Returns:
            (similarity, confidence), both in [0, 1]

        Raises:
            ProviderFailure: If no vote can be produced
        """


class RateLimiter:
    """Fixed-interval scheduler: successive calls are at least ``interval`` apart."""

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def wait(self) -> float:
        """
        Block until the next free slot.

        Returns:
            Seconds spent waiting
        """
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


def jaccard(items_a: Iterable[str], items_b: Iterable[str]) -> float:
    set_a = {item.lower() for item in items_a}
    set_b = {item.lower() for item in items_b}
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def rgb_similarity(color_a: Sequence[float], color_b: Sequence[float]) -> float:
    distance = math.sqrt(sum((a - b) ** 2 for a, b in zip(color_a, color_b)))
    return 1.0 - distance / MAX_RGB_DISTANCE


def palette_similarity(
    palette_a: List[Tuple[Tuple[float, float, float], float]],
    palette_b: List[Tuple[Tuple[float, float, float], float]],
) -> float:
    """
    Symmetric similarity of two weighted colour palettes.

    Each colour is matched to its closest counterpart in the other palette;
    the result averages both directions, weighted by colour share.
    """
    if not palette_a or not palette_b:
        return 0.0

    def _directed(src, dst) -> float:
        total = sum(weight for _, weight in src) or 1.0
        return sum(
            weight * max(rgb_similarity(color, other) for other, _ in dst)
            for color, weight in src
        ) / total

    return (_directed(palette_a, palette_b) + _directed(palette_b, palette_a)) / 2


class GoogleVisionProvider(SimilarityProvider):
    """Google Cloud Vision: compares labels, objects and dominant colours."""

    name = "google"
    CONFIDENCE = 0.95
    FEATURES = ("LABEL_DETECTION", "OBJECT_LOCALIZATION", "IMAGE_PROPERTIES")

    def __init__(
        self,
        api_key: str,
        timeout: float = 30,
        retry_attempts: int = 3,
        service: Any = None,
    ):
        """
        Initialize the provider.

        Args:
            api_key: Cloud Vision API key
            timeout: HTTP timeout in seconds
            retry_attempts: Retries for transient HTTP errors
            service: Prebuilt discovery service (built lazily when None)
        """
        self.api_key = api_key
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.service = service
        # httplib2 connections are not thread-safe
        self._lock = threading.Lock()
        self._annotations = lru_cache(maxsize=1024)(self._annotate)

    def _get_service(self) -> Any:
        if self.service is None:
            http = build_http()
            http.timeout = self.timeout
            self.service = build(
                "vision",
                "v1",
                developerKey=self.api_key,
                http=http,
                cache_discovery=False,
            )
        return self.service

    def _annotate(self, path: str) -> Dict[str, Any]:
        with open(path, "rb") as f:
            content = base64.b64encode(f.read()).decode("ascii")

        body = {
            "requests": [
                {
                    "image": {"content": content},
                    "features": [{"type": f, "maxResults": 50} for f in self.FEATURES],
                }
            ]
        }

        try:
            with self._lock:
                response = (
                    self._get_service()
                    .images()
                    .annotate(body=body)
                    .execute(num_retries=self.retry_attempts)
                )
        except HttpError as e:
            raise ProviderFailure(self.name, f"HTTP error: {e}") from e

        result = response.get("responses", [{}])[0]
        if "error" in result:
            raise ProviderFailure(self.name, result["error"].get("message", "unknown error"))
        return result

    @staticmethod
    def _palette(annotation: Dict[str, Any]) -> List[Tuple[Tuple[float, float, float], float]]:
        colors = (
            annotation.get("imagePropertiesAnnotation", {})
            .get("dominantColors", {})
            .get("colors", [])
        )
        palette = []
        for entry in colors[:5]:
            color = entry.get("color", {})
            rgb = (color.get("red", 0), color.get("green", 0), color.get("blue", 0))
            palette.append((rgb, entry.get("pixelFraction", entry.get("score", 0.0))))
        return palette

    def compare(self, path_a: str, path_b: str) -> Tuple[float, float]:
        annotation_a = self._annotations(path_a)
        annotation_b = self._annotations(path_b)

        parts = []
        if "labelAnnotations" in annotation_a or "labelAnnotations" in annotation_b:
            parts.append(
                jaccard(
                    (a["description"] for a in annotation_a.get("labelAnnotations", [])),
                    (a["description"] for a in annotation_b.get("labelAnnotations", [])),
                )
            )
        if (
            "localizedObjectAnnotations" in annotation_a
            or "localizedObjectAnnotations" in annotation_b
        ):
            parts.append(
                jaccard(
                    (o["name"] for o in annotation_a.get("localizedObjectAnnotations", [])),
                    (o["name"] for o in annotation_b.get("localizedObjectAnnotations", [])),
                )
            )
        palette_a, palette_b = self._palette(annotation_a), self._palette(annotation_b)
        if palette_a and palette_b:
            parts.append(palette_similarity(palette_a, palette_b))

        if not parts:
            raise ProviderFailure(self.name, "no comparable features returned")
        return sum(parts) / len(parts), self.CONFIDENCE


class AzureVisionProvider(SimilarityProvider):
    """Azure Computer Vision: compares objects, tags and colour analysis."""

    name = "azure"
    CONFIDENCE = 0.93
    API_VERSION = "3.2"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        timeout: float = 30,
        retry_attempts: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        if session is None:
            retry = Retry(
                total=retry_attempts,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset(["POST"]),
            )
            session = requests.Session()
            session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session = session
        self._analyses = lru_cache(maxsize=1024)(self._analyze)

    def _analyze(self, path: str) -> Dict[str, Any]:
        with open(path, "rb") as f:
            data = f.read()

        try:
            response = self.session.post(
                f"{self.endpoint}/vision/v{self.API_VERSION}/analyze",
                headers={
                    "Ocp-Apim-Subscription-Key": self.api_key,
                    "Content-Type": "application/octet-stream",
                },
                params={"visualFeatures": "Objects,Tags,Color"},
                data=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            raise ProviderFailure(self.name, str(e)) from e
        except ValueError as e:
            raise ProviderFailure(self.name, f"invalid JSON response: {e}") from e

    @staticmethod
    def _accent_rgb(analysis: Dict[str, Any]) -> Optional[Tuple[int, int, int]]:
        accent = analysis.get("color", {}).get("accentColor")
        if not accent or len(accent) != 6:
            return None
        try:
            return tuple(int(accent[i : i + 2], 16) for i in (0, 2, 4))
        except ValueError:
            return None

    def compare(self, path_a: str, path_b: str) -> Tuple[float, float]:
        analysis_a = self._analyses(path_a)
        analysis_b = self._analyses(path_b)

        parts = []
        if "objects" in analysis_a or "objects" in analysis_b:
            parts.append(
                jaccard(
                    (o["object"] for o in analysis_a.get("objects", [])),
                    (o["object"] for o in analysis_b.get("objects", [])),
                )
            )
        if "tags" in analysis_a or "tags" in analysis_b:
            parts.append(
                jaccard(
                    (t["name"] for t in analysis_a.get("tags", [])),
                    (t["name"] for t in analysis_b.get("tags", [])),
                )
            )
        if "color" in analysis_a and "color" in analysis_b:
            color_parts = [
                jaccard(
                    analysis_a["color"].get("dominantColors", []),
                    analysis_b["color"].get("dominantColors", []),
                )
            ]
            accent_a, accent_b = self._accent_rgb(analysis_a), self._accent_rgb(analysis_b)
            if accent_a and accent_b:
                color_parts.append(rgb_similarity(accent_a, accent_b))
            parts.append(sum(color_parts) / len(color_parts))

        if not parts:
            raise ProviderFailure(self.name, "no comparable features returned")
        return sum(parts) / len(parts), self.CONFIDENCE


class AwsRekognitionProvider(SimilarityProvider):
    """AWS Rekognition: compares detected labels and lines of text."""

    name = "aws"
    CONFIDENCE = 0.91
    MAX_LABELS = 50
    MIN_LABEL_CONFIDENCE = 70

    def __init__(
        self,
        client: Any = None,
        session: Optional[boto3.session.Session] = None,
        timeout: float = 30,
        retry_attempts: int = 3,
    ):
        """
        Initialize the provider.

        Args:
            client: Prebuilt Rekognition client (created from session when None)
            session: boto3 session carrying credentials and region
            timeout: Connect/read timeout in seconds
            retry_attempts: Attempts for throttled or transient failures
        """
        if client is None:
            session = session or boto3.session.Session()
            client = session.client(
                "rekognition",
                config=BotoConfig(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"max_attempts": retry_attempts, "mode": "standard"},
                ),
            )
        self.client = client
        self._detections = lru_cache(maxsize=1024)(self._detect)

    def _detect(self, path: str) -> Dict[str, Tuple[str, ...]]:
        with open(path, "rb") as f:
            image = {"Bytes": f.read()}

        try:
            labels = self.client.detect_labels(
                Image=image,
                MaxLabels=self.MAX_LABELS,
                MinConfidence=self.MIN_LABEL_CONFIDENCE,
            )
            text = self.client.detect_text(Image=image)
        except (BotoCoreError, ClientError) as e:
            raise ProviderFailure(self.name, str(e)) from e

        return {
            "labels": tuple(label["Name"] for label in labels.get("Labels", [])),
            # WORD detections repeat the words of each LINE
            "text": tuple(
                t["DetectedText"]
                for t in text.get("TextDetections", [])
                if t.get("Type", "LINE") == "LINE"
            ),
        }

    def compare(self, path_a: str, path_b: str) -> Tuple[float, float]:
        detected_a = self._detections(path_a)
        detected_b = self._detections(path_b)

        parts = [jaccard(detected_a["labels"], detected_b["labels"])]
        if detected_a["text"] or detected_b["text"]:
            parts.append(jaccard(detected_a["text"], detected_b["text"]))
        return sum(parts) / len(parts), self.CONFIDENCE


def build_providers(config: Config) -> List[SimilarityProvider]:
    """
    Construct the providers enabled in the configuration.

    A provider that is enabled but has no credentials is skipped with a
    warning; an empty list is a valid result.
    """
    providers: List[SimilarityProvider] = []
    timeout = config.get("providers.timeout", 30)
    retries = config.get("providers.retry_attempts", 3)

    if config.get("providers.google_vision.enabled", False):
        api_key = config.get_api_key("google_vision")
        if api_key:
            providers.append(GoogleVisionProvider(api_key, timeout, retries))
        else:
            logger.warning("Google Vision enabled but no API key configured; skipping")

    if config.get("providers.azure_vision.enabled", False):
        api_key = config.get_api_key("azure_vision")
        endpoint = config.get("providers.azure_vision.endpoint")
        if api_key and endpoint:
            providers.append(AzureVisionProvider(endpoint, api_key, timeout, retries))
        else:
            logger.warning("Azure Vision enabled but endpoint/API key missing; skipping")

    if config.get("providers.aws_rekognition.enabled", False):
        # Keys left unset fall back to the standard AWS credential chain
        session = boto3.session.Session(
            aws_access_key_id=config.get("providers.aws_rekognition.access_key_id"),
            aws_secret_access_key=config.get("providers.aws_rekognition.secret_access_key"),
            region_name=config.get("providers.aws_rekognition.region"),
        )
        if session.region_name and session.get_credentials() is not None:
            providers.append(AwsRekognitionProvider(session=session, timeout=timeout, retry_attempts=retries))
        else:
            logger.warning("AWS Rekognition enabled but region/credentials missing; skipping")

    logger.info(
        f"Similarity providers: {', '.join(p.name for p in providers) or 'local only'}"
    )
    return providers


class ProviderConsensus:
    """Weighted consensus of the local engine and external providers."""

    def __init__(
        self,
        config: Config,
        engine: PerceptualEngine,
        providers: Optional[Sequence[SimilarityProvider]] = None,
    ):
        """
        Initialize the consensus layer.

        Args:
            config: Configuration instance
            engine: Local perceptual engine
            providers: External providers to consult (may be empty)
        """
        self.engine = engine
        self.providers = list(providers or [])
        self.threshold = config.get("detection.similarity_threshold", 0.92)
        self.minimum_confidence = config.get("detection.minimum_confidence", 0.90)
        self.prefilter_threshold = config.get("detection.prefilter_threshold")
        self.weights: Dict[str, float] = config.get("providers.weights", {})

        delay = config.get("providers.request_delay", 0.2)
        self._semaphore = threading.BoundedSemaphore(
            config.get("providers.max_concurrent_requests", 3)
        )
        self._limiters = {p.name: RateLimiter(delay) for p in self.providers}

    def weight_for(self, name: str) -> float:
        return self.weights.get(name, UNKNOWN_PROVIDER_WEIGHT)

    def _query(self, provider: SimilarityProvider, path_a: str, path_b: str) -> ProviderVote:
        with self._semaphore:
            self._limiters[provider.name].wait()
            try:
                similarity, confidence = provider.compare(path_a, path_b)
            except ProviderFailure:
                raise
            except Exception as e:
                raise ProviderFailure(provider.name, str(e)) from e

        for value in (similarity, confidence):
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ProviderFailure(provider.name, f"out-of-range vote {value!r}")

        return ProviderVote(provider.name, float(similarity), float(confidence), self.weight_for(provider.name))

    def compare_features(
        self, features_a: ImageFeatures, features_b: ImageFeatures
    ) -> SimilarityScore:
        """
        Score a pair from precomputed local features plus provider votes.

        Never raises for decode or provider problems; with no votes at all the
        result is similarity 0 and confidence 0.
        """
        if features_b.path < features_a.path:
            features_a, features_b = features_b, features_a
        path_a, path_b = features_a.path, features_b.path

        if self.prefilter_threshold is not None and features_a.coarse_hash and features_b.coarse_hash:
            coarse = self.engine.coarse_similarity(features_a, features_b)
            if coarse < self.prefilter_threshold:
                return SimilarityScore(
                    path_a=path_a,
                    path_b=path_b,
                    similarity=round(coarse, 6),
                    confidence=self.engine.local_confidence,
                    method=DetectionMethod.PERCEPTUAL,
                    breakdown={"coarse_ahash": coarse},
                )

        votes: List[ProviderVote] = []
        breakdown: Dict[str, float] = {}

        local = self.engine.compare_features(features_a, features_b)
        if local is not None:
            votes.append(
                ProviderVote(LOCAL_VOTE, local.similarity, local.confidence, self.weight_for(LOCAL_VOTE))
            )
            breakdown.update({f"local.{k}": v for k, v in local.breakdown.items()})

        for provider in self.providers:
            try:
                vote = self._query(provider, path_a, path_b)
            except ProviderFailure as e:
                logger.warning(f"{e}; continuing without this vote")
                continue
            votes.append(vote)

        for vote in votes:
            breakdown[vote.provider] = vote.similarity

        method = (
            DetectionMethod.PROVIDER_CONSENSUS
            if any(v.provider != LOCAL_VOTE for v in votes)
            else DetectionMethod.PERCEPTUAL
        )

        total_weight = sum(v.weight for v in votes)
        if not votes or total_weight <= 0:
            return SimilarityScore(path_a, path_b, 0.0, 0.0, method, breakdown)

        similarity = sum(v.similarity * v.weight for v in votes) / total_weight
        confidence = sum(v.confidence * v.weight for v in votes) / total_weight

        return SimilarityScore(
            path_a=path_a,
            path_b=path_b,
            similarity=round(similarity, 6),
            confidence=round(confidence, 6),
            method=method,
            breakdown=breakdown,
        )

    def compare(self, path_a: PathLike, path_b: PathLike) -> SimilarityScore:
        """Extract features and score a pair."""
        return self.compare_features(self.engine.extract(path_a), self.engine.extract(path_b))

    def is_match(self, score: SimilarityScore) -> bool:
        return score.similarity >= self.threshold and score.confidence >= self.minimum_confidence
