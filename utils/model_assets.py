"""
Model asset resolution and download.

Both detector backends load binary assets that may live on a public CDN, on a
self-hosted mirror, or on local disk:

- The primary classifier reads a JSON model description, weight shards and a
  label sidecar, all resolved relative to the description URL.
- The MediaPipe landmarkers each need one .task bundle. Each bundle has an
  ordered list of candidate URLs (operator override, mirror, public defaults),
  tried in turn until one loads.

Remote files are downloaded with requests into a local cache so a restart does
not re-download them.
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urljoin, urlparse

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEDIAPIPE_MODELS_BASE = "https://storage.googleapis.com/mediapipe-models"


class AssetFetchError(Exception):
    """A remote or local asset could not be retrieved."""


class LandmarkerInitError(Exception):
    """Every candidate URL for a landmark model failed to load."""

    def __init__(self, kind: str, attempts: Sequence[Tuple[str, str]]):
        self.kind = kind
        self.attempts = list(attempts)
        tried = "; ".join(f"{url} ({err})" for url, err in self.attempts) or "no candidates configured"
        super().__init__(f"{kind} landmarker failed to initialize. Tried: {tried}")

    @property
    def attempted_urls(self) -> List[str]:
        return [url for url, _ in self.attempts]


@dataclass(frozen=True)
class LandmarkAsset:
    """One MediaPipe model bundle and its default locations."""
    kind: str  # "face" | "hand" | "pose"
    relative_path: str  # Path under the model bucket / a mirror
    default_urls: Tuple[str, ...]


FACE_LANDMARKER_ASSET = LandmarkAsset(
    kind="face",
    relative_path="face_landmarker/face_landmarker/float16/1/face_landmarker.task",
    default_urls=(
        f"{MEDIAPIPE_MODELS_BASE}/face_landmarker/face_landmarker/float16/1/face_landmarker.task",
        f"{MEDIAPIPE_MODELS_BASE}/face_landmarker/face_landmarker/float16/latest/face_landmarker.task",
    ),
)
HAND_LANDMARKER_ASSET = LandmarkAsset(
    kind="hand",
    relative_path="hand_landmarker/hand_landmarker/float16/1/hand_landmarker.task",
    default_urls=(
        f"{MEDIAPIPE_MODELS_BASE}/hand_landmarker/hand_landmarker/float16/1/hand_landmarker.task",
        f"{MEDIAPIPE_MODELS_BASE}/hand_landmarker/hand_landmarker/float16/latest/hand_landmarker.task",
    ),
)
POSE_LANDMARKER_ASSET = LandmarkAsset(
    kind="pose",
    relative_path="pose_landmarker/pose_landmarker_lite/float16/1/pose_landmarker_lite.task",
    default_urls=(
        f"{MEDIAPIPE_MODELS_BASE}/pose_landmarker/pose_landmarker_lite/float16/1/pose_landmarker_lite.task",
        f"{MEDIAPIPE_MODELS_BASE}/pose_landmarker/pose_landmarker_lite/float16/latest/pose_landmarker_lite.task",
    ),
)


def is_remote(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


def resolve_relative(base_url: str, relative: str) -> str:
    """Resolve a path relative to a description URL or local description path."""
    if is_remote(relative) or os.path.isabs(relative):
        return relative
    if is_remote(base_url):
        return urljoin(base_url, relative)
    return os.path.join(os.path.dirname(base_url), relative)


def candidate_urls(
    asset: LandmarkAsset,
    model_url: Optional[str] = None,
    base_url: Optional[str] = None,
) -> List[str]:
    """
    Ordered, de-duplicated candidate URLs for a landmark model.

    Order: explicit model URL override, the asset under the mirror base URL,
    then the public defaults.
    """
    ordered: List[str] = []
    if model_url:
        ordered.append(model_url)
    if base_url:
        ordered.append(f"{base_url.rstrip('/')}/{asset.relative_path}")
    ordered.extend(asset.default_urls)
    seen = set()
    out = []
    for url in ordered:
        if url not in seen:
            seen.add(url)
            out.append(url)
    return out


def cache_path_for(url: str, cache_dir: str) -> str:
    """Stable cache file name: short URL hash + original basename."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:12]
    name = os.path.basename(urlparse(url).path) or "asset"
    return os.path.join(cache_dir, f"{digest}-{name}")


def fetch_asset(url: str, cache_dir: str, timeout_sec: float = 30.0, dest_path: Optional[str] = None) -> str:
    """
    Return a local path for url, downloading it first if it is remote.

    Args:
        url: http(s) URL or local path
        cache_dir: Directory for downloaded files
        timeout_sec: Per-request timeout
        dest_path: Exact destination (used for ONNX external-data shards,
            which must sit next to the model under their original names)

    Raises:
        AssetFetchError: Missing local file, HTTP error, or network failure
    """
    if not is_remote(url):
        if not os.path.isfile(url):
            raise AssetFetchError(f"file not found: {url}")
        if dest_path and os.path.abspath(dest_path) != os.path.abspath(url):
            os.makedirs(os.path.dirname(dest_path), exist_ok=True)
            with open(url, "rb") as src, open(dest_path, "wb") as dst:
                dst.write(src.read())
            return dest_path
        return url

    path = dest_path or cache_path_for(url, cache_dir)
    if os.path.isfile(path) and os.path.getsize(path) > 0:
        return path
    os.makedirs(os.path.dirname(path), exist_ok=True)
    logger.info("Downloading %s -> %s", url, path)
    tmp_path = path + ".part"
    try:
        with requests.get(url, stream=True, timeout=timeout_sec) as r:
            r.raise_for_status()
            with open(tmp_path, "wb") as f:
                for chunk in r.iter_content(chunk_size=1 << 16):
                    if chunk:
                        f.write(chunk)
        os.replace(tmp_path, path)
    except (requests.RequestException, OSError) as e:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise AssetFetchError(f"download failed for {url}: {e}") from e
    return path


def read_json_asset(url: str, timeout_sec: float = 30.0) -> Any:
    """
    Fetch and parse a JSON document (not cached; descriptions are small).

    Raises:
        AssetFetchError: Retrieval failed
        ValueError: Body is not valid JSON
    """
    if is_remote(url):
        try:
            r = requests.get(url, timeout=timeout_sec)
            r.raise_for_status()
        except requests.RequestException as e:
            raise AssetFetchError(f"request failed for {url}: {e}") from e
        return json.loads(r.text)
    if not os.path.isfile(url):
        raise AssetFetchError(f"file not found: {url}")
    with open(url, "r", encoding="utf-8") as f:
        return json.load(f)


def load_with_candidates(
    kind: str,
    candidates: Sequence[str],
    factory: Callable[[str], T],
    cache_dir: str,
    timeout_sec: float = 30.0,
) -> Tuple[T, str]:
    """
    Try each candidate URL in order until factory(local_path) succeeds.

    Returns:
        (created object, URL that worked)

    Raises:
        LandmarkerInitError: Listing every URL attempted and why it failed
    """
    attempts: List[Tuple[str, str]] = []
    for url in candidates:
        try:
            path = fetch_asset(url, cache_dir, timeout_sec)
            obj = factory(path)
            if attempts:
                logger.info("%s landmarker loaded from %s after %d failed candidate(s)", kind, url, len(attempts))
            return obj, url
        except Exception as e:
            logger.warning("%s landmarker candidate failed: %s (%s)", kind, url, e)
            attempts.append((url, str(e)))
    raise LandmarkerInitError(kind, attempts)
