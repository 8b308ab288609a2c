import structlog
from typing import Any, Dict, Optional

from google.cloud import storage
from google.cloud.exceptions import GoogleCloudError, NotFound
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from marketplace_engine import config
from marketplace_engine.core.exceptions import NotFoundError, StorageError, ValidationError

logger = structlog.get_logger()


class ImageStore:
    """Read access to design images held in GCS or behind an HTTP(S) URL."""

    def __init__(self, gcs_client: Optional[storage.Client] = None, session: Optional[requests.Session] = None):
        self.gcs_client = gcs_client
        self.session = session or self._build_session()

        if self.gcs_client is None and config.USE_GCS:
            try:
                self.gcs_client = storage.Client()
                logger.info("GCS client initialized", bucket_name=config.GCS_BUCKET_NAME)
            except Exception as e:
                # Credentials are optional in development; gs:// fetches fail later with StorageError.
                logger.warning("GCS initialization failed, continuing without GCS", error=str(e))

        logger.info("Image store initialized", gcs_enabled=self.gcs_client is not None)

    @staticmethod
    def _build_session() -> requests.Session:
        """HTTP session with retry on transient upstream failures."""
        session = requests.Session()
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def fetch_image_bytes(self, reference: str) -> bytes:
        """
        Fetch raw image content for a stored design.

        Args:
            reference: gs://bucket/path or http(s):// URL

        Returns:
            The image bytes
        """
        logger.debug("Fetching image", reference=reference)

        if reference.startswith("gs://"):
            data = self._fetch_from_gcs(reference)
        elif reference.startswith(("http://", "https://")):
            data = self._fetch_from_http(reference)
        else:
            raise ValidationError(f"Unsupported image reference: {reference}")

        if len(data) > config.MAX_IMAGE_BYTES:
            raise ValidationError("Image exceeds maximum allowed size",
                                  details={"size": len(data), "max_size": config.MAX_IMAGE_BYTES})

        logger.info("Image fetched", reference=reference, size=len(data))
        return data

    def _fetch_from_gcs(self, reference: str) -> bytes:
        if self.gcs_client is None:
            raise StorageError("GCS is not configured")

        path_parts = reference[5:].split("/", 1)  # Remove gs://
        bucket_name = path_parts[0]
        blob_path = path_parts[1] if len(path_parts) > 1 else ""

        try:
            blob = self.gcs_client.bucket(bucket_name).blob(blob_path)
            return blob.download_as_bytes(timeout=config.IMAGE_FETCH_TIMEOUT)
        except NotFound:
            raise NotFoundError(f"Image not found: {reference}")
        except GoogleCloudError as e:
            logger.error("GCS download failed", reference=reference, error=str(e))
            raise StorageError(f"GCS download failed: {e}")

    def _fetch_from_http(self, reference: str) -> bytes:
        try:
            response = self.session.get(reference, timeout=config.IMAGE_FETCH_TIMEOUT)
        except requests.exceptions.RequestException as e:
            logger.error("Image download failed", reference=reference, error=str(e))
            raise StorageError(f"Image download failed: {e}")

        if response.status_code == 404:
            raise NotFoundError(f"Image not found: {reference}")
        if response.status_code >= 400:
            logger.error("Image download failed", reference=reference, status_code=response.status_code)
            raise StorageError(f"Image download failed: HTTP {response.status_code}")
        return response.content

    def health_check(self) -> Dict[str, Any]:
        """Check the reachability of the configured GCS bucket."""
        health = {"gcs": {"enabled": self.gcs_client is not None, "available": False, "error": None}}
        if self.gcs_client is not None:
            try:
                health["gcs"]["available"] = self.gcs_client.bucket(config.GCS_BUCKET_NAME).exists()
            except GoogleCloudError as e:
                health["gcs"]["error"] = str(e)
        return health
