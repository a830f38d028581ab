# printflow/services/catalog_client.py
from printflow.utils.http import send
from printflow.utils.logging import get_logger
from printflow.utils.retry import http_retry
from printflow.utils.settings import CATALOG_SERVICE_URL

logger = get_logger(__name__)


class CatalogClient:
    def __init__(self, base_url: str | None = None, timeout: int = 2):
        self.base_url = (base_url or CATALOG_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    @http_retry()
    def fetch_variant(self, variant_id: int) -> dict:
        """Variant with ``price_minor`` (integer minor units) and ``currency``."""
        url = f"{self.base_url}/variants/{variant_id}"
        logger.info(f"CatalogClient GET {url}")

        resp = send("GET", url, timeout=self.timeout)
        return resp.json()
