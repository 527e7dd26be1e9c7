import logging
from typing import Optional

import httpx

from audit_proxy.core import AuditVerdict, classifier_query

logger = logging.getLogger(__name__)


class ClassifierClient:
    """Thin client for the remote content classifier. Never raises."""

    def __init__(self, client: httpx.AsyncClient, base_url: str):
        self.client = client
        self.base_url = base_url.rstrip("/")

    async def classify(self, text: str) -> Optional[AuditVerdict]:
        endpoint, word = classifier_query(text)
        url = f"{self.base_url}{endpoint}"
        try:
            resp = await self.client.get(url, params={"word": word}, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error("classifier request to %s failed: %s", url, e)
            return None

        if not resp.is_success:
            logger.error("classifier returned status %s", resp.status_code)
            return None

        try:
            payload = resp.json()
        except ValueError as e:
            logger.error("classifier returned a non-JSON body: %s", e)
            return None

        verdict = AuditVerdict.from_payload(payload)
        if verdict is None:
            logger.error("classifier returned an unexpected payload: %r", payload)
        return verdict
