import logging
from typing import Optional
from urllib.parse import quote

import httpx

from audit_proxy.core import AuditVerdict
from audit_proxy.crypto import encrypt_text

logger = logging.getLogger(__name__)

WXPUSHER_SEND_URL = "https://wxpusher.zjiecode.com/api/send/message"
CONTENT_TYPE_MARKDOWN = 3


class Notifier:
    """
    Sends a violation alert to the operator's WxPusher channel.

    The caller credential and the message transcript are encrypted before
    they leave the process; the alert only carries links to the decrypt page.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        app_token: str,
        uid: str,
        password: str,
        salt: str,
        deploy_domain: str,
        send_url: str = WXPUSHER_SEND_URL,
    ):
        self.client = client
        self.app_token = app_token
        self.uid = uid
        self.password = password
        self.salt = salt
        self.deploy_domain = deploy_domain.rstrip("/")
        self.send_url = send_url

    @property
    def enabled(self) -> bool:
        return bool(self.app_token and self.uid and self.password)

    def decrypt_link(self, token: str) -> str:
        return f"{self.deploy_domain}/decrypt?data={quote(token, safe='')}"

    def build_message(
        self,
        target: str,
        credential: str,
        model: str,
        verdict: AuditVerdict,
        transcript: str,
        violation_count: Optional[int],
        banned: bool,
    ) -> str:
        enc_credential = encrypt_text(credential, self.password, self.salt)
        enc_transcript = encrypt_text(transcript, self.password, self.salt)
        lines = [
            "## Content audit violation",
            f"- Target: {target}",
            f"- Model: {model or 'unknown'}",
            f"- Verdict: {verdict.verdict}",
            f"- Rule: {verdict.rule_id or '-'}",
            f"- Matched: {verdict.match_string or '-'}",
            f"- Description: {verdict.description or '-'}",
            f"- Violations: {violation_count if violation_count is not None else 'unknown'}" + (" (banned)" if banned else ""),
            f"- [Credential]({self.decrypt_link(enc_credential)})",
            f"- [Transcript]({self.decrypt_link(enc_transcript)})",
        ]
        return "\n".join(lines)

    async def notify_violation(
        self,
        target: str,
        credential: str,
        model: Optional[str],
        verdict: AuditVerdict,
        transcript: str,
        violation_count: Optional[int],
        banned: bool,
    ) -> bool:
        if not self.enabled:
            logger.debug("notification channel not configured, skipping alert for %s", target)
            return False

        try:
            content = self.build_message(target, credential, model or "", verdict, transcript, violation_count, banned)
            resp = await self.client.post(
                self.send_url,
                json={
                    "appToken": self.app_token,
                    "content": content,
                    "summary": f"Audit violation on {target}",
                    "contentType": CONTENT_TYPE_MARKDOWN,
                    "uids": [self.uid],
                },
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("violation alert for %s failed: %s", target, e)
            return False

        if not resp.is_success:
            logger.warning("violation alert for %s rejected with status %s", target, resp.status_code)
            return False
        return True
