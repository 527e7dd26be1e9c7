import asyncio
import json

import httpx
import pytest

from audit_proxy.core import AuditVerdict
from audit_proxy.crypto import DecryptionError, decrypt_text, encrypt_text
from audit_proxy.notify import Notifier

VERDICT = AuditVerdict(
    status="done", verdict="malicious", rule_id="R7", description="bad words", match_string="evil",
)


def test_encrypted_text_round_trips_with_same_secret():
    token = encrypt_text("sk-secret", "pw", "salt")
    assert "sk-secret" not in token
    assert decrypt_text(token, "pw", "salt") == "sk-secret"


def test_decrypt_requires_same_secret():
    token = encrypt_text("sk-secret", "pw", "salt")
    with pytest.raises(DecryptionError):
        decrypt_text(token, "other", "salt")
    with pytest.raises(DecryptionError):
        decrypt_text(token, "pw", "pepper")


def test_notification_hides_credential_and_transcript(notifier, services):
    sent = asyncio.run(notifier.notify_violation(
        target="https://api.example.com/v1/chat/completions",
        credential="sk-secret",
        model="gpt-test",
        verdict=VERDICT,
        transcript="user: something evil",
        violation_count=2,
        banned=False,
    ))

    assert sent is True
    (call,) = services.notify_calls
    payload = json.loads(call.content)
    assert payload["appToken"] == "AT_test"
    assert payload["uids"] == ["UID_test"]
    assert "sk-secret" not in payload["content"]
    assert "something evil" not in payload["content"]
    assert "R7" in payload["content"]
    assert "https://proxy.test/decrypt?data=" in payload["content"]


def test_notification_skipped_without_channel(http_client, services):
    quiet = Notifier(http_client, app_token="", uid="", password="", salt="", deploy_domain="https://proxy.test")
    assert quiet.enabled is False
    assert asyncio.run(quiet.notify_violation("t", "sk", None, VERDICT, "", 1, False)) is False
    assert services.notify_calls == []


def test_notification_failure_is_not_raised(http_client):
    def refuse(request):
        raise httpx.ConnectError("down", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    n = Notifier(client, app_token="AT", uid="UID", password="pw", salt="s", deploy_domain="https://p")
    assert asyncio.run(n.notify_violation("t", "sk", "m", VERDICT, "x", 1, True)) is False
