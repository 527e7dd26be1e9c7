import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from audit_proxy.errors import ConfigError

APP_ROOT = Path(__file__).resolve().parent.parent

PROXY_PREFIX = os.environ.get("PROXY_PREFIX", "/proxy").rstrip("/")
AUDIT_API_BASE = os.environ.get("AUDIT_API_BASE", "https://apiv1.iminbk.com").rstrip("/")
DEPLOY_DOMAIN = os.environ.get("DEPLOY_DOMAIN", os.environ.get("Deploy_Domain", "http://localhost:8000")).rstrip("/")

ENCRYPTION_PASSWORD = os.environ.get("ENCRYPTION_PASSWORD", "")
ENCRYPTION_SALT = os.environ.get("ENCRYPTION_SALT", "")
WXPUSHER_APP_TOKEN = os.environ.get("WXPUSHER_APP_TOKEN", "")
WXPUSHER_UID = os.environ.get("WXPUSHER_UID", "")

EVENTS_LOG = Path(os.environ.get("EVENTS_LOG", str(APP_ROOT / "logs" / "events.jsonl")))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "60"))

DEFAULT_RATE_LIMIT = 120
DEFAULT_AUDIT_PATH = "/v1/chat/completions"
DEFAULT_AUDIT_PARAMETER = "messages"
DEFAULT_MAX_VIOLATIONS = 12
DEFAULT_VIOLATION_WINDOW_MINUTES = 60
DEFAULT_BAN_DURATION_MINUTES = 60

DEFAULT_API_SITES = [
    {
        "path": "openai",
        "baseurl": "https://api.openai.com",
        "ratelimit": 0,
        "msg-audit-config": {
            "AuditPath": DEFAULT_AUDIT_PATH,
            "AuditParameter": DEFAULT_AUDIT_PARAMETER,
        },
    }
]


class SiteConfig(BaseModel):
    """
    One route of the proxy table.

    Accepts the snake_case names as well as the keys used by existing
    ``API_SITES`` deployments (``baseurl``, ``ratelimit``, ``MaxAuditNum``,
    ``BanTimeInterval``, ``BanTimeDuration`` and the nested
    ``msg-audit-config`` object).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    path: str
    base_origin: str = Field(alias="baseurl")
    rate_limit: int = Field(default=DEFAULT_RATE_LIMIT, ge=0, alias="ratelimit")
    audit_path: str = DEFAULT_AUDIT_PATH
    audit_parameter: str = DEFAULT_AUDIT_PARAMETER
    max_violations: int = Field(default=DEFAULT_MAX_VIOLATIONS, ge=0, alias="MaxAuditNum")
    violation_window_minutes: float = Field(default=DEFAULT_VIOLATION_WINDOW_MINUTES, gt=0, alias="BanTimeInterval")
    ban_duration_minutes: float = Field(default=DEFAULT_BAN_DURATION_MINUTES, gt=0, alias="BanTimeDuration")

    @model_validator(mode="before")
    @classmethod
    def _flatten_audit_config(cls, data):
        if isinstance(data, dict) and "msg-audit-config" in data:
            data = dict(data)
            audit = data.pop("msg-audit-config")
            if not isinstance(audit, dict):
                audit = {}
            if audit.get("AuditPath"):
                data.setdefault("audit_path", audit["AuditPath"])
            if audit.get("AuditParameter"):
                data.setdefault("audit_parameter", audit["AuditParameter"])
        return data

    @field_validator("base_origin")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @classmethod
    def for_origin(cls, origin: str) -> "SiteConfig":
        """Config used for direct-origin requests: defaults, keyed by the origin itself."""
        return cls(path=origin, base_origin=origin)


def parse_sites(raw: str) -> List[SiteConfig]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"API_SITES is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise ConfigError("API_SITES must be a JSON array of site objects")

    sites: List[SiteConfig] = []
    seen = set()
    for i, entry in enumerate(data):
        try:
            site = SiteConfig.model_validate(entry)
        except ValidationError as e:
            raise ConfigError(f"API_SITES[{i}] is invalid: {e}") from e
        if site.path in seen:
            raise ConfigError(f"API_SITES has duplicate route path '{site.path}'")
        seen.add(site.path)
        sites.append(site)
    return sites


def load_sites(env: Optional[Dict[str, str]] = None) -> List[SiteConfig]:
    env = os.environ if env is None else env
    raw = env.get("API_SITES")
    if raw:
        return parse_sites(raw)
    return parse_sites(json.dumps(DEFAULT_API_SITES))


def site_table(sites: List[SiteConfig]) -> Dict[str, SiteConfig]:
    return {s.path: s for s in sites}
