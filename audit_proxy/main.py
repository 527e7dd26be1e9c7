"""
ASGI entry point: ``uvicorn audit_proxy.main:app``.

Routes are loaded from the environment when this module is imported.
"""
import logging

from audit_proxy import config
from audit_proxy.server import create_app

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
