"""
Local stand-ins for the upstream chat API and the content classifier.

    uvicorn backend.mock_services:app --port 5000

then point a route at ``http://127.0.0.1:5000`` and set
``AUDIT_API_BASE=http://127.0.0.1:5000/classifier``.
"""
import base64
import json
import os
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse

MALICIOUS_MARKER = os.environ.get("MOCK_MALICIOUS_MARKER", "forbidden")

app = FastAPI(title="Mock Upstream + Classifier")


@app.get("/")
def home():
    return {"status": "ok", "message": "Hello from mock services"}


@app.get("/v1/models")
def models():
    return {"object": "list", "data": [{"id": "mock-gpt", "object": "model", "owned_by": "mock"}]}


def _reply_text(body: dict) -> str:
    messages = body.get("messages") or []
    last = messages[-1].get("content", "") if messages and isinstance(messages[-1], dict) else ""
    return f"echo: {last}"


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    body = await request.json()
    text = _reply_text(body)
    model = body.get("model", "mock-gpt")

    if body.get("stream"):
        def events():
            for word in text.split(" "):
                chunk = {
                    "object": "chat.completion.chunk",
                    "model": model,
                    "choices": [{"index": 0, "delta": {"content": word + " "}, "finish_reason": None}],
                }
                yield f"data: {json.dumps(chunk)}\n\n"
            yield "data: [DONE]\n\n"

        return StreamingResponse(events(), media_type="text/event-stream")

    return {
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
    }


def _verdict(text: str) -> dict:
    if MALICIOUS_MARKER and MALICIOUS_MARKER in text:
        idx = text.index(MALICIOUS_MARKER)
        return {
            "status": "done",
            "verdict": "malicious",
            "rule_id": "MOCK_MARKER",
            "data": {"descr": "Mock classifier matched the marker word", "match_string": text[idx:idx + 40]},
        }
    return {"status": "done", "verdict": "security", "data": {}}


@app.get("/classifier/")
def classify_plain(word: str = ""):
    return _verdict(word)


@app.get("/classifier/base64")
def classify_base64(word: str = ""):
    try:
        text: Optional[str] = base64.b64decode(word).decode("utf-8")
    except ValueError:
        return {"status": "error", "verdict": "", "data": {"descr": "bad base64"}}
    return _verdict(text)
