import json
import os
from collections import Counter
from datetime import datetime
from html import escape
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
LOG_PATH = Path(os.environ.get("EVENTS_LOG", str(ROOT / "logs" / "events.jsonl")))
REPORT_PATH = ROOT / "reports" / "audit_report.html"


def load_events(path: Path = LOG_PATH):
    if not path.exists():
        return []
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            events.append(json.loads(line))
    return events


def fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def rows(counter: Counter, limit=None) -> str:
    return "".join(
        f"<tr><td>{escape(str(key))}</td><td>{count}</td></tr>" for key, count in counter.most_common(limit)
    )


def summarize(events):
    return {
        "by_action": Counter(e.get("action", "UNKNOWN") for e in events),
        "by_rule": Counter(e.get("rule_id") or "UNKNOWN" for e in events if e.get("action") == "BLOCK"),
        "by_origin": Counter(e.get("origin", "UNKNOWN") for e in events),
        "by_credential": Counter(e.get("credential") or "anonymous" for e in events if e.get("action") == "BLOCK"),
    }


def render(events) -> str:
    summary = summarize(events)
    recent = sorted(events, key=lambda e: e.get("timestamp", 0), reverse=True)[:20]

    return f"""<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Audit Proxy Report</title>
  <style>
    body {{ font-family: -apple-system, system-ui, Arial; margin: 24px; }}
    .card {{ border: 1px solid #ddd; border-radius: 12px; padding: 16px; margin-bottom: 16px; }}
    h1 {{ margin-top: 0; }}
    table {{ width: 100%; border-collapse: collapse; }}
    th, td {{ border-bottom: 1px solid #eee; padding: 10px; text-align: left; font-size: 14px; }}
    th {{ background: #fafafa; }}
    .muted {{ color: #666; }}
    .pill {{ display: inline-block; padding: 3px 10px; border-radius: 999px; border: 1px solid #ddd; font-size: 12px; }}
  </style>
</head>
<body>
  <h1>Message Audit Report</h1>
  <p class="muted">Generated: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}</p>

  <div class="card">
    <h2>Summary</h2>
    <p><span class="pill">Events</span> <b>{len(events)}</b></p>
    <table>
      <tr><th>Action</th><th>Count</th></tr>
      {rows(summary["by_action"])}
    </table>
  </div>

  <div class="card">
    <h2>Blocked by Rule</h2>
    <table>
      <tr><th>Rule ID</th><th>Count</th></tr>
      {rows(summary["by_rule"])}
    </table>
  </div>

  <div class="card">
    <h2>Events by Upstream</h2>
    <table>
      <tr><th>Origin</th><th>Count</th></tr>
      {rows(summary["by_origin"], 10)}
    </table>
  </div>

  <div class="card">
    <h2>Top Offending Credentials</h2>
    <p class="muted">Credentials are shown as SHA-256 fingerprints.</p>
    <table>
      <tr><th>Fingerprint</th><th>Blocks</th></tr>
      {rows(summary["by_credential"], 10)}
    </table>
  </div>

  <div class="card">
    <h2>Recent Events (last 20)</h2>
    <table>
      <tr>
        <th>Time</th>
        <th>Action</th>
        <th>Method</th>
        <th>Origin</th>
        <th>Path</th>
        <th>Rule</th>
        <th>Violations</th>
      </tr>
      {''.join(
        "<tr>"
        f"<td>{fmt_ts(e.get('timestamp', 0))}</td>"
        f"<td>{escape(str(e.get('action', '')))}</td>"
        f"<td>{escape(str(e.get('method', '')))}</td>"
        f"<td>{escape(str(e.get('origin', '')))}</td>"
        f"<td>{escape(str(e.get('path', '')))}</td>"
        f"<td>{escape(str(e.get('rule_id') or ''))}</td>"
        f"<td>{e.get('violation_count', '')}</td>"
        "</tr>"
        for e in recent
      )}
    </table>
  </div>

</body>
</html>"""


def main():
    events = load_events()
    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(render(events), encoding="utf-8")
    print(f"[OK] Wrote report to: {REPORT_PATH}")


if __name__ == "__main__":
    main()
