import json

from tools.generate_report import load_events, render, summarize


def test_report_summarizes_event_log(tmp_path):
    log = tmp_path / "events.jsonl"
    events = [
        {"timestamp": 1.0, "action": "BLOCK", "rule_id": "R1", "origin": "https://a", "credential": "abc"},
        {"timestamp": 2.0, "action": "BLOCK", "rule_id": "R1", "origin": "https://a", "credential": "abc"},
        {"timestamp": 3.0, "action": "RATE_LIMITED", "origin": "https://b"},
    ]
    log.write_text("\n".join(json.dumps(e) for e in events) + "\n\n", encoding="utf-8")

    loaded = load_events(log)
    assert len(loaded) == 3

    summary = summarize(loaded)
    assert summary["by_action"]["BLOCK"] == 2
    assert summary["by_rule"] == {"R1": 2}
    assert summary["by_credential"] == {"abc": 2}

    html = render(loaded)
    assert "<td>R1</td><td>2</td>" in html
    assert "RATE_LIMITED" in html


def test_missing_log_yields_no_events(tmp_path):
    assert load_events(tmp_path / "missing.jsonl") == []


def test_report_escapes_event_fields():
    html = render([{"timestamp": 0, "action": "BLOCK", "path": "<script>", "rule_id": "R"}])
    assert "<script>" not in html
