import json

from engagement.observability.logging import log
from engagement.observability.events import event, emit
import engagement.observability.metrics as metrics
from engagement.settings import settings


def test_message_text_is_redacted(capsys, monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_PII_REDACTION", True)
    monkeypatch.setattr(settings, "LOG_LEVEL", "info")
    log(event="activity_received", userId="u1", rawText="meu cartão 1234")
    line = json.loads(capsys.readouterr().out)
    assert line["rawText"] == "[REDACTED:15chars]"
    assert line["userId"] == "u1"
    assert line["level"] == "info"


def test_level_filter(capsys, monkeypatch):
    monkeypatch.setattr(settings, "LOG_LEVEL", "info")
    log(event="noisy", level="debug")
    assert capsys.readouterr().out == ""


def test_emit_counts_transition_events(r, capsys):
    emit([
        event("transition_applied", userId="u1"),
        event("transition_absorbed", level="debug", userId="u2"),
        event("transition_absorbed", level="debug", userId="u3"),
    ])
    c = metrics.counters()
    assert c["transition_applied"] == 1
    assert c["transition_absorbed"] == 2
