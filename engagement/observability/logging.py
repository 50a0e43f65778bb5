import json
import time
from engagement.settings import settings

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}

# Message bodies and flow payloads are user content; keep them out of logs.
SENSITIVE_KEYS = {"text", "rawText", "message", "reply", "payload", "content", "renderedText"}

def _redact_value(v):
    if isinstance(v, str) and len(v) > 0:
        return f"[REDACTED:{len(v)}chars]"
    if isinstance(v, dict):
        return {k: _redact_value(val) for k, val in v.items()}
    return v

def _enabled(level: str) -> bool:
    threshold = LEVELS.get(str(settings.LOG_LEVEL or "info").lower(), 20)
    return LEVELS.get(level, 20) >= threshold

def log(event: str, level: str = "info", **fields):
    if not _enabled(level):
        return
    payload = {"ts": int(time.time()), "event": event, "level": level}

    if settings.ENABLE_PII_REDACTION:
        clean_fields = {}
        for k, v in fields.items():
            if k in SENSITIVE_KEYS:
                clean_fields[k] = _redact_value(v)
            elif isinstance(v, dict):
                clean_fields[k] = {sk: (_redact_value(sv) if sk in SENSITIVE_KEYS else sv) for sk, sv in v.items()}
            else:
                clean_fields[k] = v
        payload.update(clean_fields)
    else:
        payload.update(fields)

    print(json.dumps(payload, ensure_ascii=False, default=str))
