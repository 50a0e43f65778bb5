"""
Sink for structured events returned by the decision layer.

The state machine and the activity tracker never log mid-algorithm; they
collect events on their result objects and hand them here once the write
has committed (or the trigger was absorbed).
"""
from typing import Iterable, Mapping

from engagement.observability.logging import log
import engagement.observability.metrics as metrics

# event name -> counter bumped when it is emitted
_COUNTED = {
    "transition_applied": metrics.TRANSITION_APPLIED,
    "transition_absorbed": metrics.TRANSITION_ABSORBED,
    "transition_conflict": metrics.TRANSITION_CONFLICT,
}


def event(name: str, level: str = "info", **fields) -> dict:
    return {"event": name, "level": level, **fields}


def emit(events: Iterable[Mapping]) -> None:
    for e in events or ():
        fields = dict(e)
        name = fields.pop("event")
        level = fields.pop("level", "info")
        log(event=name, level=level, **fields)
        counter = _COUNTED.get(name)
        if counter:
            metrics.incr(counter)
