"""Minimal tracing primitives.

Every lifecycle transition and every external tool call is reported as one
JSON line on stdout. The request id doubles as the trace id so all events of a
request can be grepped together.

External commands (chainctl, apk) run inside a `command_span`, which logs a
`span.end` line with the duration, exit code and, on failure, the error type.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence


@dataclass
class Span:
    name: str
    trace_id: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    start_ns: int = field(default_factory=time.time_ns)
    end_ns: int | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    status: str = 'ok'

    def end(self) -> None:
        if self.end_ns is None:
            self.end_ns = time.time_ns()

    @property
    def duration_ms(self) -> float | None:
        if self.end_ns is None:
            return None
        return (self.end_ns - self.start_ns) / 1_000_000.0

    def __enter__(self) -> 'Span':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.status = 'error'
            self.attributes['error'] = exc_type.__name__
        self.end()
        log_event('span.end', trace_id=self.trace_id, span=self)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def command_span(args: Sequence[str], *, trace_id: str) -> Span:
    """Span for one external command, named after the tool and its subcommand words.

    `chainctl images repos build list --parent org` becomes
    `chainctl.images.repos.build.list`; option values are recorded in
    `args` but kept out of the name.
    """
    words = []
    for arg in args:
        if arg.startswith('-'):
            break
        words.append(arg.rsplit('/', 1)[-1] if not words else arg)
    span = Span(name='.'.join(words[:5]) or 'command', trace_id=trace_id)
    span.attributes['args'] = list(args)
    return span


def log_event(event: str, *, trace_id: str, span: Span | None = None, **fields: Any) -> None:
    payload: dict[str, Any] = {
        'ts': datetime.now(timezone.utc).isoformat(),
        'event': event,
        'trace_id': trace_id,
        **fields,
    }
    if span is not None:
        payload['span'] = {
            'name': span.name,
            'span_id': span.span_id,
            'status': span.status,
            'duration_ms': span.duration_ms,
            'attributes': span.attributes,
        }
    print(json.dumps(payload, ensure_ascii=False, default=str))
