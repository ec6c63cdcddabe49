"""
Per-stream accumulator for the container's output.

Docker multiplexes stdout and stderr of a non-TTY container over one
connection; the runtime's output stream splits it into ``(stream id,
payload)`` pairs with the SDK's frame reader.  Stream id 1 is stdout and 2 is
stderr.

The run command prints a final ``__CODERUNNER_EXIT__:<code>`` line on stdout
so the program's exit status survives whatever the shell does afterwards.
:meth:`OutputCollector.result` strips that line and reports the code
separately.

Untrusted programs can print without end, so each stream keeps at most
``max_bytes``; the rest is counted and dropped, and the rendered text ends
with a truncation notice.  The last bytes of stdout are always kept so the
exit marker is found even after truncation.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

STDIN = 0
STDOUT = 1
STDERR = 2

EXIT_MARKER = "__CODERUNNER_EXIT__"

_EXIT_LINE_RE = re.compile(rb"(?:\r?\n)?" + EXIT_MARKER.encode() + rb":(-?\d+)\s*$")
# Longer than any marker line.
_TAIL_SIZE = 64


@dataclass(frozen=True)
class CollectedOutput:
    stdout: str
    stderr: str
    exit_code: Optional[int] = None


def truncation_notice(limit: int) -> str:
    return f"[output truncated after {limit} bytes]"


def _split_marker(data: bytes) -> Tuple[bytes, Optional[int]]:
    match = _EXIT_LINE_RE.search(data)
    if match is None:
        return data, None
    return data[: match.start()], int(match.group(1))


class OutputCollector:
    """Accumulates stdout/stderr payloads, bounded per stream.

    ``feed`` is called from the thread pumping the container socket while the
    event loop may read a snapshot after a timeout, so state is guarded by a
    lock.
    """

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self.max_bytes = max_bytes
        # Room for the marker line on top of the visible limit.
        self._limit = None if max_bytes is None else max_bytes + _TAIL_SIZE
        self._lock = threading.Lock()
        self._buffers: Dict[int, bytearray] = {STDOUT: bytearray(), STDERR: bytearray()}
        self._seen: Dict[int, int] = {STDOUT: 0, STDERR: 0}
        self._tail = bytearray()

    def feed(self, stream: int, data: bytes) -> None:
        if not data:
            return
        # Stdin echoes, if any, count as stdout.
        stream = STDERR if stream == STDERR else STDOUT
        with self._lock:
            buffer = self._buffers[stream]
            self._seen[stream] += len(data)
            if self._limit is None:
                buffer.extend(data)
            elif len(buffer) < self._limit:
                buffer.extend(data[: self._limit - len(buffer)])
            if stream == STDOUT:
                self._tail.extend(data)
                del self._tail[:-_TAIL_SIZE]

    @property
    def truncated(self) -> bool:
        with self._lock:
            return any(self._seen[s] > len(self._buffers[s]) for s in (STDOUT, STDERR))

    def result(self) -> CollectedOutput:
        with self._lock:
            stdout = bytes(self._buffers[STDOUT])
            stderr = bytes(self._buffers[STDERR])
            tail = bytes(self._tail)
            stdout_dropped = self._seen[STDOUT] > len(stdout)
            stderr_dropped = self._seen[STDERR] > len(stderr)

        if stdout_dropped:
            _, exit_code = _split_marker(tail)
        else:
            stdout, exit_code = _split_marker(stdout)
        return CollectedOutput(
            stdout=self._render(stdout, stdout_dropped),
            stderr=self._render(stderr, stderr_dropped),
            exit_code=exit_code,
        )

    def _render(self, data: bytes, dropped: bool) -> str:
        truncated = dropped
        if self.max_bytes is not None and len(data) > self.max_bytes:
            data = data[: self.max_bytes]
            truncated = True
        text = data.decode("utf-8", errors="replace").strip()
        if truncated:
            notice = truncation_notice(self.max_bytes)
            text = f"{text}\n{notice}" if text else notice
        return text
