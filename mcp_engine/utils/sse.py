"""Разбор потока Server-Sent Events.

Кадры кодирует `sse_starlette` (`ServerSentEvent.encode`): необязательная
строка `event: <name>`, одна или несколько строк `data: <chunk>` и пустая
строка-терминатор. Многострочные данные приходят последовательными строками
`data:`, декодер склеивает их через `\\n`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True, slots=True)
class SSEFrame:
    """Один полностью принятый кадр SSE."""

    data: str
    event: Optional[str] = None
    id: Optional[str] = None


class SSEDecoder:
    """Инкрементальный декодер: принимает произвольные куски текста, отдаёт готовые кадры."""

    def __init__(self) -> None:
        self._buffer = ""
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self._data: List[str] = []

    def feed(self, chunk: str) -> List[SSEFrame]:
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        frames: List[SSEFrame] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def _process_line(self, line: str) -> Optional[SSEFrame]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        # остальные поля (retry и неизвестные) игнорируются
        return None

    def _dispatch(self) -> Optional[SSEFrame]:
        if not self._data:
            self._event = None
            return None
        frame = SSEFrame(data="\n".join(self._data), event=self._event, id=self._id)
        self._data = []
        self._event = None
        return frame


def decode_sse_frames(text: str) -> List[SSEFrame]:
    """Разбирает весь текст потока; незавершённый хвост без пустой строки отбрасывается."""
    return SSEDecoder().feed(text)


__all__ = ["SSEDecoder", "SSEFrame", "decode_sse_frames"]
