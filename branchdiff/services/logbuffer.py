from __future__ import annotations

import threading


class LogBuffer:
    """Append-only text buffer that keeps only the most recent ``limit`` characters."""

    def __init__(self, limit: int = 3000) -> None:
        if limit <= 0:
            raise ValueError("Log retention limit must be positive.")
        self._limit = limit
        self._text = ""
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            combined = self._text + text
            if len(combined) > self._limit:
                combined = combined[-self._limit :]
            self._text = combined

    def append_line(self, message: str) -> None:
        self.append(message if message.endswith("\n") else f"{message}\n")

    def text(self) -> str:
        with self._lock:
            return self._text

    def __len__(self) -> int:
        with self._lock:
            return len(self._text)


def tail(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    return text[-limit:] if len(text) > limit else text
