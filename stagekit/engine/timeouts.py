from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

T = TypeVar("T")


class CallTimedOut(Exception):
    def __init__(self, label: str, timeout_seconds: float):
        super().__init__(f"{label} exceeded timeout of {timeout_seconds:g}s")
        self.label = label
        self.timeout_seconds = timeout_seconds


def call_with_timeout(
    fn: Callable[..., T],
    *args: Any,
    timeout_seconds: float | None,
    label: str = "call",
) -> T:
    """Run `fn(*args)` synchronously, giving up after `timeout_seconds`.

    The call runs on a daemon worker thread. Python cannot interrupt it, so on
    timeout the thread is abandoned; collaborators that own subprocesses should
    enforce the same timeout themselves so the process is killed too.
    """

    if timeout_seconds is None:
        return fn(*args)

    outcome: dict[str, Any] = {}
    done = threading.Event()

    def target() -> None:
        try:
            outcome["value"] = fn(*args)
        except BaseException as exc:  # noqa: BLE001 - re-raised on the caller thread
            outcome["error"] = exc
        finally:
            done.set()

    worker = threading.Thread(target=target, name=f"stagekit-{label}", daemon=True)
    worker.start()
    if not done.wait(timeout_seconds):
        raise CallTimedOut(label, timeout_seconds)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


class CancelToken:
    """Cooperative cancellation, observed only between stages."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason
