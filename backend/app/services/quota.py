import logging
import threading
import time
from typing import Callable

from .upstream import UpstreamFailureKind, UpstreamResult

logger = logging.getLogger(__name__)

QUOTA_CHECK_INTERVAL_SECONDS = 5 * 60  # 5 minutes


class QuotaState:
    def __init__(
        self,
        exhausted: bool = False,
        last_checked_at: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exhausted = exhausted
        self._last_checked_at = last_checked_at
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def last_checked_at(self) -> float:
        return self._last_checked_at

    def mark_exhausted(self) -> None:
        with self._lock:
            was_exhausted = self._exhausted
            self._exhausted = True
            self._last_checked_at = self._clock()
        if not was_exhausted:
            logger.warning("YouTube API quota exhausted")

    def mark_ok(self) -> None:
        with self._lock:
            was_exhausted = self._exhausted
            self._exhausted = False
            self._last_checked_at = self._clock()
        if was_exhausted:
            logger.info("YouTube API quota available again")

    def mark_checked(self) -> None:
        with self._lock:
            self._last_checked_at = self._clock()

    def label(self) -> str:
        return "EXHAUSTED" if self._exhausted else "OK"

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "exhausted": self._exhausted,
                "last_checked_at": self._last_checked_at,
                "status": "EXHAUSTED" if self._exhausted else "OK",
            }


def should_probe(now: float, last_checked_at: float, exhausted: bool, debounce_seconds: float) -> bool:
    if not exhausted:
        return True
    return now - last_checked_at >= debounce_seconds


class QuotaTracker:
    """
    Debounced health probe for the upstream quota.

    While exhausted, probes closer together than debounce_seconds are skipped
    and the current state is reported as-is. Only a successful probe clears
    the exhausted flag; any other failure keeps it and restarts the window.
    """

    def __init__(
        self,
        state: QuotaState,
        probe: Callable[[], UpstreamResult],
        debounce_seconds: float = QUOTA_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.state = state
        self.probe = probe
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._prober: threading.Thread | None = None
        self._stop_event = threading.Event()

    def check_status(self) -> dict[str, bool]:
        if not should_probe(self._clock(), self.state.last_checked_at, self.state.exhausted, self.debounce_seconds):
            return {"ok": not self.state.exhausted}

        result = self.probe()
        if result.ok:
            self.state.mark_ok()
        elif result.kind == UpstreamFailureKind.QUOTA_EXCEEDED:
            self.state.mark_exhausted()
        else:
            # no quota signal either way; keep the flag, restart the debounce window
            logger.error(f"Quota check failed: {result.message}")
            self.state.mark_checked()
        return {"ok": not self.state.exhausted}

    def start_prober(self, interval_seconds: float | None = None) -> None:
        if self._prober is not None and self._prober.is_alive():
            return
        interval = interval_seconds or self.debounce_seconds
        self._stop_event.clear()

        def probe_worker():
            while not self._stop_event.wait(interval):
                if not self.state.exhausted:
                    continue
                try:
                    self.check_status()
                except Exception as e:
                    logger.error(f"Background quota check error: {e}")

        self._prober = threading.Thread(target=probe_worker, name="quota-prober", daemon=True)
        self._prober.start()

    def stop_prober(self) -> None:
        self._stop_event.set()
        if self._prober is not None:
            self._prober.join(timeout=1)
            self._prober = None
