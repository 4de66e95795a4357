"""
Disposable subscription handles and timer scheduling.

Every subscribe call in the engine returns a Subscription. Whoever created it
holds it and cancels it; cancel() is idempotent so teardown paths can run
more than once.

Timers come from a scheduler object with two methods:
    call_every(interval_s, callback) -> Subscription
    call_later(delay_s, callback) -> Subscription
ThreadScheduler is the production implementation. Tests swap in a manual one.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for one live callback registration."""

    def __init__(self, cancel_fn=None, name=''):
        self._cancel_fn = cancel_fn
        self.name = name
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self):
        return self._active

    def cancel(self):
        """Stop deliveries. Safe to call repeatedly."""
        with self._lock:
            if not self._active:
                return
            self._active = False
            cancel_fn, self._cancel_fn = self._cancel_fn, None

        if cancel_fn is not None:
            cancel_fn()

    def __repr__(self):
        state = 'active' if self._active else 'cancelled'
        return f"<Subscription {self.name or '?'} {state}>"


class PeriodicTimer(threading.Thread):
    """Calls ``callback`` every ``interval_s`` seconds until stopped."""

    def __init__(self, interval_s, callback, name='periodic-timer'):
        super().__init__(daemon=True, name=name)
        self.interval_s = interval_s
        self.callback = callback
        self.stop_event = threading.Event()

    def run(self):
        # wait() returns True once stop() is called
        while not self.stop_event.wait(self.interval_s):
            try:
                self.callback()
            except Exception:
                # Keep ticking; one bad tick must not kill the timer
                logger.exception("%s callback failed (continuing)", self.name)

    def stop(self):
        self.stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=1)


class ThreadScheduler:
    """Scheduler backed by daemon threads."""

    def call_every(self, interval_s, callback, name='periodic-timer'):
        timer = PeriodicTimer(interval_s, callback, name=name)
        timer.start()
        return Subscription(timer.stop, name=name)

    def call_later(self, delay_s, callback, name='one-shot-timer'):
        timer = threading.Timer(max(0.0, delay_s), callback)
        timer.daemon = True
        timer.start()
        return Subscription(timer.cancel, name=name)
