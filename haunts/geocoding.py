"""Rate-limited reverse geocoding for detected places.

The geocoder itself is supplied by the host: any callable taking
``(latitude, longitude)`` and returning a GeocodeResult, or None when the
coordinate has no useful name. It may raise; failures are logged and the
place simply stays unnamed until it is queued again.
"""

import logging
import threading
import time
from collections import deque
from typing import NamedTuple, Optional

from haunts.constants import DEFAULT_PLACE_PARAMS

logger = logging.getLogger(__name__)


class GeocodeRequest(NamedTuple):
    place_id: str
    latitude: float
    longitude: float


class GeocodingQueue:
    """
    FIFO of pending lookups, drained one request per `min_interval` seconds.

    Results are handed to `apply(place_id, result)`. The queue can be stepped
    synchronously with `drain_once()` or drained by a worker thread between
    `start()` and `stop()`.
    """

    def __init__(self, geocoder, apply,
                 min_interval=DEFAULT_PLACE_PARAMS['geocoding_interval'],
                 clock=time.monotonic, sleep=time.sleep):
        if min_interval < 0:
            raise ValueError(f"min_interval cannot be negative, got {min_interval}.")
        self.geocoder = geocoder
        self.apply = apply
        self.min_interval = float(min_interval)
        self._clock = clock
        self._sleep = sleep

        self._queue = deque()
        self._cond = threading.Condition()
        self._rate_lock = threading.Lock()
        self._last_request_ts: Optional[float] = None
        self._stop = threading.Event()
        self._thread = None

    def __len__(self):
        with self._cond:
            return len(self._queue)

    @property
    def pending(self):
        with self._cond:
            return [r.place_id for r in self._queue]

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def enqueue(self, place_id, latitude, longitude):
        """Queue a lookup. Returns False if the place is already waiting."""
        with self._cond:
            if any(r.place_id == place_id for r in self._queue):
                return False
            self._queue.append(GeocodeRequest(place_id, float(latitude), float(longitude)))
            self._cond.notify()
            return True

    def clear(self):
        with self._cond:
            self._queue.clear()

    def _throttle(self):
        with self._rate_lock:
            if self._last_request_ts is not None:
                delta = self._clock() - self._last_request_ts
                if delta < self.min_interval:
                    self._sleep(self.min_interval - delta)
            self._last_request_ts = self._clock()

    def drain_once(self):
        """
        Process the oldest pending request, waiting out the rate limit first.

        Returns
        -------
        bool
            False when the queue was empty, True otherwise (whether or not the
            lookup succeeded).
        """
        with self._cond:
            if not self._queue:
                return False
            request = self._queue.popleft()

        self._throttle()
        try:
            result = self.geocoder(request.latitude, request.longitude)
        except Exception as e:
            logger.warning("Reverse geocoding failed for place %s at (%.6f, %.6f): %s",
                           request.place_id, request.latitude, request.longitude, e)
            return True

        if result is None:
            logger.debug("No geocoding result for place %s", request.place_id)
            return True
        self.apply(request.place_id, result)
        return True

    def drain(self):
        """Process every pending request on the calling thread; returns the count."""
        n = 0
        while self.drain_once():
            n += 1
        return n

    def _run(self):
        while True:
            with self._cond:
                while not self._queue and not self._stop.is_set():
                    self._cond.wait()
                if self._stop.is_set():
                    return
            self.drain_once()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="haunts-geocoding", daemon=True)
        self._thread.start()

    def stop(self, timeout=None):
        """
        Signal the worker to stop after the request in flight and wait for it.

        Requests still queued are kept; they are processed on the next
        `start()` or `drain_once()`.
        """
        with self._cond:
            self._stop.set()
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
