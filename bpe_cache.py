"""
Memo of token -> encoded symbols that can be shared between threads.

Each key is computed at most once while other callers asking for the same
key wait for that result.  Values are stored as tuples so no caller can
mutate what another one reads.
"""

import threading


class EncodeCache:
    """
    Without maxsize the cache grows with every distinct token it sees.
    With maxsize, values computed once the cache is full are returned but
    not stored.
    """

    def __init__(self, maxsize=None):
        self.maxsize = maxsize
        self._lock = threading.Lock()
        self._values = {}
        self._pending = {}

    def __len__(self):
        with self._lock:
            return len(self._values)

    def __contains__(self, token):
        with self._lock:
            return token in self._values

    def clear(self):
        with self._lock:
            self._values.clear()

    def get_or_compute(self, token, compute):
        """
        Return the cached value for *token*, calling compute(token) if no
        caller has stored one yet.

        If compute raises, the exception reaches the caller that ran it and
        any waiters try again.
        """
        while True:
            with self._lock:
                if token in self._values:
                    return self._values[token]
                event = self._pending.get(token)
                owner = event is None
                if owner:
                    event = threading.Event()
                    self._pending[token] = event

            if not owner:
                event.wait()
                continue

            try:
                value = compute(token)
                with self._lock:
                    if self.maxsize is None or len(self._values) < self.maxsize:
                        self._values[token] = value
            finally:
                with self._lock:
                    del self._pending[token]
                event.set()
            return value
