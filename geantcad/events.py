# geantcad/events.py
import logging

logger = logging.getLogger(__name__)


class EventEmitter:
    """
    Minimal synchronous callback registry. Callbacks for a signal are invoked
    in registration order, after the mutation that raised the signal.
    """
    SIGNALS = ()

    def __init__(self):
        self._listeners = {name: [] for name in self.SIGNALS}

    def connect(self, signal, callback):
        if signal not in self._listeners:
            raise KeyError(f"Unknown signal '{signal}'")
        self._listeners[signal].append(callback)

    def disconnect(self, signal, callback):
        callbacks = self._listeners.get(signal, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _emit(self, signal, *args):
        # Copy so a callback may (dis)connect while we iterate
        for callback in list(self._listeners.get(signal, [])):
            callback(*args)
