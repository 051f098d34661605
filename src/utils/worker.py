from PyQt6.QtCore import QThread, pyqtSignal
from typing import Any, Callable


class CallableWorker(QThread):
    """Run a callable in a background thread and emit its return value.

    Signals are delivered on the thread owning the receiver (the UI thread for widgets),
    so slots may touch widget and session state directly.
    """

    result_ready = pyqtSignal(object)
    error = pyqtSignal(object)  # the exception instance

    def __init__(self, fn: Callable[[], Any], parent=None):
        super().__init__(parent)
        self._fn = fn

    def run(self):
        try:
            result = self._fn()
            self.result_ready.emit(result)
        except Exception as e:
            self.error.emit(e)


class WorkerPool:
    """Keep references to running workers until they finish.

    A QThread that is garbage collected while running aborts the process, so every
    worker is parked in a process-wide set until it finishes. Workers have no Qt parent:
    closing the widget that started them must not delete a running thread.
    """

    _running = set()

    def __init__(self):
        self._workers = set()

    def start(self, fn: Callable[[], Any], on_result: Callable[[Any], None],
              on_error: Callable[[Exception], None] | None = None) -> CallableWorker:
        worker = CallableWorker(fn)
        worker.result_ready.connect(on_result)
        if on_error is not None:
            worker.error.connect(on_error)
        self._workers.add(worker)
        WorkerPool._running.add(worker)
        # QThread.finished fires once run() has returned
        worker.finished.connect(lambda w=worker: self._release(w))
        worker.start()
        return worker

    def _release(self, worker: CallableWorker) -> None:
        self._workers.discard(worker)
        WorkerPool._running.discard(worker)
        worker.deleteLater()

    @classmethod
    def wait_for_running(cls, msecs: int = 3000) -> None:
        """Block until every running worker has finished (or ``msecs`` passed for each)."""
        for worker in list(cls._running):
            worker.wait(msecs)

    def __len__(self) -> int:
        return len(self._workers)
