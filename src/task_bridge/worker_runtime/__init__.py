from .worker import PythonWorker, WorkerTask, serve_stdio
from .zmq_worker import ZmqWorker

__all__ = ["PythonWorker", "WorkerTask", "ZmqWorker", "serve_stdio"]
