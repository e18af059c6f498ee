from peerrun.serving.control_client import ControlClient
from peerrun.serving.control_server import ControlServer, create_app, StageModel
from peerrun.serving.stage_store import Stage, StageStore
from peerrun.serving.watcher import serve_and_watch, Watcher, WatchState

__all__ = [
    "ControlClient",
    "ControlServer",
    "Stage",
    "StageModel",
    "StageStore",
    "WatchState",
    "Watcher",
    "create_app",
    "serve_and_watch",
]
