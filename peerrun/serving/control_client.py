import builtins
from typing import Optional, Union

import httpx

from peerrun.constants import CONTROL_CONNECT_TIMEOUT, CONTROL_READ_TIMEOUT
from peerrun.logger import get_logger
from peerrun.plan.peers import PeerID
from peerrun.serving.stage_store import Stage
from peerrun.utils import TransportFailure

logger = get_logger(__name__)


def _raise_for_status(response: httpx.Response):
    """Re-raise errors packaged by the control server as their original exception type."""
    if response.status_code < 400:
        return

    error_data = None
    if "application/json" in response.headers.get("Content-Type", ""):
        try:
            error_data = response.json()
        except ValueError:
            error_data = None

    if isinstance(error_data, dict) and "error_type" in error_data and "message" in error_data:
        from peerrun import EXCEPTION_REGISTRY

        error_type = error_data["error_type"]
        message = error_data["message"]
        state = error_data.get("state") or {}

        error_class = EXCEPTION_REGISTRY.get(error_type) or getattr(builtins, error_type, None)
        if isinstance(error_class, type) and issubclass(error_class, Exception):
            try:
                if state and hasattr(error_class, "from_dict"):
                    exc = error_class.from_dict(state)
                else:
                    exc = error_class(message)
            except Exception as e:
                logger.debug(f"Could not reconstruct {error_type}: {e}")
            else:
                exc.remote_traceback = error_data.get("traceback")
                raise exc

    response.raise_for_status()


class ControlClient:
    """Client for a parent's control plane (``GET``/``PUT /stage``)."""

    def __init__(
        self,
        parent: Union[PeerID, str],
        client: Optional[httpx.Client] = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        self.parent = parent if isinstance(parent, PeerID) else PeerID.parse(parent)
        self.base_url = f"http://{self.parent}"
        self._owns_client = client is None
        if client is None:
            timeout = timeout or httpx.Timeout(CONTROL_READ_TIMEOUT, connect=CONTROL_CONNECT_TIMEOUT)
            client = httpx.Client(base_url=self.base_url, timeout=timeout)
        self.client = client

    def close(self):
        if self._owns_client:
            self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, endpoint, **kwargs)
        except httpx.TransportError as e:
            raise TransportFailure(host=str(self.parent), reason=str(e) or e.__class__.__name__)
        return response

    def health(self) -> bool:
        try:
            response = self._request("GET", "/health")
        except TransportFailure:
            return False
        return response.status_code == 200

    def get_stage(self) -> Optional[Stage]:
        """Latest stage published by the parent, or ``None`` if it has none yet."""
        response = self._request("GET", "/stage")
        if response.status_code == 404:
            return None
        _raise_for_status(response)
        return Stage.from_dict(response.json())

    def push_stage(self, stage: Stage) -> int:
        """Publish ``stage`` and return the version the parent assigned to it."""
        response = self._request("PUT", "/stage", json=stage.to_dict())
        _raise_for_status(response)
        return response.json()["version"]
