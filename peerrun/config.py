import os
from functools import cached_property
from pathlib import Path

import yaml

from peerrun import constants
from peerrun.logger import get_logger


logger = get_logger(__name__)


ENV_MAPPINGS = {
    "host_spec": "PEERRUN_HOSTS",
    "self_host": "PEERRUN_SELF_HOST",
    "control_port": "PEERRUN_CONTROL_PORT",
    "peer_port_base": "PEERRUN_PEER_PORT_BASE",
    "watch_period": "PEERRUN_WATCH_PERIOD",
    "pool_poll_interval": "PEERRUN_POOL_POLL_INTERVAL",
    "sweep_timeout": "PEERRUN_SWEEP_TIMEOUT",
    "stop_grace_period": "PEERRUN_STOP_GRACE_PERIOD",
    "ssh_user": "PEERRUN_SSH_USER",
    "ssh_key": "PEERRUN_SSH_KEY",
    "metric_label": "PEERRUN_METRIC_LABEL",
    "log_level": "PEERRUN_LOG_LEVEL",
}

INT_KEYS = {"control_port", "peer_port_base"}
FLOAT_KEYS = {"watch_period", "pool_poll_interval", "sweep_timeout", "stop_grace_period"}

DEFAULTS = {
    "host_spec": None,
    "self_host": None,
    "control_port": constants.DEFAULT_CONTROL_PORT,
    "peer_port_base": constants.DEFAULT_PEER_PORT_BASE,
    "watch_period": constants.DEFAULT_WATCH_PERIOD,
    "pool_poll_interval": constants.DEFAULT_POOL_POLL_INTERVAL,
    "sweep_timeout": constants.DEFAULT_SWEEP_TIMEOUT,
    "stop_grace_period": constants.DEFAULT_STOP_GRACE_PERIOD,
    "ssh_user": None,
    "ssh_key": None,
    "metric_label": constants.DEFAULT_METRIC_LABEL,
    "log_level": "info",
}

LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]


class PeerrunConfig:
    """Process-wide launcher settings.

    Every value is resolved in order: explicit override (``set``), environment variable
    (see ``ENV_MAPPINGS``), ``~/.peerrun/config.yaml``, built-in default.
    """

    CONFIG_FILE = Path("~/.peerrun/config.yaml")

    def __init__(self):
        self._overrides = {}

    @cached_property
    def file_cache(self):
        return self._load_from_file()

    def _resolve(self, key):
        if key in self._overrides:
            return self._overrides[key]
        value = self._get_env_var(key)
        if value is None:
            value = self.file_cache.get(key)
        if value is None or value == "None":
            return DEFAULTS[key]
        return self._coerce(key, value)

    @staticmethod
    def _coerce(key, value):
        try:
            if key in INT_KEYS:
                return int(value)
            if key in FLOAT_KEYS:
                return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid value for {key}: {value!r}")
        return str(value)

    @property
    def host_spec(self):
        """Default ``-H`` host spec, ``addr[:slots[:public addr]],...``."""
        return self._resolve("host_spec")

    @property
    def self_host(self):
        """Internal address of this node, used to pick the local share of a job."""
        return self._resolve("self_host")

    @property
    def control_port(self):
        """Port of the control-plane endpoint served by the parent in watch mode."""
        return self._resolve("control_port")

    @property
    def peer_port_base(self):
        return self._resolve("peer_port_base")

    @property
    def watch_period(self):
        return self._resolve("watch_period")

    @property
    def pool_poll_interval(self):
        return self._resolve("pool_poll_interval")

    @property
    def sweep_timeout(self):
        """Per-experiment timeout in seconds for ``peerrun sweep``."""
        return self._resolve("sweep_timeout")

    @property
    def stop_grace_period(self):
        """Seconds a stopped worker gets between SIGTERM and SIGKILL."""
        return self._resolve("stop_grace_period")

    @property
    def ssh_user(self):
        return self._resolve("ssh_user")

    @property
    def ssh_key(self):
        return self._resolve("ssh_key")

    @property
    def metric_label(self):
        return self._resolve("metric_label")

    @property
    def log_level(self):
        """Verbosity of peerrun's own logs: ``debug``, ``info``, ``warning``, ``error`` or ``critical``."""
        level = str(self._resolve("log_level")).lower()
        return level if level in LOG_LEVELS else DEFAULTS["log_level"]

    def __iter__(self):
        for key in ENV_MAPPINGS:
            yield key, getattr(self, key)

    def set(self, key, value):
        if key not in ENV_MAPPINGS:
            raise ValueError(f"Unknown config key: {key}")
        if value is None:
            self._overrides.pop(key, None)
        else:
            if key == "log_level" and str(value).lower() not in LOG_LEVELS:
                raise ValueError(f"Invalid log level value. Must be one of: {', '.join(LOG_LEVELS)}.")
            self._overrides[key] = self._coerce(key, value)
        return getattr(self, key)

    def get(self, key):
        if key not in ENV_MAPPINGS:
            raise ValueError(f"Unknown config key: {key}")
        return getattr(self, key)

    def reset(self):
        """Drop process-level overrides and the cached config file contents."""
        self._overrides.clear()
        self.__dict__.pop("file_cache", None)

    def write(self, user_values: dict = None):
        """Write out config to local ``~/.peerrun/config.yaml``, to be used globally."""
        self.CONFIG_FILE.expanduser().parent.mkdir(parents=True, exist_ok=True)
        values = {k: v for k, v in dict(self).items() if v is not None and v != DEFAULTS[k]}
        if user_values:
            values.update(user_values)

        with self.CONFIG_FILE.expanduser().open("w") as stream:
            yaml.safe_dump(values, stream)
        self.__dict__.pop("file_cache", None)
        logger.debug(f"Wrote config to {self.CONFIG_FILE}")

    def _get_env_var(self, key):
        return os.getenv(ENV_MAPPINGS[key])

    def _load_from_file(self):
        if self.CONFIG_FILE.expanduser().exists():
            with open(self.CONFIG_FILE.expanduser(), "r") as stream:
                return yaml.safe_load(stream) or {}
        return {}
