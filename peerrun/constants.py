LOCALHOST: str = "127.0.0.1"

# Ports
DEFAULT_CONTROL_PORT = 38080  # control-plane endpoint of the parent
DEFAULT_PEER_PORT_BASE = 10000  # peer port = base + local rank
MAX_PORT = 65535

# Timing (seconds)
DEFAULT_WATCH_PERIOD = 0.5
DEFAULT_POOL_POLL_INTERVAL = 1.0
DEFAULT_SWEEP_TIMEOUT = 90.0
DEFAULT_STOP_GRACE_PERIOD = 5.0

# Worker environment contract
ENV_PARENT = "PEERRUN_PARENT"
ENV_SELF = "PEERRUN_SELF"
ENV_PEERS = "PEERRUN_PEERS"
ENV_STRATEGY = "PEERRUN_STRATEGY"
ENV_RANK = "RANK"
ENV_LOCAL_RANK = "LOCAL_RANK"
ENV_WORLD_SIZE = "WORLD_SIZE"

# Experiment result scraping
DEFAULT_METRIC_LABEL = "Img/sec per /gpu:0"

# HTTPX
CONTROL_CONNECT_TIMEOUT = 5.0
CONTROL_READ_TIMEOUT = 10.0
