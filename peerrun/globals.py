from peerrun.config import PeerrunConfig

config = PeerrunConfig()
