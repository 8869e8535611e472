# config.py
from dataclasses import dataclass
from typing import Optional, Tuple

M: int = 8                  # 256-slot ring for demos; use >= 128 for real deployments
HASH_ALGORITHM: str = "sha256"
RPC_TIMEOUT: float = 10.0
STABILIZE_INTERVAL: float = 10.0
FIX_FINGERS_INTERVAL: float = 10.0
MAX_HOPS: int = 256         # bound on Find_Predecessor forwarding
LOG_LEVEL: str = "INFO"
LOG_FORMAT: str = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class NodeConfig:
    host: str
    port: int
    bootstrap: Optional[Tuple[str, int]] = None
    m: int = M
    stabilize_interval: float = STABILIZE_INTERVAL
    fix_fingers_interval: float = FIX_FINGERS_INTERVAL
    rpc_timeout: float = RPC_TIMEOUT
    max_hops: int = MAX_HOPS
