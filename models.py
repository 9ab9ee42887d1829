from dataclasses import dataclass, asdict
from typing import Optional

STATUS_OK = "ok"
STATUS_TIMEOUT = "timeout"
STATUS_ERROR = "error"
STATUS_INVALID_IP = "invalid_ip"


@dataclass(frozen=True)
class HopInfo:
    """One router on the path, identified by the TTL at which it replied."""
    hop: int
    ip: str
    hostname: str
    initial_latency: Optional[int] = None # ms observed during discovery

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class PingSample:
    """One monitoring observation of one hop. latency is only set when status is ok."""
    ip: str
    latency: Optional[int]
    status: str
    seq: int

    def to_dict(self):
        return asdict(self)
