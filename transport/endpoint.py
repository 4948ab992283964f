# transport/endpoint.py
# Where the management server lives and how to authenticate to it.

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional
import ssl


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int
    secret: str
    tls: bool = True
    tls_verify: bool = False
    handshake_timeout_s: float = 10.0

    @property
    def scheme(self) -> str:
        return "wss" if self.tls else "ws"

    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}/"

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret}"}

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        """None for plain ws://. Management servers usually run self-signed certs, so verification is opt-in."""
        if not self.tls:
            return None
        ctx = ssl.create_default_context()
        if not self.tls_verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def __repr__(self) -> str:
        # keep the bearer secret out of logs and tracebacks
        return (f"Endpoint(url={self.url()!r}, tls_verify={self.tls_verify}, "
                f"handshake_timeout_s={self.handshake_timeout_s})")
