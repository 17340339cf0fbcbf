from __future__ import annotations

import ipaddress
import os
from typing import Iterable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from savesync.core.config import AppConfig

ALLOWED_NETS_ENV = "SAVESYNC_ALLOWED_NETS"


def parse_nets(values: Iterable[str]) -> list[ipaddress._BaseNetwork]:
    nets: list[ipaddress._BaseNetwork] = []
    for value in values:
        s = value.strip()
        if not s:
            continue
        try:
            nets.append(ipaddress.ip_network(s, strict=False))
        except ValueError as exc:
            raise ValueError(f"invalid allowed network: {s}") from exc
    return nets


def _denied(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": error, "message": message})


class NetworkAllowlistMiddleware(BaseHTTPMiddleware):
    """Rejects requests whose client address is outside the allowed networks.

    An empty allowlist admits every parseable client address.
    """

    def __init__(self, app, allowed_nets: Iterable[str]):
        super().__init__(app)
        self.allowed: list[ipaddress._BaseNetwork] = []
        self.allowlist_error: Optional[str] = None
        try:
            self.allowed = parse_nets(allowed_nets)
        except ValueError as exc:
            self.allowlist_error = str(exc)

    async def dispatch(self, request: Request, call_next):
        if self.allowlist_error:
            return _denied(503, "allowlist_misconfigured", self.allowlist_error)

        client_host = request.client.host if request.client else ""
        try:
            ip = ipaddress.ip_address(client_host)
        except ValueError:
            return _denied(403, "client_address_unknown", f"cannot parse client address {client_host!r}")

        if self.allowed and not any(ip in net for net in self.allowed):
            return _denied(403, "client_not_allowed", f"{ip} is not in an allowed network")

        return await call_next(request)


def get_allowed_nets(cfg: AppConfig) -> list[str]:
    raw = os.environ.get(ALLOWED_NETS_ENV)
    if raw is not None:
        return [s.strip() for s in raw.split(",") if s.strip()]
    return list(cfg.allowed_nets)
