"""Shared rate limiter instance for the engine routes."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from brewledger.core.config import settings

TERMINAL_HEADER = "X-Terminal-ID"


def get_terminal_or_ip(request: Request) -> str:
    """Rate limit per POS terminal when it identifies itself, else by IP."""
    terminal = request.headers.get(TERMINAL_HEADER, "").strip()
    if terminal:
        return f"terminal:{terminal[:64]}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_terminal_or_ip, enabled=settings.rate_limit_enabled)
