"""Process-wide hooks registered by ``backend.main`` for the billing routers.

Routers and repositories import this module instead of ``backend.main`` so
they can be exercised without starting the application.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class _Hooks:
    connection_factory: Optional[Callable[[], Any]] = None
    user_resolver: Optional[Callable[..., Any]] = None


_hooks = _Hooks()


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_user: Callable[..., Any],
) -> None:
    _hooks.connection_factory = get_conn
    _hooks.user_resolver = get_current_user


def reset() -> None:
    _hooks.connection_factory = None
    _hooks.user_resolver = None


def _require(hook: Optional[Callable[..., Any]], name: str) -> Callable[..., Any]:
    if hook is None:
        raise RuntimeError(f"Billing app context is missing '{name}'; call app_context.configure() first")
    return hook


def get_conn() -> Any:
    """Open a new database connection using the registered factory."""

    return _require(_hooks.connection_factory, "get_conn")()


def get_current_user(*, session_token: Optional[str] = None, authorization: Optional[str] = None) -> Any:
    return _require(_hooks.user_resolver, "get_current_user")(
        session_token=session_token,
        authorization=authorization,
    )
