"""netwatch: wired-first network supervisor with a WiFi provisioning fallback."""

from typing import Any

from .version import APP_VERSION


def create_supervisor(*args: Any, **kwargs: Any):
    from .supervisor import build_supervisor as _build_supervisor

    return _build_supervisor(*args, **kwargs)


__all__ = ["create_supervisor", "APP_VERSION"]
