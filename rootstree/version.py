from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

DIST_NAME = "rootstree"
FALLBACK_VERSION = "0.1.0"


def get_app_version() -> str:
    try:
        return version(DIST_NAME)
    except PackageNotFoundError:
        return FALLBACK_VERSION


def user_agent() -> str:
    return f"{DIST_NAME}/{get_app_version()}"
