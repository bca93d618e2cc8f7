"""Concierge gate: a chat proxy with a free-turn paywall in front of an LLM provider.

This package provides a FastAPI application factory named ``create_app``
inside ``concierge/server.py`` (see :func:`create_app`).

Typical usage
-------------
from concierge import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__

# ---------------------------------------------------------------------
# App factory export (friendly import error if missing)
# ---------------------------------------------------------------------
def _missing_create_app(*args, **kwargs):
    raise ImportError(
        "concierge.server.create_app could not be imported. "
        "Install the web dependencies first:\n\n"
        "    pip install -e .\n"
    )

try:
    # Prefer importing at package import time for clearer stack traces.
    from .server import create_app as _create_app  # type: ignore
except ImportError:
    # Defer the failure until someone actually calls create_app(), so
    # `import concierge.gate` still works without FastAPI installed.
    _create_app = None  # type: ignore


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`concierge.server.create_app`. If that function
    cannot be imported, a helpful ImportError is raised.
    """
    if _create_app is None:
        return _missing_create_app(*args, **kwargs)
    return _create_app(*args, **kwargs)
