"""
asgi.py -- Process entry point for the EstateGate API server.

Configures logging and the uncaught-exception hooks before the application
is imported, so anything that fails during import or startup is logged in
the standard format.

Run with:  uvicorn asgi:app --reload
"""

from core.bootstrap import configure_logging, install_error_hooks
from core.config import get_settings

configure_logging(get_settings().log_level)
install_error_hooks()

from api.main import app  # noqa: E402

__all__ = ["app"]
