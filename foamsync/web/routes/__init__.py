"""foamsync web route modules.

Each module exports a ``router`` (APIRouter) included by
foamsync.web.app.create_app.
"""

from foamsync.web.routes import health, realtime, rpc

__all__ = ["health", "realtime", "rpc"]
