# This file makes tests a Python package

import warnings as _warnings

# websockets.server.WebSocketServerProtocol deprecation via uvicorn websockets_impl
_warnings.filterwarnings(
    "ignore",
    category=DeprecationWarning,
    message=r".*websockets\.server\.WebSocketServerProtocol is deprecated.*",
)
