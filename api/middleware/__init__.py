from .request_id import RequestIDMiddleware, get_remote_ip
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_remote_ip",
]
