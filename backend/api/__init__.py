# api/__init__.py
from api.auth import caller_from_header, decode_token, get_caller, issue_token
from api.server import create_app

__all__ = [
    "caller_from_header",
    "decode_token",
    "get_caller",
    "issue_token",
    "create_app",
]
