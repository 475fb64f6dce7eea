from coderoom.utils.security import hash_password, verify_password, create_tokens, decode_token
from coderoom.utils.rate_limit import (
    rate_limit,
    limiter,
    close_rate_limiter,
    check_websocket_rate_limit,
    cleanup_websocket_rate_limit,
    get_client_identifier,
)

__all__ = [
    "hash_password", "verify_password", "create_tokens", "decode_token",
    "rate_limit", "limiter", "close_rate_limiter",
    "check_websocket_rate_limit", "cleanup_websocket_rate_limit",
    "get_client_identifier",
]
