from docpipe.auth.token import (
    IssuedToken,
    WorkerTokenClaims,
    create_worker_token,
    decode_worker_token,
)

__all__ = [
    "IssuedToken", "WorkerTokenClaims",
    "create_worker_token", "decode_worker_token",
]
