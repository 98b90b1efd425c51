from docembed.auth.gate import AccessGate, Identity, access_gate
from docembed.auth.token import JWTDecoder, TokenPayload

__all__ = [
    "AccessGate", "Identity", "access_gate",
    "JWTDecoder", "TokenPayload",
]
