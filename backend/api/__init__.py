from .gateway import COMMANDS, Gateway, GatewaySession, encode_frame, hash_secret

__all__ = [
    "COMMANDS",
    "Gateway",
    "GatewaySession",
    "encode_frame",
    "hash_secret",
]
