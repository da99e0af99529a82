from .callbacks import CallbackClaims, CallbackTokenService

__all__ = ["CallbackClaims", "CallbackTokenService"]
