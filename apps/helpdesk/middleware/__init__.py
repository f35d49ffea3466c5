from .auth import AuthMiddleware

__all__ = ["AuthMiddleware"]
