from orthoflow.platform.security.context import AuthContext

__all__ = ["AuthContext"]
