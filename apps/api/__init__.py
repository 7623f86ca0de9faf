from apps.api.main import TrustedUserHeaderMiddleware, create_app

__all__ = ["TrustedUserHeaderMiddleware", "create_app"]
