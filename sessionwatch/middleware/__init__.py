from .traffic import TrafficMiddleware

__all__ = ["TrafficMiddleware"]
