from . import builds, health

__all__ = ["builds", "health"]
