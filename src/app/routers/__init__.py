# Routers package
from . import dodo_router

__all__ = [
    "dodo_router",
]
