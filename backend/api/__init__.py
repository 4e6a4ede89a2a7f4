# api/__init__.py
from api.server import create_app
from api.dependencies import ServiceContainer, build_container

__all__ = [
    "create_app",
    "ServiceContainer",
    "build_container",
]
