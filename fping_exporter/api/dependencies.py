from fastapi import Request

from fping_exporter.services.registry import Registry


def get_registry(request: Request) -> Registry:
    """Registry handed to create_app(); each app instance has its own."""
    return request.app.state.registry
