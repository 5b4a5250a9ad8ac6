"""
coachloop HTTP API.

Usage:
    # Standalone server
    from coachloop.api import start_server
    start_server(host="0.0.0.0", port=8900)

    # With domain tools and knowledge sources
    from coachloop.api import create_app
    from coachloop.api.deps import create_runner_from_settings

    app = create_app(create_runner_from_settings(tools=my_tools, knowledge=my_sources))
"""

from .app import create_app


def start_server(
    host: str = "0.0.0.0",
    port: int = 8900,
    reload: bool = False,
    **kwargs,
):
    """Start standalone API server.

    Args:
        host: Bind host
        port: Bind port
        reload: Enable auto-reload for development
        **kwargs: Additional uvicorn arguments
    """
    import uvicorn

    uvicorn.run(
        "coachloop.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        **kwargs,
    )


__all__ = ["create_app", "start_server"]
