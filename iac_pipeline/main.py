"""
Main entry point for the IaC pipeline service.
"""

from .api import app  # noqa: F401

if __name__ == "__main__":
    import uvicorn

    from .config import get_settings
    from .logs import configure_logging

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        "iac_pipeline.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )
