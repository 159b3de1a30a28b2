"""API server entry point for python -m genqueue.api"""
import uvicorn
from genqueue.config import settings
from genqueue.logging_setup import configure_logging

if __name__ == "__main__":
    configure_logging()
    uvicorn.run(
        "genqueue.api.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
        log_config=None,
    )
