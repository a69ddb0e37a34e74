"""Local entry point: serve the proxy with uvicorn."""

import uvicorn

from copilot_pool.config.settings import get_settings
from copilot_pool.main import app


def main() -> None:
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
