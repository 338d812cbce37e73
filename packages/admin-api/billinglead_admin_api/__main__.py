"""Main entry point for the admin API service."""

import uvicorn

from billinglead_common.config import ApiSettings
from billinglead_common.log import configure_logging


def main():
    """Serve the admin API with uvicorn."""
    settings = ApiSettings.from_environment()
    configure_logging(settings.log_level)

    print(f"Starting Billing Lead Admin API on http://{settings.host}:{settings.port}")
    uvicorn.run("billinglead_admin_api.app:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
