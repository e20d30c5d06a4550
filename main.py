"""OpsInbox: main entry point."""
import sys

from opsinbox.config import ConfigError, load_config
from opsinbox.utils import setup_logging
from opsinbox.web import create_app


def main():
    try:
        cfg = load_config()
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    logger = setup_logging(cfg.log_level)

    import uvicorn

    try:
        app = create_app(cfg)
    except ConfigError as e:
        logger.error(str(e))
        logger.error(
            "\n=== SETUP REQUIRED ===\n"
            "1. Go to https://console.cloud.google.com/\n"
            "2. Create a project and enable the Gmail API\n"
            "3. Create OAuth 2.0 credentials (Web application)\n"
            "4. Set GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET and GOOGLE_REDIRECT_URI in .env\n"
            "5. Run this script again\n"
        )
        sys.exit(1)

    logger.info(f"Server running on http://localhost:{cfg.port}")
    config = uvicorn.Config(app, host="0.0.0.0", port=cfg.port, log_level="warning")
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
