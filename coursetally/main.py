from __future__ import annotations

import logging
import os

import uvicorn

from coursetally.config_manager import ConfigManager


def main() -> None:
    config = ConfigManager(os.getenv("COURSETALLY_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("COURSETALLY_HOST", "0.0.0.0")
    port = int(os.getenv("COURSETALLY_PORT", "8080"))
    uvicorn.run("coursetally.web_app:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
