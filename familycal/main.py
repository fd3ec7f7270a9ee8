from __future__ import annotations

import logging
import os

import uvicorn

from familycal.config_manager import ConfigManager


def main() -> None:
    config = ConfigManager(os.getenv("FAMILYCAL_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("FAMILYCAL_HOST", "0.0.0.0")
    port = int(os.getenv("FAMILYCAL_PORT", "8080"))
    uvicorn.run("familycal.web_api:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
