import logging
import os
import sys

import uvicorn

from services.config_store import ConfigStore
from services.errors import ConfigInvariantError

logger = logging.getLogger("agent-router")


def main() -> None:
    """Run the router. A broken config stops the process before it binds the port."""
    try:
        ConfigStore().get_config()
    except ConfigInvariantError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(str(e))
        sys.exit(1)

    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3010")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
