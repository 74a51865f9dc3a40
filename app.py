"""Application entry point for the dog-walking billing API."""

import logging

from dogwalking.config import Config
from dogwalking.webapp import create_app

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    # The reloader would start a second reconciliation scheduler.
    app.run(debug=True, use_reloader=False)
