"""
Entrypoint module for uvicorn.

Run as:

    uvicorn occupancy.main:app

or, with settings from the environment / .env:

    python -m occupancy.main
"""

import logging

import uvicorn

from occupancy.api import app  # FastAPI app
from occupancy.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)


def main() -> None:
    uvicorn.run(app, host="0.0.0.0", port=3000, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
