"""ASGI entrypoint: ``uvicorn producer.main:app`` or ``playwright-jobs-api``."""
from os import getenv

import uvicorn

from producer.server import Server

HOST = getenv("HOST", "0.0.0.0")
PORT = int(getenv("PORT", 8000))

server = Server()
app = server.app


def run() -> None:
    # Local dispatch keeps jobs on this event loop, so one process only
    uvicorn.run(app, host=HOST, port=PORT, workers=1, log_config=None)


if __name__ == "__main__":
    run()
