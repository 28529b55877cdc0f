import logging

import uvicorn

from .config import load_settings
from .main import create_app


def main():
    settings = load_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
