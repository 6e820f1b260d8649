"""python -m ticketdesk: serve the API with uvicorn."""

import uvicorn

from . import config


def main() -> None:
    # one process; scale out with more instances, not workers sharing sqlite
    uvicorn.run(
        "ticketdesk.server:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
