"""Run an RQ worker for completion notification jobs."""

from rq import Worker

from extraction_queue.core.config import get_settings
from extraction_queue.core.logging import setup_logging
from extraction_queue.workers.queue import get_queue


def main() -> None:
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    queue = get_queue()
    Worker([queue], connection=queue.connection).work()


if __name__ == "__main__":
    main()
