"""Run the extraction worker, webhook dispatcher and stuck-task reaper.

Usage:
  python scripts/run_scheduler.py
"""

from extraction_queue.core.config import get_settings
from extraction_queue.core.logging import setup_logging
from extraction_queue.workers.scheduler import build_scheduler


def main() -> None:
    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    build_scheduler(settings).run_forever()


if __name__ == "__main__":
    main()
