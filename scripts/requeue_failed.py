"""Reset permanently failed review sync jobs to pending so the next cycle retries them."""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from reviewrank.core.config import get_settings  # noqa: E402
from reviewrank.core.errors import ConfigurationFailure  # noqa: E402
from reviewrank.core.pg_store import build_store  # noqa: E402
from reviewrank.core.queue import IngestionQueue  # noqa: E402

logger = logging.getLogger("requeue_failed")


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    settings = get_settings()
    if not settings.database_url:
        logger.error("DATABASE_URL is required to requeue failed jobs")
        return 2
    try:
        queue = IngestionQueue.from_settings(build_store(settings), settings)
        requeued = queue.requeue_failed()
    except ConfigurationFailure as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to requeue jobs: %s", exc)
        return 1
    logger.info("Requeued %d job(s); queue is now %s", requeued, queue.status())
    return 0


if __name__ == "__main__":
    sys.exit(main())
