"""RQ worker process entrypoint for video refresh jobs.

Run alongside the API when VIDEO_POLL_USE_QUEUE is enabled; the API's poll
loop then only enqueues refreshes and this process performs them.
"""

import logging
import sys

from rq import Worker

from services.video_queue import VIDEO_QUEUE_NAME, get_redis_connection

logger = logging.getLogger("video_worker")


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    burst = "--burst" in args

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    logger.info("Listening on queue %s (burst=%s)", VIDEO_QUEUE_NAME, burst)
    worker = Worker([VIDEO_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True, burst=burst)
    return 0


if __name__ == "__main__":
    sys.exit(main())
