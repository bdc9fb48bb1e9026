import logging
import os
import time

from radical.futures import create_future, nbr_of_workers, set_plan, using_plan, value
from radical.futures.logging import init_default_logger

logger = logging.getLogger(__name__)


def where(i):
    time.sleep(0.2)
    return i, os.getpid()


def run_on(plan_name, **params):
    with using_plan(plan_name, **params):
        start = time.time()
        futures = [create_future(where, args=(i,)) for i in range(8)]
        results = value(futures)
        pids = {pid for _, pid in results}
        logger.info(f"{plan_name}: {len(results)} futures on {nbr_of_workers()} "
                    f"workers, {len(pids)} processes, {time.time() - start:.2f}s")


def main():
    init_default_logger(logging.INFO)

    set_plan("sequential")
    run_on("sequential")
    run_on("multisession", workers=4)
    run_on("cluster", workers=2)
    run_on("batch", scheduler="local")


if __name__ == "__main__":
    main()
