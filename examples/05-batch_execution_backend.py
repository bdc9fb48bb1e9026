import logging
import socket

from radical.futures import create_future, set_plan, value
from radical.futures.logging import init_default_logger

logger = logging.getLogger(__name__)


def hostname():
    return socket.gethostname()


def main():
    init_default_logger(logging.INFO)

    # submit each future as a Slurm job; use scheduler="local" to try it out
    # on a machine without a job scheduler
    set_plan("batch", scheduler="slurm",
             resources={"time": "00:05:00", "ntasks": "1"})

    hosts = value([create_future(hostname) for _ in range(4)])
    logger.info(f"Jobs ran on: {sorted(set(hosts))}")

    set_plan("sequential")


if __name__ == "__main__":
    main()
