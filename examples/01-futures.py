import logging
import time

from radical.futures import create_future, future, resolved, value
from radical.futures.logging import init_default_logger

logger = logging.getLogger(__name__)


def slow_square(x):
    time.sleep(0.5)
    return x * x


def main():
    init_default_logger(logging.INFO)

    # a callable with arguments
    f1 = future(slow_square, 4)

    # source code, evaluated against a snapshot of the variables it reads
    offset = 10
    f2 = future("offset + 32")
    offset = 0  # does not affect f2

    # lazy futures are only submitted when their value is needed
    f3 = create_future(slow_square, args=(3,), lazy=True)

    logger.info(f"Resolved so far: {resolved([f1, f2, f3])}")
    logger.info(f"Values: {value([f1, f2, f3])}")


if __name__ == "__main__":
    main()
