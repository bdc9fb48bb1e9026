import logging
import random
import warnings

from radical.futures import create_future, message, set_plan, set_root_seed, value
from radical.futures.logging import init_default_logger

logger = logging.getLogger(__name__)


def chatty(x):
    print(f"working on {x}")
    message(f"progress: {x}")
    if x % 2:
        warnings.warn(f"{x} is odd")
    logging.getLogger("chatty").info(f"done with {x}")
    return x


def noisy_draw():
    return random.random()


def main():
    init_default_logger(logging.INFO)
    set_plan("multisession", workers=2)

    # output, messages, warnings and log records of the workers are relayed
    # here, in order, when the values are requested
    futures = [create_future(chatty, args=(i,)) for i in range(4)]
    logger.info(f"Values: {value(futures)}")

    # parallel-safe, reproducible random numbers
    set_root_seed(42)
    draws = value([create_future(noisy_draw, seed=True) for _ in range(3)])
    logger.info(f"Seeded draws: {draws}")

    # without a stream the default generator is reported as unsafe
    value(create_future(noisy_draw))

    set_plan("sequential")


if __name__ == "__main__":
    main()
