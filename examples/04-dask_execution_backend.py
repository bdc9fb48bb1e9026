import logging

import numpy as np

from radical.futures import create_future, set_plan, value
from radical.futures.logging import init_default_logger

logger = logging.getLogger(__name__)


def analyze(dataset, lo, hi):
    return float(np.mean(dataset[lo:hi]))


def main():
    init_default_logger(logging.INFO)

    set_plan("dask", n_workers=2, threads_per_worker=1)

    dataset = np.random.default_rng(0).random(10000)
    first = create_future(analyze, args=(dataset, 0, 5000))
    second = create_future(analyze, args=(dataset, 5000, 10000))

    overall = create_future("(a + b) / 2", env={"a": value(first), "b": value(second)})
    logger.info(f"Overall average: {value(overall)}")

    set_plan("sequential")


if __name__ == "__main__":
    main()
