from radical.futures.utils import (
    caller_environment,
    estimate_size,
    format_size,
    get_next_uid,
    reset_uid_counter,
)


def test_uids_are_unique_and_padded():
    a, b = get_next_uid(), get_next_uid()

    assert a != b
    assert len(a) == 6


def test_reset_uid_counter():
    get_next_uid()
    reset_uid_counter()

    assert get_next_uid() == "000001"


def test_format_size():
    assert format_size(10) == "10 bytes"
    assert format_size(1536) == "1.5 KiB"
    assert format_size(3 * 1024**3) == "3.0 GiB"


def test_estimate_size():
    assert estimate_size(list(range(1000))) > estimate_size([])
    assert estimate_size(len) == 0

    class Array:
        nbytes = 4096

    assert estimate_size(Array()) == 4096


def test_caller_environment_locals_shadow_globals():
    format_size = "local"

    def helper():
        return caller_environment()

    env = helper()
    assert env["format_size"] == "local"
    assert env["estimate_size"] is estimate_size
