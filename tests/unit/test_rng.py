"""Unit tests for the RNG stream manager."""

import random

import pytest

from radical.futures.rng import (
    M1,
    M2,
    MRG32k3a,
    RngStream,
    RngStreamManager,
    activate_stream,
    current_generator,
    default_rng_state,
    detect_unsafe_usage,
    next_rng_stream,
    next_rng_substream,
    resolve_seed,
    restore_default_rng,
    save_default_rng,
    seed_to_stream,
    set_root_seed,
)


def _valid(stream):
    s = stream.seed
    return (all(0 <= v < M1 for v in s[:3]) and all(0 <= v < M2 for v in s[3:])
            and any(s[:3]) and any(s[3:]))


class TestRngStream:

    def test_seed_to_stream_is_deterministic_and_valid(self):
        assert seed_to_stream(42) == seed_to_stream(42)
        assert seed_to_stream(42) != seed_to_stream(43)
        assert _valid(seed_to_stream(0))

    @pytest.mark.parametrize("seed", [
        (1, 2, 3, 4, 5),
        (0, 0, 0, 1, 1, 1),
        (1, 1, 1, 0, 0, 0),
        (M1, 1, 1, 1, 1, 1),
        (1, 1, 1, 1, 1, M2),
        (-1, 1, 1, 1, 1, 1),
    ])
    def test_invalid_seed_vectors(self, seed):
        with pytest.raises(ValueError):
            RngStream(seed)

    def test_streams_jump_ahead(self):
        s0 = seed_to_stream(1)
        s1 = next_rng_stream(s0)
        s2 = next_rng_stream(s1)

        assert len({s0, s1, s2}) == 3
        assert all(_valid(s) for s in (s1, s2))
        assert next_rng_stream(s0) == s1

    def test_substream_keeps_index(self):
        s = next_rng_stream(seed_to_stream(1), index=7)
        sub = next_rng_substream(s)

        assert sub.index == 7
        assert sub.seed != s.seed

    def test_as_int_packs_all_components(self):
        s = RngStream((1, 2, 3, 4, 5, 6))
        assert s.as_int() == (((((1 << 32 | 2) << 32 | 3) << 32 | 4) << 32 | 5) << 32 | 6)


class TestMRG32k3a:

    def test_reference_first_value(self):
        gen = MRG32k3a((12345,) * 6)
        assert gen.random() == pytest.approx(0.127011, abs=1e-6)

    def test_same_stream_same_sequence(self):
        stream = seed_to_stream(2024)
        a = [stream.generator().random() for _ in range(1)]
        g1, g2 = MRG32k3a(stream), MRG32k3a(stream)

        assert [g1.random() for _ in range(10)] == [g2.random() for _ in range(10)]
        assert a[0] == MRG32k3a(stream).random()

    def test_random_range_and_derived_methods(self):
        gen = MRG32k3a(seed_to_stream(5))
        values = [gen.random() for _ in range(1000)]

        assert all(0.0 < v < 1.0 for v in values)
        assert 0 <= gen.randint(0, 9) <= 9
        assert gen.getrandbits(70) < 2 ** 70

    def test_state_roundtrip(self):
        gen = MRG32k3a(seed_to_stream(5))
        gen.random()
        state = gen.getstate()
        first = gen.random()
        gen.setstate(state)
        assert gen.random() == first


class TestRngStreamManager:

    def test_same_root_same_streams(self):
        a = RngStreamManager(123).streams(5)
        b = RngStreamManager(123).streams(5)

        assert a == b
        assert len(set(a)) == 5
        assert [s.index for s in a] == [0, 1, 2, 3, 4]

    def test_different_root_different_streams(self):
        assert RngStreamManager(1).next_stream() != RngStreamManager(2).next_stream()

    def test_count(self):
        manager = RngStreamManager(1)
        manager.streams(3)
        assert manager.count == 3

    def test_root_seed_type_is_checked(self):
        with pytest.raises(Exception):
            RngStreamManager("not a seed")


class TestResolveSeed:

    def test_no_stream(self):
        assert resolve_seed(False) is None
        assert resolve_seed(None) is None

    def test_true_takes_next_stream_of_process_manager(self):
        set_root_seed(99)
        first = resolve_seed(True)
        second = resolve_seed(True)

        expected = RngStreamManager(99).streams(2)
        assert [first, second] == expected

    def test_integer_seed(self):
        assert resolve_seed(7) == resolve_seed(7)
        assert resolve_seed(7) != resolve_seed(8)

    def test_explicit_vector(self):
        assert resolve_seed([1, 2, 3, 4, 5, 6]) == RngStream((1, 2, 3, 4, 5, 6))

    def test_unsupported(self):
        with pytest.raises(TypeError):
            resolve_seed(1.5)


class TestDefaultGenerator:

    def test_activate_stream_seeds_random_module(self):
        stream = seed_to_stream(11)
        try:
            activate_stream(stream)
            a = random.random()
            activate_stream(stream)
            b = random.random()
            assert isinstance(current_generator(), MRG32k3a)
        finally:
            activate_stream(None)

        assert a == b
        assert current_generator() is random._inst

    def test_save_and_restore_default_generators(self):
        saved = save_default_rng()
        expected = random.random()

        activate_stream(seed_to_stream(3))
        activate_stream(None)
        restore_default_rng(saved)

        assert random.random() == expected

    def test_detect_unsafe_usage(self):
        before = default_rng_state()
        assert not detect_unsafe_usage(before, default_rng_state())

        random.random()
        assert detect_unsafe_usage(before, default_rng_state())
