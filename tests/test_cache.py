import pytest

from nplm.scorer.cache import EMPTY_KEY, DirectMappedCache, hash_ngram
from nplm.scorer.scorer import Scorer

from conftest import make_model


class TestHash:
    def test_empty(self):
        assert hash_ngram([]) == 0

    def test_single_value(self):
        assert hash_ngram([0]) == 0x9E3779B9
        assert hash_ngram([5]) == 0x9E3779B9 + 5

    def test_order_matters(self):
        assert hash_ngram([1, 2, 3]) != hash_ngram([3, 2, 1])

    def test_fits_in_64_bits(self):
        assert 0 <= hash_ngram([2 ** 40] * 20) < 2 ** 64
        assert 0 <= hash_ngram([-1, -1]) < 2 ** 64


class TestDirectMappedCache:
    def test_starts_empty(self):
        cache = DirectMappedCache(3, 8)
        assert (cache.keys == EMPTY_KEY).all()
        assert cache.get([0, 0, 0]) is None
        assert cache.lookups == 1 and cache.hits == 0

    def test_put_then_get(self):
        cache = DirectMappedCache(3, 8)
        cache.put([1, 2, 3], -1.5)
        assert cache.get([1, 2, 3]) == -1.5
        assert cache.hits == 1

    def test_collision_evicts(self):
        # one slot: every key collides
        cache = DirectMappedCache(2, 1)
        cache.put([1, 2], -1.0)
        assert cache.get([2, 1]) is None
        cache.put([2, 1], -2.0)
        assert cache.get([1, 2]) is None
        assert cache.get([2, 1]) == -2.0

    def test_sentinel_key_is_not_a_hit(self):
        cache = DirectMappedCache(2, 1)
        assert cache.get([EMPTY_KEY, EMPTY_KEY]) is None

    def test_disabled(self):
        assert not DirectMappedCache(3, 0).enabled

    def test_hit_rate_without_lookups(self):
        with pytest.raises(ValueError):
            DirectMappedCache(3, 4).hit_rate()

    def test_negative_capacity(self):
        with pytest.raises(ValueError):
            DirectMappedCache(3, -1)


class TestScorerCache:
    def test_cached_scores_equal_uncached(self, model, all_ngrams):
        plain = Scorer(make_model(num_hidden=model.num_hidden), normalization=True)
        cached = Scorer(model, normalization=True, cache_capacity=17)
        # immediate repeats guarantee hits, the second sweep forces evictions
        sequence = [ngram for ngram in all_ngrams[::3] for _ in range(2)] + all_ngrams[::5]
        for ngram in sequence:
            assert cached.score_single(ngram) == plain.score_single(ngram)
        assert 0 < cached.cache.hits < cached.cache.lookups == len(sequence)

    def test_hit_rate_accounting(self, scorer):
        scorer.set_cache_capacity(1)
        a, b, c = [0, 1, 2], [3, 4, 0], [6, 6, 4]
        for ngram in (a, b, a, a, c, b):
            scorer.score_single(ngram)
        # single slot: only the repeated `a` right after `a` hits
        assert scorer.cache.lookups == 6
        assert scorer.cache.hits == 1
        assert scorer.cache_hit_rate() == 1 / 6

    def test_hit_skips_forward_pass(self, scorer, monkeypatch):
        scorer.set_cache_capacity(64)
        first = scorer.score_single([2, 2, 2])

        def fail(contexts):
            raise AssertionError("forward pass on a cache hit")

        monkeypatch.setattr(scorer.propagator, "fprop", fail)
        assert scorer.score_single([2, 2, 2]) == first
        assert scorer.cache_hit_rate() == 0.5

    def test_enable_clears(self, scorer):
        scorer.set_cache_capacity(8)
        scorer.score_single([1, 1, 1])
        scorer.set_cache_capacity(8)
        assert scorer.cache.lookups == 0
        assert not scorer.cache.valid.any()
        with pytest.raises(ValueError):
            scorer.cache_hit_rate()

    def test_disabled_cache_counts_nothing(self, scorer):
        scorer.set_cache_capacity(0)
        scorer.score_single([1, 1, 1])
        assert scorer.cache.lookups == 0

    def test_configure_reallocates(self, scorer):
        scorer.set_cache_capacity(8)
        scorer.score_single([1, 1, 1])
        scorer.model.resize(4, 7, 5, 4, 6, 3)
        scorer.configure()
        assert scorer.cache.keys.shape == (8, 4)
        assert scorer.cache.lookups == 0
        assert scorer.score_single([1, 1, 1, 1]) == scorer.score_single([1, 1, 1, 1])
        assert scorer.cache_hit_rate() == 0.5

    def test_capacity_requires_configure(self):
        with pytest.raises(RuntimeError):
            Scorer().set_cache_capacity(8)
