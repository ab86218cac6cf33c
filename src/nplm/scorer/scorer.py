"""
Scorer for neural n-gram models
-------------------------------
Wraps a Model and a Propagator and returns log-probabilities of the last token
of an n-gram given the tokens before it.

- Single lookups go through a direct-mapped cache (when enabled) and run
  single-threaded.
- Batch lookups score many n-grams at once and never touch the cache.
- With normalization off, the raw output-layer score is returned. It is not a
  probability and does not sum to one over the vocabulary.
"""

import logging
import math
import sys
from typing import Optional, Sequence, TextIO

import torch

from nplm.model.model import Model
from nplm.propagator.propagator import Propagator
from nplm.scorer.cache import DirectMappedCache
from nplm.scorer.threads import single_threaded

logger = logging.getLogger(__name__)


class Scorer:
    def __init__(self, model: Optional[Model] = None, normalization: bool = False,
                 cache_capacity: int = 0):
        """
        Args:
            model (Model): Model to bind; an empty Model is created if None.
            normalization (bool): Return normalized log-probabilities.
            cache_capacity (int): Number of cache slots, 0 disables the cache. Needs a model,
                since the cache width is the model's ngram_size.
        """
        if model is None and cache_capacity:
            raise ValueError("cache_capacity needs a model; call set_cache_capacity() after configure()")
        self.model = model if model is not None else Model()
        self.normalization = normalization
        self.weight = 1.0
        self.propagator = Propagator(self.model, 1)
        self.cache = DirectMappedCache()
        self.ngram_size: Optional[int] = None
        if model is not None:
            self.configure(model)
            if cache_capacity:
                self.set_cache_capacity(cache_capacity)

    def set_normalization(self, value: bool) -> None:
        self.normalization = bool(value)

    def set_log_base(self, base: float) -> None:
        """Scores are returned as log_base(p); the default is the natural log."""
        if base <= 0 or base == 1:
            raise ValueError(f"log base must be positive and different from 1, got {base}")
        self.weight = 1.0 / math.log(base)

    def configure(self, model: Optional[Model] = None) -> None:
        """
        Bind a model, or pick up a topology change of the bound one.

        Must be called again whenever the bound model is resized or re-read.
        """
        if model is not None:
            self.model = model
            self.propagator.model = model
        self.ngram_size = self.model.ngram_size
        if self.cache.enabled:
            self.cache.reset(self.ngram_size)
        self.propagator.resize()

    def set_width(self, width: int) -> None:
        """Largest number of n-grams pushed through the propagator at once by score_batch."""
        self.propagator.resize(width)

    def set_cache_capacity(self, capacity: int) -> None:
        """Enable the cache with `capacity` slots (0 disables it). Clears entries and counters."""
        self._check_configured()
        self.cache.reset(self.ngram_size, capacity)

    def cache_hit_rate(self) -> float:
        return self.cache.hit_rate()

    def premultiply_model(self) -> None:
        if not self.model.premultiplied:
            self.model.premultiply()

    def order(self) -> int:
        self._check_configured()
        return self.ngram_size

    def context_width(self) -> int:
        """Number of context tokens preceding the target."""
        return self.order() - 1

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------

    def read(self, filename: str, log: Optional[TextIO] = None) -> None:
        """Load a whole model file. A missing or unreadable file is fatal."""
        try:
            f = open(filename, "r", encoding="utf-8")
        except OSError as e:
            logger.error("could not open model file %s: %s", filename, e)
            sys.exit(1)
        with f:
            self.read_stream(f, log)

    def read_stream(self, stream, log: Optional[TextIO] = None) -> None:
        self.model.read(stream, log=log)
        self.configure()

    # ------------------------------------------------------------------
    # scoring
    # ------------------------------------------------------------------

    def score_single(self, ngram: Sequence[int]) -> float:
        """
        Log-probability of the last token of `ngram` given the others.

        Args:
            ngram (sequence of int): ngram_size token IDs, context first, target last

        Returns:
            float: weight * log p(target | context), or the weighted raw score
                when normalization is off
        """
        key = self._check_ngram(ngram)

        if self.cache.enabled:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        with single_threaded():
            contexts = torch.tensor([key[:-1]], dtype=torch.long)
            self.propagator.fprop(contexts)
            target = key[-1]
            if self.normalization:
                scores = self.propagator.output_scores()[0]
                logz = torch.logsumexp(scores, dim=0)
                log_prob = self.weight * float(scores[target] - logz)
            else:
                log_prob = self.weight * self.propagator.output_score(target, 0)

        if self.cache.enabled:
            self.cache.put(key, log_prob)
        return log_prob

    @torch.no_grad()
    def score_batch(self, ngrams, out: Optional[torch.Tensor] = None) -> torch.Tensor:
        """
        Score many n-grams at once.

        Args:
            ngrams (Tensor or nested list): shape (num_ngrams, ngram_size), one n-gram per row
            out (Tensor): optional float64 tensor of length num_ngrams that receives the scores

        Returns:
            Tensor: shape (num_ngrams,), the same values as score_single would return
        """
        self._check_configured()
        ngrams = torch.as_tensor(ngrams, dtype=torch.long)
        if ngrams.numel() == 0:
            # an empty nested list arrives as shape (0,)
            ngrams = ngrams.reshape(0, self.ngram_size)
        if ngrams.dim() != 2 or ngrams.size(1) != self.ngram_size:
            raise ValueError(
                f"expected n-grams of shape (N, {self.ngram_size}), got {tuple(ngrams.shape)}"
            )
        self._check_indices(ngrams)

        num_ngrams = ngrams.size(0)
        if out is None:
            out = torch.empty(num_ngrams, dtype=torch.float64)
        elif out.shape != (num_ngrams,):
            raise ValueError(f"output has shape {tuple(out.shape)}, expected ({num_ngrams},)")

        width = self.propagator.max_batch_width
        for start in range(0, num_ngrams, width):
            batch = ngrams[start:start + width]
            targets = batch[:, -1]
            self.propagator.fprop(batch[:, :-1])
            if self.normalization:
                log_probs = torch.log_softmax(self.propagator.output_scores(), dim=1)
                out[start:start + batch.size(0)] = self.weight * log_probs.gather(1, targets.unsqueeze(1)).squeeze(1)
            else:
                # each row has its own target, so score them one by one
                for j, target in enumerate(targets.tolist()):
                    out[start + j] = self.weight * self.propagator.output_score(target, j)
        return out

    def assemble_ngram(self, tokens: Sequence[int], count: Optional[int] = None,
                       start: int = 1, null: int = 0) -> list:
        """
        Turn a token prefix of any length into an n-gram of exactly ngram_size tokens.

        Short prefixes are left-padded with `start` if they begin with it, with
        `null` otherwise. Long prefixes keep their last ngram_size tokens.
        """
        self._check_configured()
        if count is None:
            count = len(tokens)
        if count <= 0:
            raise ValueError("at least one token (the target) is required")
        tokens = list(tokens[:count])
        missing = self.ngram_size - count
        if missing > 0:
            fill = start if tokens[0] == start else null
            return [fill] * missing + tokens
        return tokens[count - self.ngram_size:]

    def assemble_from_flat_sequence(self, tokens: Sequence[int], count: Optional[int] = None,
                                    start: int = 1, null: int = 0) -> float:
        """Pad or truncate `tokens` to an n-gram (see assemble_ngram) and score it."""
        return self.score_single(self.assemble_ngram(tokens, count, start, null))

    # ------------------------------------------------------------------
    # checks
    # ------------------------------------------------------------------

    def _check_configured(self) -> None:
        if self.ngram_size is None:
            raise RuntimeError("Scorer.configure() must be called before scoring")
        if self.ngram_size != self.model.ngram_size:
            raise RuntimeError(
                f"model was resized to ngram_size {self.model.ngram_size}; call configure() again"
            )

    def _check_ngram(self, ngram: Sequence[int]) -> list:
        self._check_configured()
        key = [int(t) for t in ngram]
        if len(key) != self.ngram_size:
            raise ValueError(f"expected an n-gram of {self.ngram_size} tokens, got {len(key)}")
        self._check_indices(torch.tensor([key], dtype=torch.long))
        return key

    def _check_indices(self, ngrams: torch.Tensor) -> None:
        if ngrams.numel() == 0:
            return
        contexts, targets = ngrams[:, :-1], ngrams[:, -1]
        if contexts.numel() and (contexts.min() < 0 or contexts.max() >= self.model.input_vocab_size):
            raise ValueError(f"context token out of range [0, {self.model.input_vocab_size})")
        if targets.min() < 0 or targets.max() >= self.model.output_vocab_size:
            raise ValueError(f"target token out of range [0, {self.model.output_vocab_size})")
