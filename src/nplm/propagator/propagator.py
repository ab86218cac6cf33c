"""
Forward propagation through a neural n-gram Model
-------------------------------------------------
The Propagator runs the stages of a Model on a batch of contexts and keeps the
resulting activations around, so that the caller can either score the whole
output vocabulary or a single target per row.
"""

from typing import Optional

import torch

from nplm.model.model import Model


class Propagator:
    """
    Stage-by-stage forward pass over a Model.

    Attributes:
        model: The bound Model (shared, read-only)
        max_batch_width: Largest number of contexts handled per fprop call
        first_hidden_activation: Activations of the first stage after fprop
        second_hidden_activation: Activations of the second stage, None when skipped
    """

    def __init__(self, model: Model, max_batch_width: int = 1):
        self.model = model
        self.max_batch_width = 1
        self.first_hidden_activation: Optional[torch.Tensor] = None
        self.second_hidden_activation: Optional[torch.Tensor] = None
        self.resize(max_batch_width)

    def resize(self, max_batch_width: Optional[int] = None) -> None:
        """Drop stale activations after the model topology changed; optionally set the batch width."""
        if max_batch_width is not None:
            if max_batch_width < 1:
                raise ValueError(f"max_batch_width must be positive, got {max_batch_width}")
            self.max_batch_width = max_batch_width
        self.first_hidden_activation = None
        self.second_hidden_activation = None

    @property
    def skip_hidden(self) -> bool:
        """True when the model has no hidden layer and the first stage feeds the output layer."""
        return self.model.num_hidden == 0

    @torch.no_grad()
    def fprop(self, contexts: torch.Tensor) -> None:
        """
        Args:
            contexts (Tensor): shape (batch_size, ngram_size - 1), token IDs for context
        """
        first, second = self.model.hidden_activations(contexts)
        self.first_hidden_activation = first
        self.second_hidden_activation = second

    @property
    def hidden(self) -> torch.Tensor:
        """Activations of the last stage that was not skipped, shape (batch_size, output_embedding_dimension)."""
        if self.first_hidden_activation is None:
            raise RuntimeError("fprop() must run before the output layer is scored")
        if self.skip_hidden:
            return self.first_hidden_activation
        return self.second_hidden_activation

    @torch.no_grad()
    def output_scores(self) -> torch.Tensor:
        """Scores over the full output vocabulary, shape (batch_size, output_vocab_size)."""
        return self.model.output_layer(self.hidden)

    @torch.no_grad()
    def output_score(self, target: int, column: int = 0) -> float:
        """Score of one target for one row of the last batch, without the full vocabulary."""
        layer = self.model.output_layer
        return float(torch.dot(layer.weight[target], self.hidden[column]) + layer.bias[target])
