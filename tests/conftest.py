import pytest
import torch

from nplm.model.model import Model
from nplm.scorer.scorer import Scorer

NGRAM_SIZE = 3
INPUT_VOCAB = 7
OUTPUT_VOCAB = 5


def make_model(num_hidden=6, activation_function="tanh", seed=0):
    model = Model(
        ngram_size=NGRAM_SIZE,
        input_vocab_size=INPUT_VOCAB,
        output_vocab_size=OUTPUT_VOCAB,
        input_embedding_dimension=4,
        num_hidden=num_hidden,
        output_embedding_dimension=3,
        activation_function=activation_function,
    )
    model.initialize(torch.Generator().manual_seed(seed), init_range=0.5, init_bias=-0.25)
    return model


@pytest.fixture(params=[6, 0], ids=["hidden", "no_hidden"])
def model(request):
    return make_model(num_hidden=request.param)


@pytest.fixture
def scorer(model):
    return Scorer(model)


@pytest.fixture
def all_ngrams():
    """Every n-gram over the small vocabularies, one per row."""
    return [
        [a, b, t]
        for a in range(INPUT_VOCAB)
        for b in range(INPUT_VOCAB)
        for t in range(OUTPUT_VOCAB)
    ]
