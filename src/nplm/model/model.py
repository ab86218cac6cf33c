"""
Neural n-gram Model (PyTorch)
-----------------------------
Feedforward neural probabilistic language model over a fixed window of
(ngram_size - 1) context tokens.

Architecture:
    - Input embeddings: maps token IDs to dense vectors
    - Flatten: concatenates embeddings for all context tokens
    - First stage: linear + activation (maps straight to the output embedding
      size when num_hidden == 0)
    - Second stage: linear + activation (degenerate 1x1 when num_hidden == 0)
    - Output projection: logits over the output vocabulary

All dimensions come from the six topology integers passed to resize().
Parameters are float64 so that scores match reference implementations.
"""

import logging
import sys
from typing import Dict, List, Optional, TextIO, Tuple

import torch
import torch.nn as nn

from nplm.model.config import ACTIVATION_FUNCTION_NAMES, FORMAT_VERSION, ModelConfig
from nplm.model.matrix_io import (
    LineReader,
    ModelFormatError,
    read_matrix,
    read_vector,
    read_words,
    write_matrix,
    write_vector,
    write_words,
)

logger = logging.getLogger(__name__)

DTYPE = torch.float64

ACTIVATION_FUNCTIONS = {
    "identity": nn.Identity,
    "rectifier": nn.ReLU,
    "tanh": nn.Tanh,
    "hardtanh": nn.Hardtanh,
}

PARAMETER_UPDATE_MODES = ("SGD", "ADA", "ADAD")

# config keys that map directly onto integer ModelConfig fields
_INT_CONFIG_KEYS = (
    "ngram_size",
    "input_vocab_size",
    "output_vocab_size",
    "input_embedding_dimension",
    "num_hidden",
    "output_embedding_dimension",
)


def _linear(in_features: int, out_features: int) -> nn.Linear:
    # skip_init avoids the default kaiming init on potentially huge matrices
    layer = nn.utils.skip_init(nn.Linear, in_features, out_features, dtype=DTYPE)
    with torch.no_grad():
        layer.weight.zero_()
        layer.bias.zero_()
    return layer


def _embedding(num_embeddings: int, embedding_dim: int) -> nn.Embedding:
    return nn.Embedding(num_embeddings, embedding_dim,
                        _weight=torch.zeros(num_embeddings, embedding_dim, dtype=DTYPE))


class EmbeddingPlaceholder(nn.Module):
    """
    Stand-in for the input embedding table after premultiplication.

    Keeps a 1x1 weight so the model still has the attribute, but refuses lookups.
    """

    def __init__(self):
        super().__init__()
        self.register_buffer("weight", torch.zeros(1, 1, dtype=DTYPE))

    def forward(self, x):
        raise RuntimeError("input embeddings were folded into the first stage by premultiply()")


class PremultipliedLinear(nn.Module):
    """
    First stage with the embedding table folded in.

    The weight has one (out_features x vocab_size) block per context position;
    a context is projected by summing, per position, the column selected by the
    token index, then adding the bias.
    """

    def __init__(self, weight: torch.Tensor, bias: torch.Tensor, vocab_size: int, context_size: int):
        super().__init__()
        assert weight.size(1) == vocab_size * context_size
        self.vocab_size = vocab_size
        self.context_size = context_size
        self.weight = nn.Parameter(weight, requires_grad=False)
        self.bias = nn.Parameter(bias, requires_grad=False)
        self.register_buffer(
            "offsets", torch.arange(context_size, dtype=torch.long) * vocab_size
        )

    def forward(self, contexts):
        """
        Args:
            contexts (Tensor): shape (batch_size, context_size), token IDs

        Returns:
            Tensor: shape (batch_size, out_features), pre-activation values
        """
        columns = contexts + self.offsets  # (batch_size, context_size)
        selected = self.weight.t()[columns]  # (batch_size, context_size, out_features)
        return selected.sum(dim=1) + self.bias


class Model(nn.Module):
    def __init__(self, ngram_size=1, input_vocab_size=1, output_vocab_size=1,
                 input_embedding_dimension=1, num_hidden=1, output_embedding_dimension=1,
                 activation_function="rectifier"):
        """
        Args:
            ngram_size (int): Context tokens + 1 target position.
            input_vocab_size (int): Number of tokens the context may use.
            output_vocab_size (int): Number of tokens that can be predicted.
            input_embedding_dimension (int): Size of each input embedding.
            num_hidden (int): Size of the first hidden stage, 0 for none.
            output_embedding_dimension (int): Size of the vector fed to the output projection.
            activation_function (str): One of identity, rectifier, tanh, hardtanh.
        """
        super().__init__()
        self.activation_function = activation_function
        self.parameter_update_mode = "SGD"
        self.update_state: Dict[str, torch.Tensor] = {}
        self.resize(ngram_size, input_vocab_size, output_vocab_size,
                    input_embedding_dimension, num_hidden, output_embedding_dimension)
        self.set_activation_function(activation_function)

    # ------------------------------------------------------------------
    # topology
    # ------------------------------------------------------------------

    def resize(self, ngram_size, input_vocab_size, output_vocab_size,
               input_embedding_dimension, num_hidden, output_embedding_dimension):
        """Derive every sub-object's shape from the topology. Parameters are zeroed."""
        ModelConfig(ngram_size, input_vocab_size, output_vocab_size,
                    input_embedding_dimension, num_hidden, output_embedding_dimension,
                    self.activation_function).validate()

        context_size = ngram_size - 1
        self.input_layer = _embedding(input_vocab_size, input_embedding_dimension)
        if num_hidden == 0:
            self.first_hidden_linear = _linear(input_embedding_dimension * context_size,
                                               output_embedding_dimension)
            self.second_hidden_linear = _linear(1, 1)
        else:
            self.first_hidden_linear = _linear(input_embedding_dimension * context_size, num_hidden)
            self.second_hidden_linear = _linear(num_hidden, output_embedding_dimension)
        self.output_layer = _linear(output_embedding_dimension, output_vocab_size)

        self.ngram_size = ngram_size
        self.input_vocab_size = input_vocab_size
        self.output_vocab_size = output_vocab_size
        self.input_embedding_dimension = input_embedding_dimension
        self.num_hidden = num_hidden
        self.output_embedding_dimension = output_embedding_dimension
        self.update_state = {}
        self.premultiplied = False

    def set_activation_function(self, name: str) -> None:
        if name not in ACTIVATION_FUNCTIONS:
            raise ValueError(
                f"Unknown activation function: {name} (expected one of {', '.join(ACTIVATION_FUNCTION_NAMES)})"
            )
        self.activation_function = name
        self.first_hidden_activation = ACTIVATION_FUNCTIONS[name]()
        self.second_hidden_activation = ACTIVATION_FUNCTIONS[name]()

    @property
    def context_size(self) -> int:
        return self.ngram_size - 1

    @property
    def config(self) -> ModelConfig:
        return ModelConfig(self.ngram_size, self.input_vocab_size, self.output_vocab_size,
                           self.input_embedding_dimension, self.num_hidden,
                           self.output_embedding_dimension, self.activation_function)

    # ------------------------------------------------------------------
    # parameters
    # ------------------------------------------------------------------

    @torch.no_grad()
    def initialize(self, rng: Optional[torch.Generator] = None, use_normal_init: bool = False,
                   init_range: float = 0.01, init_bias: float = 0.0,
                   parameter_update_mode: str = "SGD", adagrad_epsilon: float = 0.0):
        """
        Fill all parameters with random values.

        Args:
            rng (torch.Generator): Source of randomness, default generator if None.
            use_normal_init (bool): Draw from N(0, init_range) instead of U(-init_range, init_range).
            init_range (float): Scale of the random values.
            init_bias (float): Constant initial bias of the output layer.
            parameter_update_mode (str): SGD, ADA (adagrad) or ADAD (adadelta).
            adagrad_epsilon (float): Initial value of the adagrad accumulators.
        """
        if parameter_update_mode not in PARAMETER_UPDATE_MODES:
            raise ValueError(f"Unknown parameter update mode: {parameter_update_mode}")
        if self.premultiplied:
            raise RuntimeError("cannot initialize a premultiplied model, resize it first")

        def fill(tensor):
            if use_normal_init:
                tensor.normal_(0.0, init_range, generator=rng)
            else:
                tensor.uniform_(-init_range, init_range, generator=rng)

        # input, output, then both linear stages; not the on-disk order
        fill(self.input_layer.weight)
        fill(self.output_layer.weight)
        self.output_layer.bias.fill_(init_bias)
        for layer in (self.first_hidden_linear, self.second_hidden_linear):
            fill(layer.weight)
            fill(layer.bias)

        # auxiliary state for the training path; allocated here because shapes are known
        self.update_state = {}
        if parameter_update_mode == "ADA":
            for name, param in self.named_parameters():
                self.update_state[f"{name}.gradient_sq_sum"] = torch.full_like(param, adagrad_epsilon)
        elif parameter_update_mode == "ADAD":
            for name, param in self.named_parameters():
                self.update_state[f"{name}.gradient_sq_avg"] = torch.zeros_like(param)
                self.update_state[f"{name}.update_sq_avg"] = torch.zeros_like(param)
        self.parameter_update_mode = parameter_update_mode

    @torch.no_grad()
    def premultiply(self) -> None:
        """
        Fold the input embeddings into the first stage.

        For each context position i the block U[:, i*d:(i+1)*d] @ E.T is computed
        and the blocks are concatenated into a (out x vocab*(ngram_size-1)) weight.
        The embedding table is then replaced by a 1x1 placeholder. Irreversible.
        """
        if self.premultiplied:
            return
        if not isinstance(self.input_layer, nn.Embedding) or not isinstance(self.first_hidden_linear, nn.Linear):
            raise RuntimeError("premultiply needs a first stage fed directly by the embedding table")

        d = self.input_embedding_dimension
        embeddings = self.input_layer.weight
        weight = self.first_hidden_linear.weight
        blocks = [weight[:, i * d:(i + 1) * d] @ embeddings.t() for i in range(self.context_size)]
        if blocks:
            fused = torch.cat(blocks, dim=1)
        else:
            fused = weight.new_zeros(weight.size(0), 0)

        self.first_hidden_linear = PremultipliedLinear(
            fused.contiguous(), self.first_hidden_linear.bias.detach().clone(),
            self.input_vocab_size, self.context_size,
        )
        self.input_layer = EmbeddingPlaceholder()
        self.premultiplied = True
        logger.debug("premultiplied first stage: %s", tuple(fused.shape))

    # ------------------------------------------------------------------
    # forward
    # ------------------------------------------------------------------

    def project_context(self, contexts):
        """
        Args:
            contexts (Tensor): shape (batch_size, context_size), token IDs

        Returns:
            Tensor: shape (batch_size, first stage size), first stage before activation
        """
        if self.premultiplied:
            return self.first_hidden_linear(contexts)
        emb = self.input_layer(contexts)  # (batch_size, context_size, emb_dim)
        # explicit width: -1 is ambiguous when the context is empty
        emb = emb.reshape(emb.size(0), self.context_size * self.input_embedding_dimension)
        return self.first_hidden_linear(emb)

    def hidden_activations(self, contexts) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        """First and second stage activations; the second is None when num_hidden == 0."""
        first = self.first_hidden_activation(self.project_context(contexts))
        if self.num_hidden == 0:
            return first, None
        second = self.second_hidden_activation(self.second_hidden_linear(first))
        return first, second

    def forward(self, contexts):
        """
        Args:
            contexts (Tensor): shape (batch_size, context_size), token IDs for context

        Returns:
            logits (Tensor): shape (batch_size, output_vocab_size), unnormalized scores
        """
        first, second = self.hidden_activations(contexts)
        return self.output_layer(first if second is None else second)

    # ------------------------------------------------------------------
    # file format
    # ------------------------------------------------------------------

    def read_config(self, stream) -> None:
        """
        Parse `key value` lines up to a blank line, then resize.

        Unknown keys are warned about and ignored. A version other than 1 is fatal.
        """
        reader = stream if isinstance(stream, LineReader) else LineReader(stream)
        values = {key: getattr(self, key) for key in _INT_CONFIG_KEYS}
        activation_function = self.activation_function

        for line in reader.section_lines():
            fields = line.split()
            key = fields[0]
            if len(fields) < 2:
                raise ModelFormatError(f"config field without a value: {key}")
            value = fields[1]
            if key == "activation_function":
                activation_function = value
            elif key == "version":
                version = _parse_int(key, value)
                if version != FORMAT_VERSION:
                    logger.error("file format mismatch (expected %d, found %d)", FORMAT_VERSION, version)
                    sys.exit(1)
            elif key == "vocab_size":
                values["input_vocab_size"] = values["output_vocab_size"] = _parse_int(key, value)
            elif key in values:
                values[key] = _parse_int(key, value)
            else:
                logger.warning("unrecognized field in config: %s", key)

        self.resize(*(values[key] for key in _INT_CONFIG_KEYS))
        self.set_activation_function(activation_function)

    @torch.no_grad()
    def read(self, stream, input_words: Optional[List[str]] = None,
             output_words: Optional[List[str]] = None, log: Optional[TextIO] = None) -> None:
        """
        Read a model from a text stream made of sections.

        A line starting with a backslash opens a section; its content runs to
        the next blank line. Unknown sections are skipped with a warning so that
        older readers can load files written by newer writers. Reading stops at
        \\end or at the end of the stream.

        Args:
            stream: Text stream (or LineReader) positioned at the start of the model.
            input_words (list): Filled with the input vocabulary, if given.
            output_words (list): Filled with the output vocabulary, if given. When
                None, an \\output_vocab section is skipped.
            log (TextIO): Optional stream receiving a trace of the sections read.
        """
        reader = stream if isinstance(stream, LineReader) else LineReader(stream)

        def trace(message):
            if log is not None:
                log.write(message + "\n")

        for line in reader:
            if not line:
                continue
            if not line.startswith("\\"):
                logger.warning("unrecognized section: %s", line)
                trace(f"warning: unrecognized section: {line}")
                _skip_section(reader)
                continue

            trace(f"reading section {line}")
            if line == "\\end":
                break
            elif line == "\\config":
                self.read_config(reader)
            elif line == "\\vocab":
                words = read_words(reader)
                _replace(input_words, words)
                _replace(output_words, words)
                trace(f"vocab: {len(words)} words")
            elif line == "\\input_vocab":
                words = read_words(reader)
                _replace(input_words, words)
                trace(f"input_vocab: {len(words)} words")
            elif line == "\\output_vocab":
                if output_words is None:
                    trace("skipping unexpected output_vocab section")
                    _skip_section(reader)
                    continue
                words = read_words(reader)
                _replace(output_words, words)
                trace(f"output_vocab: {len(words)} words")
            elif line in self._parameter_sections():
                param = self._parameter_sections()[line]
                if param.dim() == 2:
                    value = read_matrix(reader, param.size(0), param.size(1), line)
                else:
                    value = read_vector(reader, param.size(0), line)
                param.copy_(value)
            else:
                logger.warning("unrecognized section: %s", line)
                trace(f"warning: unrecognized section: {line}")
                _skip_section(reader)

    def read_file(self, filename: str, input_words: Optional[List[str]] = None,
                  output_words: Optional[List[str]] = None, log: Optional[TextIO] = None) -> None:
        """Read a model file. Raises OSError if the file cannot be opened."""
        with open(filename, "r", encoding="utf-8") as f:
            self.read(f, input_words, output_words, log)

    def write(self, filename: str, input_words: Optional[List[str]] = None,
              output_words: Optional[List[str]] = None) -> None:
        """Write the model to a file in canonical section order."""
        # refuse before open() truncates an existing file
        self._check_writable()
        with open(filename, "w", encoding="utf-8") as f:
            self.write_stream(f, input_words, output_words)

    @torch.no_grad()
    def write_stream(self, stream: TextIO, input_words: Optional[List[str]] = None,
                     output_words: Optional[List[str]] = None) -> None:
        self._check_writable()

        stream.write("\\config\n")
        for line in self.config.to_lines():
            stream.write(line + "\n")
        stream.write("\n")

        if input_words is not None:
            stream.write("\\input_vocab\n")
            write_words(input_words, stream)
            stream.write("\n")

        if output_words is not None:
            stream.write("\\output_vocab\n")
            write_words(output_words, stream)
            stream.write("\n")

        for name, param in self._parameter_sections().items():
            stream.write(name + "\n")
            if param.dim() == 2:
                write_matrix(param, stream)
            else:
                write_vector(param, stream)
            stream.write("\n")

        stream.write("\\end\n")

    def _check_writable(self) -> None:
        if self.premultiplied:
            raise RuntimeError("a premultiplied model has no embedding table and cannot be written")

    def _parameter_sections(self) -> Dict[str, torch.Tensor]:
        # insertion order is the on-disk order
        return {
            "\\input_embeddings": self.input_layer.weight,
            "\\hidden_weights 1": self.first_hidden_linear.weight,
            "\\hidden_biases 1": self.first_hidden_linear.bias,
            "\\hidden_weights 2": self.second_hidden_linear.weight,
            "\\hidden_biases 2": self.second_hidden_linear.bias,
            "\\output_weights": self.output_layer.weight,
            "\\output_biases": self.output_layer.bias,
        }


def _parse_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ModelFormatError(f"config field {key}: expected an integer, got {value!r}") from e


def _replace(target: Optional[List[str]], words: List[str]) -> None:
    if target is not None:
        target[:] = words


def _skip_section(reader: LineReader) -> None:
    for line in reader:
        if not line:
            break
