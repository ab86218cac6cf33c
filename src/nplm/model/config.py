from dataclasses import asdict, dataclass
from typing import List

FORMAT_VERSION = 1

ACTIVATION_FUNCTION_NAMES = ("identity", "rectifier", "tanh", "hardtanh")


@dataclass
class ModelConfig:
    """
    Topology of a neural n-gram model, as stored in the \\config section.
    """
    ngram_size: int = 1
    input_vocab_size: int = 1
    output_vocab_size: int = 1
    input_embedding_dimension: int = 1
    num_hidden: int = 1
    output_embedding_dimension: int = 1
    activation_function: str = "rectifier"

    @property
    def context_size(self) -> int:
        return self.ngram_size - 1

    def topology(self):
        """The six integers accepted by Model.resize, in order."""
        return (
            self.ngram_size,
            self.input_vocab_size,
            self.output_vocab_size,
            self.input_embedding_dimension,
            self.num_hidden,
            self.output_embedding_dimension,
        )

    def validate(self) -> None:
        if self.ngram_size < 1:
            raise ValueError(f"ngram_size must be at least 1, got {self.ngram_size}")
        for name in ("input_vocab_size", "output_vocab_size",
                     "input_embedding_dimension", "output_embedding_dimension"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.num_hidden < 0:
            raise ValueError(f"num_hidden must be non-negative, got {self.num_hidden}")
        if self.activation_function not in ACTIVATION_FUNCTION_NAMES:
            raise ValueError(f"Unknown activation function: {self.activation_function}")

    def to_lines(self) -> List[str]:
        """Lines of the \\config section body, version first."""
        lines = [f"version {FORMAT_VERSION}"]
        lines += [f"{key} {value}" for key, value in asdict(self).items()]
        return lines
