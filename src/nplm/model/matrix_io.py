"""
Text layout for model parameters
--------------------------------
Matrices are written one row per line with tab-separated values, bias vectors
one value per line. Sections end at a blank line.

Values are written with repr() so that a write/read cycle is bit-identical.
"""

from typing import Iterator, List, Optional, TextIO

import torch


class ModelFormatError(ValueError):
    """Raised when a model or data file does not match the expected layout."""


class LineReader:
    """
    Line iterator over a text stream with one line of pushback.

    Every line is right-stripped before it is handed out, so section names and
    values never carry trailing whitespace or newlines.
    """

    def __init__(self, stream: TextIO):
        self.stream = stream
        self._pending: Optional[str] = None

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        if self._pending is not None:
            line, self._pending = self._pending, None
            return line
        raw = self.stream.readline()
        if not raw:
            raise StopIteration
        return raw.rstrip()

    def push_back(self, line: str) -> None:
        assert self._pending is None, "only one line of pushback"
        self._pending = line

    def section_lines(self, marker: Optional[str] = "\\") -> Iterator[str]:
        """Yield lines of the current section; stops at a blank line, EOF or a marker line."""
        for line in self:
            if not line:
                return
            if marker is not None and line.startswith(marker):
                # leave the next section header for the caller
                self.push_back(line)
                return
            yield line


def write_matrix(matrix: torch.Tensor, stream: TextIO) -> None:
    for row in matrix.tolist():
        stream.write("\t".join(repr(float(v)) for v in row))
        stream.write("\n")


def write_vector(vector: torch.Tensor, stream: TextIO) -> None:
    for value in vector.tolist():
        stream.write(repr(float(value)))
        stream.write("\n")


def read_matrix(reader: LineReader, rows: int, cols: int, name: str = "matrix") -> torch.Tensor:
    """
    Read a rows x cols matrix from the current section.

    Args:
        reader (LineReader): Reader positioned just after the section header.
        rows (int): Expected number of rows.
        cols (int): Expected number of values per row.
        name (str): Section name, used in error messages.

    Returns:
        Tensor: float64 tensor of shape (rows, cols).
    """
    values: List[List[float]] = []
    for line in reader.section_lines():
        fields = line.split()
        if len(fields) != cols:
            raise ModelFormatError(
                f"{name}: row {len(values) + 1} has {len(fields)} values, expected {cols}"
            )
        try:
            values.append([float(f) for f in fields])
        except ValueError as e:
            raise ModelFormatError(f"{name}: row {len(values) + 1}: {e}") from e
    if len(values) != rows:
        raise ModelFormatError(f"{name}: found {len(values)} rows, expected {rows}")
    return torch.tensor(values, dtype=torch.float64).reshape(rows, cols)


def read_vector(reader: LineReader, size: int, name: str = "vector") -> torch.Tensor:
    return read_matrix(reader, size, 1, name).reshape(size)


def read_words(reader: LineReader) -> List[str]:
    """One word per line; the position of a word is its token index."""
    # words may legitimately start with a backslash, only a blank line ends the list
    return list(reader.section_lines(marker=None))


def write_words(words: List[str], stream: TextIO) -> None:
    for word in words:
        stream.write(word)
        stream.write("\n")
