import logging

import pandas as pd
import pytest
import torch

from nplm.cli.test_network import main, read_data_file, score_test_file
from nplm.model.matrix_io import ModelFormatError
from nplm.scorer.scorer import Scorer

from conftest import make_model

NGRAMS = [[0, 1, 2], [3, 4, 0], [6, 6, 4], [1, 1, 1], [2, 5, 3]]


@pytest.fixture
def files(tmp_path):
    model_file = tmp_path / "model.nnlm"
    make_model().write(str(model_file))
    test_file = tmp_path / "test.txt"
    test_file.write_text("".join(" ".join(map(str, ngram)) + "\n" for ngram in NGRAMS))
    return model_file, test_file


def test_read_data_file(files):
    _, test_file = files
    assert read_data_file(test_file, 3).tolist() == NGRAMS


def test_read_data_file_wrong_width(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("1 2 3\n4 5\n")
    with pytest.raises(ModelFormatError, match="bad.txt:2"):
        read_data_file(path, 3)


def test_log_likelihood(files):
    model_file, test_file = files
    total = score_test_file({
        "model_file": str(model_file),
        "test_file": str(test_file),
        "minibatch_size": 2,
    })
    expected = Scorer(make_model(), normalization=True).score_batch(NGRAMS).sum().item()
    assert total == pytest.approx(expected)


def test_premultiply_and_unnormalized(files):
    model_file, test_file = files
    config = {"model_file": str(model_file), "test_file": str(test_file), "unnormalized": True}
    raw = score_test_file(config)
    fused = score_test_file(dict(config, premultiply=True))
    assert fused == pytest.approx(raw, rel=1e-6)


def test_main_writes_scores(files, tmp_path, caplog):
    model_file, test_file = files
    csv_path = tmp_path / "scores.csv"
    with caplog.at_level(logging.DEBUG):
        main([
            "--model_file", str(model_file),
            "--test_file", str(test_file),
            "--minibatch_size", "3",
            "--log_base", "10",
            "--debug", "2",
            "--scores_csv", str(csv_path),
        ])
    assert "Number of test instances: 5" in caplog.text
    assert "Test log-likelihood" in caplog.text

    df = pd.read_csv(csv_path)
    assert df["ngram"].tolist() == [" ".join(map(str, ngram)) for ngram in NGRAMS]
    scorer = Scorer(make_model(), normalization=True)
    scorer.set_log_base(10)
    expected = scorer.score_batch(NGRAMS)
    torch.testing.assert_close(torch.tensor(df["score"].tolist(), dtype=torch.float64), expected)


def test_missing_test_file_is_fatal(files, tmp_path):
    model_file, _ = files
    with pytest.raises(SystemExit):
        main(["--model_file", str(model_file), "--test_file", str(tmp_path / "missing.txt")])


def test_missing_model_file_is_fatal(files, tmp_path):
    _, test_file = files
    with pytest.raises(SystemExit):
        main(["--model_file", str(tmp_path / "missing.nnlm"), "--test_file", str(test_file)])
