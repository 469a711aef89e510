import os

import pytest

from lima.localpathutil import expand


@pytest.fixture
def home(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    return str(tmp_path)


def test_tilde_alone(home):
    assert expand("~") == home


def test_tilde_slash_subpath(home):
    assert expand("~/foo") == os.path.join(home, "foo")


def test_tilde_user_is_rejected(home):
    with pytest.raises(ValueError, match="unexpandable"):
        expand("~foo/bar")


def test_empty_is_rejected(home):
    with pytest.raises(ValueError, match="empty path"):
        expand("")


def test_relative_path_becomes_absolute(home, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    result = expand("sub/dir")
    assert os.path.isabs(result)
    assert result == os.path.join(os.getcwd(), "sub", "dir")


def test_absolute_path_is_normalised(home):
    assert expand("/a/b/../c") == "/a/c"