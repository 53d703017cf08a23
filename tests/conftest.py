"""Shared fixtures for circlestatus tests."""

import git
import pytest


@pytest.fixture
def git_repo(tmp_path, monkeypatch):
    """A repository with one commit and a second local branch ``dev``."""
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test User")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@example.com")

    root = tmp_path / "work"
    root.mkdir()
    repo = git.Repo.init(root)
    repo.index.commit("initial")
    repo.create_head("dev")
    repo.create_head("feature/login")
    return repo
