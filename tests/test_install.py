import json
import os
import shlex
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import reviewgate.install as installer  # noqa: E402

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "repo"
    path.mkdir()
    if shutil.which("git"):
        subprocess.run(["git", "init", "-q"], cwd=path, check=True)
    (path / ".git" / "hooks").mkdir(parents=True, exist_ok=True)
    return path


def answer(reply):
    return lambda timeout: reply


# ============================================================================
# Hook rendering and .gitignore
# ============================================================================

def test_render_hook_carries_marker_and_command():
    text = installer.render_hook("pre-push", python="/usr/bin/python3")
    assert text.startswith("#!/bin/sh\n")
    assert installer.HOOK_MARKER in text
    assert 'exec /usr/bin/python3 -m reviewgate.cli pre-push "$@"' in text
    assert "git push --no-verify" in text


def test_render_hook_quotes_interpreter_path():
    python = '/opt/py "dev"/$HOME/`x`/python3'
    text = installer.render_hook("pre-commit", python=python)
    exec_line = next(line for line in text.splitlines() if line.startswith("exec "))
    assert shlex.split(exec_line) == ["exec", python, "-m", "reviewgate.cli", "pre-commit", "$@"]


def test_update_gitignore_lines_appends_missing_entries():
    lines, added = installer.update_gitignore_lines(["node_modules/"], ["/.claude-code/"])
    assert added == ["/.claude-code/"]
    assert lines == ["node_modules/", "", installer.GITIGNORE_HEADER, "/.claude-code/"]


def test_update_gitignore_lines_accepts_entry_without_leading_slash():
    lines, added = installer.update_gitignore_lines([".claude-code/"], ["/.claude-code/"])
    assert added == []
    assert lines == [".claude-code/"]


def test_update_gitignore_creates_file(tmp_path):
    added = installer.update_gitignore(str(tmp_path), ["/.claude-code/"])
    assert added == ["/.claude-code/"]
    text = (tmp_path / ".gitignore").read_text(encoding="utf-8")
    assert text == f"{installer.GITIGNORE_HEADER}\n/.claude-code/\n"


# ============================================================================
# Install
# ============================================================================

def test_install_writes_config_prompt_and_hooks(repo):
    code = installer.install(str(repo), pre_push=True, check_reviewer=False, python="/usr/bin/python3")
    assert code == 0

    config = json.loads((repo / ".claude-code" / "config.json").read_text(encoding="utf-8"))
    assert config["enabledHooks"] == ["pre-commit", "pre-push"]
    assert ".py" in config["fileTypes"]
    assert "node_modules/" in config["excludePaths"]
    assert "{diff}" in (repo / ".claude-code" / "prompt.txt").read_text(encoding="utf-8")

    for hook in ("pre-commit", "pre-push"):
        path = repo / ".git" / "hooks" / hook
        assert installer.HOOK_MARKER in path.read_text(encoding="utf-8")
        assert os.access(path, os.X_OK)

    assert "/.claude-code/" in (repo / ".gitignore").read_text(encoding="utf-8")


def test_install_pre_commit_only(repo):
    assert installer.install(str(repo), check_reviewer=False) == 0
    config = json.loads((repo / ".claude-code" / "config.json").read_text(encoding="utf-8"))
    assert config["enabledHooks"] == ["pre-commit"]
    assert (repo / ".git" / "hooks" / "pre-commit").is_file()
    assert not (repo / ".git" / "hooks" / "pre-push").exists()


def test_install_twice_keeps_config_and_gitignore(repo):
    installer.install(str(repo), check_reviewer=False)
    config_path = repo / ".claude-code" / "config.json"
    config_path.write_text('{"fileTypes": [".rs"]}', encoding="utf-8")

    assert installer.install(str(repo), check_reviewer=False) == 0
    assert config_path.read_text(encoding="utf-8") == '{"fileTypes": [".rs"]}'
    gitignore = (repo / ".gitignore").read_text(encoding="utf-8")
    assert gitignore.count("/.claude-code/") == 1


def test_install_pre_push_enables_hook_in_existing_config(repo):
    installer.install(str(repo), check_reviewer=False)
    config_path = repo / ".claude-code" / "config.json"
    config = json.loads(config_path.read_text(encoding="utf-8"))
    assert config["enabledHooks"] == ["pre-commit"]

    assert installer.install(str(repo), pre_push=True, check_reviewer=False) == 0
    config = json.loads(config_path.read_text(encoding="utf-8"))
    assert config["enabledHooks"] == ["pre-commit", "pre-push"]
    assert ".py" in config["fileTypes"]
    assert (repo / ".git" / "hooks" / "pre-push").is_file()


def test_install_keeps_config_without_enabled_hooks_field(repo):
    config_path = repo / ".claude-code" / "config.json"
    config_path.parent.mkdir()
    config_path.write_text('{"fileTypes": [".rs"]}', encoding="utf-8")
    assert installer.install(str(repo), pre_push=True, check_reviewer=False) == 0
    assert config_path.read_text(encoding="utf-8") == '{"fileTypes": [".rs"]}'


def test_install_requires_reviewer(repo, monkeypatch):
    monkeypatch.setattr(installer, "locate_reviewer", lambda command: None)
    assert installer.install(str(repo)) == 1
    assert not (repo / ".claude-code").exists()
    assert not (repo / ".git" / "hooks" / "pre-commit").exists()


def test_install_accepts_located_reviewer(repo, monkeypatch):
    monkeypatch.setattr(installer, "locate_reviewer", lambda command: "/usr/local/bin/claude")
    assert installer.install(str(repo)) == 0


def test_install_rolls_back_on_failure(repo, monkeypatch):
    existing = repo / ".git" / "hooks" / "pre-commit"
    existing.write_text("#!/bin/sh\necho lint\n", encoding="utf-8")

    def broken(path):
        raise PermissionError("read-only file system")

    monkeypatch.setattr(installer, "make_executable", broken)
    assert installer.install(str(repo), check_reviewer=False) == 1
    assert existing.read_text(encoding="utf-8") == "#!/bin/sh\necho lint\n"
    assert not (repo / ".claude-code").exists()


# ============================================================================
# Uninstall
# ============================================================================

def test_uninstall_removes_review_hooks(repo):
    installer.install(str(repo), pre_push=True, check_reviewer=False)
    assert installer.uninstall(str(repo), interactive=False) == 0
    assert not (repo / ".git" / "hooks" / "pre-commit").exists()
    assert not (repo / ".git" / "hooks" / "pre-push").exists()
    # configuration is only removed after confirmation
    assert (repo / ".claude-code").is_dir()


def test_uninstall_keeps_foreign_hook_when_declined(repo):
    foreign = repo / ".git" / "hooks" / "pre-commit"
    foreign.write_text("#!/bin/sh\necho lint\n", encoding="utf-8")
    installer.uninstall(str(repo), interactive=True, read_char=answer("n"))
    assert foreign.exists()


def test_uninstall_removes_foreign_hook_when_confirmed(repo):
    foreign = repo / ".git" / "hooks" / "pre-commit"
    foreign.write_text("#!/bin/sh\necho lint\n", encoding="utf-8")
    installer.uninstall(str(repo), interactive=True, read_char=answer("y"))
    assert not foreign.exists()


def test_uninstall_non_interactive_keeps_foreign_hook(repo):
    foreign = repo / ".git" / "hooks" / "pre-push"
    foreign.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    installer.uninstall(str(repo), interactive=False)
    assert foreign.exists()


def test_uninstall_assume_yes_removes_everything(repo):
    installer.install(str(repo), check_reviewer=False)
    legacy = repo / ".hooks"
    legacy.mkdir()
    (legacy / "pre-commit").write_text(f"# {installer.HOOK_MARKER}\n", encoding="utf-8")

    assert installer.uninstall(str(repo), assume_yes=True) == 0
    assert not legacy.exists()
    assert not (repo / ".claude-code").exists()
    assert not (repo / ".git" / "hooks" / "pre-commit").exists()


@requires_git
def test_uninstall_resets_hooks_path(repo):
    subprocess.run(["git", "config", "core.hooksPath", ".hooks"], cwd=repo, check=True)
    installer.uninstall(str(repo), assume_yes=True)
    result = subprocess.run(
        ["git", "config", "core.hooksPath"], cwd=repo, capture_output=True, text=True
    )
    assert result.returncode != 0
