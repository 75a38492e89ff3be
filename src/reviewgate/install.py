"""Install and remove the review hooks in a git repository."""
from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import stat
import sys
from typing import Callable

from reviewgate.gate import (
    CONFIG_DIR,
    CONFIG_NAME,
    DEFAULT_PROMPT,
    DEFAULT_REVIEWER,
    DEFAULT_TIMEOUT,
    Decision,
    GitError,
    ask,
    git_output,
    load_json_object,
    locate_reviewer,
    string_list,
    read_text,
    read_tty_char,
)

logger = logging.getLogger("reviewgate")

HOOK_MARKER = "Claude Code Review"
LEGACY_HOOKS_DIR = ".hooks"
GITIGNORE_HEADER = "# Claude Code Review files"

INSTALL_FILE_TYPES = [
    ".ts", ".js", ".java", ".cs", ".py", ".rb", ".go", ".php", ".css", ".html",
    ".jsx", ".tsx", ".groovy", ".gsp", ".swift", ".kt", ".c", ".cpp", ".h",
    ".sh", ".ps1", ".yml", ".yaml", ".json", ".xml",
]
INSTALL_EXCLUDE_PATHS = [
    "node_modules/", "dist/", "target/", "bin/", "obj/", "__pycache__/",
    "build/", ".gradle/", "venv/", "env/", ".venv/", ".env/", "packages/",
    "vendor/", "bower_components/",
]
INSTALL_REVIEW_PROMPT = (
    "You are an expert code reviewer. Review the following code changes for "
    "potential issues including bugs, memory leaks, breaking changes, and best "
    "practice violations. Consider performance impacts, maintainability concerns, "
    "and security implications. Provide a concise summary and list any critical "
    "issues found with clear explanations."
)

HOOK_TEMPLATE = """#!/bin/sh
# {marker} {hook} hook, installed by review-gate.
# Bypass once with: git {action} --no-verify
exec {python} -m reviewgate.cli {hook} "$@"
"""


def default_config(pre_push: bool) -> dict:
    hooks = ["pre-commit", "pre-push"] if pre_push else ["pre-commit"]
    return {
        "enabledHooks": hooks,
        "fileTypes": INSTALL_FILE_TYPES,
        "excludePaths": INSTALL_EXCLUDE_PATHS,
        "reviewPrompt": INSTALL_REVIEW_PROMPT,
        "reviewerCommand": DEFAULT_REVIEWER,
        "promptTimeout": DEFAULT_TIMEOUT,
    }


def render_hook(hook: str, python: str | None = None) -> str:
    action = "commit" if hook == "pre-commit" else "push"
    return HOOK_TEMPLATE.format(
        marker=HOOK_MARKER, hook=hook, action=action, python=shlex.quote(python or sys.executable)
    )


def enable_hooks(config_file: str, hooks: list[str]) -> list[str]:
    """Add installed hooks missing from an existing ``enabledHooks`` list."""
    data = load_json_object(config_file)
    enabled = string_list(data.get("enabledHooks"))
    if enabled is None:
        # missing or malformed: the resolver already enables every hook
        return []
    missing = [hook for hook in hooks if hook not in enabled]
    if missing:
        data["enabledHooks"] = [*enabled, *missing]
        with open(config_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=4)
            f.write("\n")
    return missing


def is_review_hook(path: str) -> bool:
    return HOOK_MARKER in read_text(path)


def hooks_dir(project_root: str) -> str:
    try:
        path = git_output(["rev-parse", "--git-path", "hooks"], project_root).strip()
    except GitError:
        path = ""
    if not path:
        return os.path.join(project_root, ".git", "hooks")
    if not os.path.isabs(path):
        path = os.path.join(project_root, path)
    return os.path.normpath(path)


def update_gitignore_lines(lines: list[str], entries: list[str]) -> tuple[list[str], list[str]]:
    present = {line.strip().lstrip("/") for line in lines}
    missing = [entry for entry in entries if entry.lstrip("/") not in present]
    if not missing:
        return lines, []
    updated = list(lines)
    if updated and updated[-1].strip():
        updated.append("")
    updated.append(GITIGNORE_HEADER)
    updated.extend(missing)
    return updated, missing


def update_gitignore(project_root: str, entries: list[str]) -> list[str]:
    path = os.path.join(project_root, ".gitignore")
    lines = read_text(path).splitlines()
    updated, added = update_gitignore_lines(lines, entries)
    if added:
        with open(path, "w", encoding="utf-8") as f:
            f.write("\n".join(updated) + "\n")
    return added


def make_executable(path: str) -> None:
    mode = os.stat(path).st_mode
    os.chmod(path, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def install(
    project_root: str,
    pre_push: bool = False,
    check_reviewer: bool = True,
    python: str | None = None,
) -> int:
    logger.info("Claude Code Review Git Hooks Installation")
    if check_reviewer:
        reviewer = locate_reviewer(DEFAULT_REVIEWER)
        if not reviewer:
            logger.error("Claude Code CLI not found.")
            logger.info("Install it with: npm install -g @anthropic-ai/claude-code")
            logger.info("Or rerun with --skip-reviewer-check.")
            return 1
        logger.info("Found Claude Code CLI: %s", reviewer)

    config_dir = os.path.join(project_root, CONFIG_DIR)
    target_dir = hooks_dir(project_root)
    hooks = ["pre-commit", "pre-push"] if pre_push else ["pre-commit"]

    config_dir_created = not os.path.isdir(config_dir)
    backups: dict[str, str] = {}
    written: list[str] = []
    try:
        os.makedirs(config_dir, exist_ok=True)
        config_file = os.path.join(config_dir, CONFIG_NAME)
        if os.path.isfile(config_file):
            logger.info("Configuration file already exists")
            backups[config_file] = read_text(config_file)
            written.append(config_file)
            for hook in enable_hooks(config_file, hooks):
                logger.info("Enabled %s hook in %s", hook, config_file)
        else:
            with open(config_file, "w", encoding="utf-8") as f:
                json.dump(default_config(pre_push), f, indent=4)
                f.write("\n")
            prompt_file = os.path.join(config_dir, "prompt.txt")
            if not os.path.isfile(prompt_file):
                with open(prompt_file, "w", encoding="utf-8") as f:
                    f.write(DEFAULT_PROMPT)
            logger.info("Created default config file at %s", config_file)

        for entry in update_gitignore(project_root, [f"/{CONFIG_DIR}/"]):
            logger.info("Added %s to .gitignore", entry)

        os.makedirs(target_dir, exist_ok=True)
        for hook in hooks:
            hook_path = os.path.join(target_dir, hook)
            if os.path.isfile(hook_path):
                backups[hook_path] = read_text(hook_path)
                if not is_review_hook(hook_path):
                    logger.warning("Replacing existing %s hook at %s", hook, hook_path)
            with open(hook_path, "w", encoding="utf-8", newline="\n") as f:
                f.write(render_hook(hook, python))
            written.append(hook_path)
            make_executable(hook_path)
            logger.info("Installed %s hook at %s", hook, hook_path)
    except OSError as exc:
        logger.error("Installation failed: %s", exc)
        rollback(written, backups, config_dir if config_dir_created else "")
        return 1

    logger.info("Installation complete.")
    logger.info("Update configuration in %s/%s", CONFIG_DIR, CONFIG_NAME)
    logger.info("To bypass the review for one commit: git commit --no-verify")
    return 0


def rollback(written: list[str], backups: dict[str, str], config_dir: str) -> None:
    logger.warning("Rolling back changes...")
    for path in written:
        try:
            if path in backups:
                with open(path, "w", encoding="utf-8", newline="\n") as f:
                    f.write(backups[path])
                logger.info("Restored %s from backup", path)
            elif os.path.exists(path):
                os.remove(path)
                logger.info("Removed %s", path)
        except OSError as exc:
            logger.error("Could not restore %s: %s", path, exc)
    if config_dir:
        shutil.rmtree(config_dir, ignore_errors=True)
        logger.info("Removed configuration directory")


def confirm(
    question: str,
    assume_yes: bool,
    interactive: bool,
    read_char: Callable[[float], str | None],
) -> bool:
    if assume_yes:
        return True
    return ask(question, DEFAULT_TIMEOUT, interactive, read_char=read_char) is Decision.PROCEED


def remove_hook(
    path: str,
    assume_yes: bool,
    interactive: bool,
    read_char: Callable[[float], str | None],
) -> bool:
    if not os.path.isfile(path):
        return False
    if not is_review_hook(path):
        logger.warning("%s exists but doesn't appear to be a Claude Code Review hook.", path)
        if not confirm("Do you want to remove it anyway?", assume_yes, interactive, read_char):
            logger.info("Keeping %s", path)
            return False
    os.remove(path)
    logger.info("Removed %s", path)
    return True


def uninstall(
    project_root: str,
    assume_yes: bool = False,
    interactive: bool = False,
    read_char: Callable[[float], str | None] = read_tty_char,
) -> int:
    logger.info("Claude Code Review Git Hooks Uninstaller")
    search_dirs = [hooks_dir(project_root)]
    legacy_dir = os.path.join(project_root, LEGACY_HOOKS_DIR)
    if os.path.isdir(legacy_dir):
        search_dirs.append(legacy_dir)

    removed = 0
    for directory in search_dirs:
        for hook in ("pre-commit", "pre-push"):
            if remove_hook(os.path.join(directory, hook), assume_yes, interactive, read_char):
                removed += 1
    if not removed:
        logger.info("No hooks removed")

    if os.path.isdir(legacy_dir) and confirm(
        f"Do you want to remove the {LEGACY_HOOKS_DIR} directory?", assume_yes, interactive, read_char
    ):
        shutil.rmtree(legacy_dir)
        logger.info("Removed custom hooks directory")

    try:
        hooks_path = git_output(["config", "core.hooksPath"], project_root).strip()
    except GitError:
        hooks_path = ""
    if hooks_path:
        logger.info("Current Git hooks path is: %s", hooks_path)
        if confirm("Do you want to reset Git hooks path configuration?", assume_yes, interactive, read_char):
            try:
                git_output(["config", "--unset", "core.hooksPath"], project_root)
                logger.info("Reset Git hooks path to default")
            except GitError as exc:
                logger.warning("%s", exc)

    config_dir = os.path.join(project_root, CONFIG_DIR)
    if os.path.isdir(config_dir) and confirm(
        "Do you want to remove the configuration directory and all configuration?",
        assume_yes,
        interactive,
        read_char,
    ):
        shutil.rmtree(config_dir)
        logger.info("Removed configuration directory")

    logger.info("Uninstallation complete.")
    return 0
