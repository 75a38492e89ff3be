from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable, Iterable, TextIO

from reviewgate.gate import (
    Decision,
    GitError,
    ReviewConfig,
    ReviewRun,
    ask,
    config_path_for,
    find_project_root,
    has_terminal,
    invoke_reviewer,
    list_changed_paths,
    read_diff,
    read_tty_char,
    resolve_config,
    resolve_push_range,
    select_changes,
    utc_now,
    write_run_log,
)
from reviewgate.install import install, uninstall

logger = logging.getLogger("reviewgate")

ACTIONS = {"pre-commit": "commit", "pre-push": "push"}

LEVEL_COLORS = {
    "DEBUG": "\033[2m",
    "INFO": "\033[0;34m",
    "WARNING": "\033[1;33m",
    "ERROR": "\033[0;31m",
    "CRITICAL": "\033[0;31m",
}
RESET = "\033[0m"
RULE = "=" * 47


class LevelFormatter(logging.Formatter):
    def __init__(self, use_color: bool) -> None:
        super().__init__("[%(levelname)s] %(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = LEVEL_COLORS.get(record.levelname)
        if not self.use_color or not color:
            return text
        label = f"[{record.levelname}]"
        return text.replace(label, f"{color}{label}{RESET}", 1)


def setup_logging(verbose: bool = False, stream: TextIO | None = None) -> logging.Logger:
    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    handler.setFormatter(LevelFormatter(use_color=stream.isatty()))
    log = logging.getLogger("reviewgate")
    log.handlers[:] = [handler]
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    log.propagate = False
    return log


def display_review(output: str, out: TextIO, reviewer: str = "") -> None:
    name = os.path.basename(reviewer)
    out.write(f"{RULE}\n")
    out.write(f"Code Review Results ({name})\n" if name else "Code Review Results\n")
    out.write(f"{RULE}\n")
    out.write(output.rstrip("\n") + "\n")
    out.write(f"{RULE}\n")


def record_run(config: ReviewConfig, run: ReviewRun) -> None:
    if not config.log_dir:
        return
    try:
        path = write_run_log(config.log_dir, run)
    except OSError as exc:
        logger.warning("Could not write review log to %s: %s", config.log_dir, exc)
        return
    logger.debug("Review log written to %s", path)


def review_range(
    hook: str,
    diff_args: list[str],
    range_label: str,
    project_root: str,
    config: ReviewConfig,
    interactive: bool,
    read_char: Callable[[float], str | None] = read_tty_char,
    out: TextIO | None = None,
) -> Decision:
    out = out or sys.stderr
    action = ACTIONS.get(hook, "operation")

    try:
        changed = list_changed_paths(diff_args, project_root)
    except GitError as exc:
        logger.warning("%s. Skipping review.", exc)
        return Decision.PROCEED
    logger.debug("All changed files: %s", " ".join(changed) or "none")
    logger.debug("File types: %s", "|".join(config.file_types) or "any")
    logger.debug("Excluded paths: %s", "|".join(config.exclude_paths) or "none")

    files = select_changes(changed, config)
    if not files:
        logger.info("No relevant changed files found. Skipping review.")
        return Decision.PROCEED
    logger.info("Files to be reviewed:\n  %s", "\n  ".join(files))

    try:
        diff_text = read_diff(diff_args, files, project_root)
    except GitError as exc:
        logger.warning("%s. Skipping review.", exc)
        return Decision.PROCEED
    if not diff_text.strip():
        logger.info("No changes detected. Skipping review.")
        return Decision.PROCEED

    logger.info("Running code review with %s, this may take a moment...", config.reviewer_command)
    outcome = invoke_reviewer(diff_text, config)
    run = ReviewRun(
        hook=hook,
        range_label=range_label,
        files=files,
        diff_text=diff_text,
        outcome=outcome,
        timestamp=utc_now(),
    )

    if outcome.status == "unavailable":
        logger.warning(
            "Reviewer '%s' not found. Skipping code review but allowing %s to proceed.",
            config.reviewer_command,
            action,
        )
        run.decision = Decision.PROCEED
    elif not outcome.ok:
        logger.error("Error running reviewer (exit code: %s). Output:", outcome.exit_code)
        out.write(outcome.output.rstrip("\n") + "\n")
        logger.error("Check your reviewer installation, for example with: %s --version",
                     config.reviewer_command)
        run.decision = ask(
            f"Do you want to proceed with this {action} despite the error?",
            config.prompt_timeout,
            interactive,
            read_char=read_char,
            out=out,
        )
        if run.decision is Decision.PROCEED:
            logger.warning("Proceeding with %s despite reviewer error.", action)
        else:
            logger.info("%s aborted due to reviewer error.", action.capitalize())
    else:
        logger.info("Code review completed successfully.")
        display_review(outcome.output, out, config.reviewer_command)
        run.decision = ask(
            f"Do you want to proceed with this {action}?",
            config.prompt_timeout,
            interactive,
            read_char=read_char,
            out=out,
        )
        if run.decision is Decision.PROCEED:
            logger.info("Proceeding with %s.", action)
        else:
            logger.info("%s aborted. Please address the issues and try again.", action.capitalize())

    record_run(config, run)
    return run.decision


def run_pre_commit(
    project_root: str,
    config: ReviewConfig,
    interactive: bool,
    read_char: Callable[[float], str | None] = read_tty_char,
    out: TextIO | None = None,
) -> int:
    if "pre-commit" not in config.enabled_hooks:
        logger.info("Pre-commit hook is disabled in configuration. Skipping review.")
        return 0
    logger.info("Running code review on staged changes...")
    decision = review_range(
        "pre-commit", ["--cached"], "staged", project_root, config,
        interactive, read_char=read_char, out=out,
    )
    return decision.exit_code


def run_pre_push(
    ref_lines: Iterable[str],
    project_root: str,
    config: ReviewConfig,
    interactive: bool,
    read_char: Callable[[float], str | None] = read_tty_char,
    out: TextIO | None = None,
) -> int:
    """Review every ref git is about to push; the first refusal blocks the push."""
    if "pre-push" not in config.enabled_hooks:
        logger.info("Pre-push hook is disabled in configuration. Skipping review.")
        return 0
    logger.info("Running code review on commits to be pushed...")
    for line in ref_lines:
        parts = line.split()
        if len(parts) < 4:
            continue
        local_ref, local_sha, _remote_ref, remote_sha = parts[:4]
        try:
            diff_args = resolve_push_range(local_sha, remote_sha, project_root)
        except GitError as exc:
            logger.warning("%s. Skipping review of %s.", exc, local_ref)
            continue
        if diff_args is None:
            logger.debug("Nothing to review for %s", local_ref)
            continue
        label = f"{local_ref} {diff_args[0][:12]}..{diff_args[1][:12]}"
        decision = review_range(
            "pre-push", diff_args, label, project_root, config,
            interactive, read_char=read_char, out=out,
        )
        if decision is Decision.ABORT:
            return decision.exit_code
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="review-gate",
        description="Review staged or pushed changes with an AI reviewer before git proceeds",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug output")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("pre-commit", help="review staged changes (git pre-commit hook)")
    push = sub.add_parser("pre-push", help="review commits to be pushed (git pre-push hook)")
    push.add_argument("remote", nargs="?", default="")
    push.add_argument("url", nargs="?", default="")
    inst = sub.add_parser("install", help="install the hooks into the current repository")
    inst.add_argument("--pre-push", action="store_true", help="also install the pre-push hook")
    inst.add_argument(
        "--skip-reviewer-check",
        action="store_true",
        help="install even if the reviewer CLI cannot be found",
    )
    uninst = sub.add_parser("uninstall", help="remove the hooks from the current repository")
    uninst.add_argument("-y", "--yes", action="store_true", help="answer yes to every question")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    project_root = find_project_root(os.getcwd())
    if args.command == "install":
        if not project_root:
            logger.error("Not a git repository. Run this from inside a git repository.")
            return 1
        return install(
            project_root,
            pre_push=args.pre_push,
            check_reviewer=not args.skip_reviewer_check,
        )
    if args.command == "uninstall":
        if not project_root:
            logger.error("Not a git repository. Nothing to uninstall.")
            return 1
        return uninstall(project_root, assume_yes=args.yes, interactive=has_terminal())

    if not project_root:
        logger.warning("Not inside a git repository. Skipping review.")
        return 0
    config = resolve_config(config_path_for(project_root))
    interactive = has_terminal()
    if args.command == "pre-commit":
        return run_pre_commit(project_root, config, interactive)
    logger.debug("Pushing to %s %s", args.remote, args.url)
    return run_pre_push(sys.stdin, project_root, config, interactive)


if __name__ == "__main__":
    sys.exit(main())
