from __future__ import annotations

import glob
import json
import logging
import os
import select
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, TextIO

logger = logging.getLogger("reviewgate")

CONFIG_DIR = ".claude-code"
CONFIG_NAME = "config.json"
PROMPT_NAME = "prompt.txt"

HOOK_NAMES = ("pre-commit", "pre-push")

DEFAULT_ENABLED_HOOKS = frozenset(HOOK_NAMES)
DEFAULT_FILE_TYPES = (".ts", ".js", ".java", ".css", ".html")
DEFAULT_EXCLUDE_PATHS = ("node_modules/", "dist/", "target/")
DEFAULT_REVIEWER = "claude"
DEFAULT_REVIEWER_ARGS = ("-p",)
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 24 * 60 * 60

DIFF_PLACEHOLDER = "{diff}"
ERROR_MARKER = "Error running Claude Code CLI"

DEFAULT_PROMPT = """# Code Review

You are an expert code reviewer. I need you to review the following code changes. This is a review to catch issues before they leave the developer's machine.

## Your Task
Please review the following git diff and identify:
1. Potential bugs or logical errors
2. Memory leaks (especially unsubscribed observables and event listeners)
3. Performance issues or inefficient code
4. Breaking changes that could affect other parts of the application
5. Best practice violations or maintainability concerns
6. Security implications

## Git Diff
{diff}

## Review Output Format
Please provide your review in this format:

1. First, a 2-3 sentence summary of the changes
2. A list of issues found, each with:
   - Severity (CRITICAL, HIGH, MEDIUM, LOW)
   - File and line number
   - Brief explanation of the issue
   - Suggested fix
3. Any positive aspects of the code changes

Focus on being concise and actionable. Developers will be seeing this at commit time.
"""


@dataclass(frozen=True)
class ReviewConfig:
    enabled_hooks: frozenset[str] = DEFAULT_ENABLED_HOOKS
    file_types: tuple[str, ...] = DEFAULT_FILE_TYPES
    exclude_paths: tuple[str, ...] = DEFAULT_EXCLUDE_PATHS
    prompt_template: str = DEFAULT_PROMPT
    reviewer_command: str = DEFAULT_REVIEWER
    reviewer_args: tuple[str, ...] = DEFAULT_REVIEWER_ARGS
    prompt_timeout: int = DEFAULT_TIMEOUT
    log_dir: str = ""


@dataclass(frozen=True)
class ReviewRequest:
    diff_text: str
    prompt: str


@dataclass
class ReviewOutcome:
    status: str  # success|unavailable|error
    output: str = ""
    exit_code: int | None = None

    @classmethod
    def success(cls, output: str) -> "ReviewOutcome":
        return cls("success", output, 0)

    @classmethod
    def unavailable(cls) -> "ReviewOutcome":
        return cls("unavailable")

    @classmethod
    def error(cls, exit_code: int, output: str) -> "ReviewOutcome":
        return cls("error", output, exit_code)

    @property
    def ok(self) -> bool:
        return self.status == "success"


class Decision(Enum):
    PROCEED = "proceed"
    ABORT = "abort"

    @property
    def exit_code(self) -> int:
        return 0 if self is Decision.PROCEED else 1


@dataclass
class ReviewRun:
    """Everything recorded about one reviewed range."""
    hook: str
    range_label: str
    files: list[str] = field(default_factory=list)
    diff_text: str = ""
    outcome: ReviewOutcome | None = None
    decision: Decision = Decision.PROCEED
    timestamp: str = ""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def read_text(path: str) -> str:
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read()
    except OSError:
        return ""


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def find_project_root(start_dir: str) -> str:
    cur = os.path.abspath(start_dir)
    while True:
        git_path = os.path.join(cur, ".git")
        if os.path.isdir(git_path) or os.path.isfile(git_path):
            return cur
        parent = os.path.dirname(cur)
        if parent == cur:
            return ""
        cur = parent


def config_path_for(project_root: str) -> str:
    return os.path.join(project_root, CONFIG_DIR, CONFIG_NAME)


def load_json_object(path: str) -> dict[str, Any]:
    raw = read_text(path)
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed configuration %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def string_list(value: Any) -> tuple[str, ...] | None:
    if not isinstance(value, list):
        return None
    if not all(isinstance(item, str) for item in value):
        return None
    return tuple(value)


def resolve_prompt(data: dict[str, Any], config_dir: str) -> str:
    prompt_file = data.get("promptFile")
    if not isinstance(prompt_file, str) or not prompt_file.strip():
        prompt_file = PROMPT_NAME
    prompt_path = os.path.join(config_dir, os.path.expanduser(prompt_file))
    template = read_text(prompt_path)
    if template.strip():
        return template
    inline = data.get("reviewPrompt")
    if isinstance(inline, str) and inline.strip():
        return inline
    return DEFAULT_PROMPT


def resolve_config(path: str) -> ReviewConfig:
    """Read the hook configuration, falling back to defaults field by field.

    A missing file, unreadable JSON or a field with the wrong shape never
    raises; the affected field simply takes its built-in default.
    """
    if os.path.isfile(path):
        data = load_json_object(path)
    else:
        logger.debug("Configuration file %s not found, using defaults", path)
        data = {}

    enabled = string_list(data.get("enabledHooks"))
    file_types = string_list(data.get("fileTypes"))
    exclude_paths = string_list(data.get("excludePaths"))
    reviewer_args = string_list(data.get("reviewerArgs"))

    reviewer = data.get("reviewerCommand")
    if not isinstance(reviewer, str) or not reviewer.strip():
        reviewer = DEFAULT_REVIEWER
    reviewer = os.environ.get("REVIEW_GATE_REVIEWER") or reviewer

    timeout = parse_int(data.get("promptTimeout"), DEFAULT_TIMEOUT)
    timeout = parse_int(os.environ.get("REVIEW_GATE_TIMEOUT"), timeout)
    if not 0 <= timeout <= MAX_TIMEOUT:
        timeout = DEFAULT_TIMEOUT

    log_dir = data.get("logDir")
    if not isinstance(log_dir, str):
        log_dir = ""
    log_dir = os.environ.get("REVIEW_GATE_LOG_DIR") or log_dir

    return ReviewConfig(
        enabled_hooks=frozenset(enabled) if enabled is not None else DEFAULT_ENABLED_HOOKS,
        file_types=file_types if file_types is not None else DEFAULT_FILE_TYPES,
        exclude_paths=exclude_paths if exclude_paths is not None else DEFAULT_EXCLUDE_PATHS,
        prompt_template=resolve_prompt(data, os.path.dirname(path)),
        reviewer_command=reviewer.strip(),
        reviewer_args=reviewer_args if reviewer_args is not None else DEFAULT_REVIEWER_ARGS,
        prompt_timeout=timeout,
        log_dir=os.path.expanduser(log_dir) if log_dir else "",
    )


# ---------------------------------------------------------------------------
# Change set selection
# ---------------------------------------------------------------------------

def select_changes(paths: list[str], config: ReviewConfig) -> list[str]:
    selected: list[str] = []
    seen: set[str] = set()
    for path in paths:
        if not path or path in seen:
            continue
        if config.file_types and not any(path.endswith(ext) for ext in config.file_types):
            continue
        if any(fragment and fragment in path for fragment in config.exclude_paths):
            continue
        seen.add(path)
        selected.append(path)
    return selected


# ---------------------------------------------------------------------------
# Git collaborator
# ---------------------------------------------------------------------------

EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
ZERO_SHA = "0" * 40


class GitError(RuntimeError):
    pass


def git_output(args: list[str], cwd: str) -> str:
    cmd = ["git", *args]
    try:
        result = subprocess.run(cmd, cwd=cwd or None, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise GitError(f"could not run git: {exc}") from exc
    if result.returncode != 0:
        raise GitError(f"{' '.join(cmd)} failed: {result.stderr.strip()}")
    return result.stdout


def list_changed_paths(diff_args: list[str], cwd: str) -> list[str]:
    out = git_output(["diff", "--name-only", "--diff-filter=ACMR", *diff_args], cwd)
    return [line for line in out.splitlines() if line.strip()]


def read_diff(diff_args: list[str], paths: list[str], cwd: str) -> str:
    return git_output(["diff", *diff_args, "--", *paths], cwd)


def resolve_push_range(local_sha: str, remote_sha: str, cwd: str) -> list[str] | None:
    """Return the diff arguments for one pushed ref, or None to skip it."""
    if local_sha == ZERO_SHA:
        return None
    if remote_sha != ZERO_SHA:
        return [remote_sha, local_sha]
    commits = git_output(["rev-list", "--reverse", local_sha, "--not", "--remotes"], cwd).split()
    if not commits:
        return None
    oldest = commits[0]
    try:
        base = git_output(["rev-parse", "--verify", "--quiet", f"{oldest}^"], cwd).strip()
    except GitError:
        base = ""
    return [base or EMPTY_TREE, local_sha]


# ---------------------------------------------------------------------------
# Reviewer invocation
# ---------------------------------------------------------------------------

def build_request(diff_text: str, template: str) -> ReviewRequest:
    if DIFF_PLACEHOLDER in template:
        prompt = template.replace(DIFF_PLACEHOLDER, diff_text)
    else:
        prompt = f"{template.rstrip()}\n\n## Git Diff\n{diff_text}"
    return ReviewRequest(diff_text=diff_text, prompt=prompt)


def is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def candidate_paths(name: str) -> list[str]:
    home = os.path.expanduser("~")
    candidates = [
        os.path.join(home, ".claude", "local", name),
        os.path.join(home, ".npm-global", "bin", name),
        os.path.join(home, ".volta", "bin", name),
    ]
    nvm = glob.glob(os.path.join(home, ".nvm", "versions", "node", "*", "bin", name))
    candidates.extend(sorted(nvm, key=node_version_key, reverse=True))
    return candidates


def node_version_key(path: str) -> tuple[int, ...]:
    version = os.path.basename(os.path.dirname(os.path.dirname(path))).lstrip("v")
    return tuple(parse_int(part, 0) for part in version.split("."))


def locate_reviewer(command: str) -> str | None:
    expanded = os.path.expanduser(command)
    if os.sep in expanded or (os.altsep and os.altsep in expanded):
        return os.path.abspath(expanded) if is_executable(expanded) else None
    for candidate in candidate_paths(expanded):
        if is_executable(candidate):
            return candidate
    return shutil.which(expanded)


def invoke_reviewer(diff_text: str, config: ReviewConfig) -> ReviewOutcome:
    request = build_request(diff_text, config.prompt_template)
    reviewer = locate_reviewer(config.reviewer_command)
    if not reviewer:
        return ReviewOutcome.unavailable()
    cmd = [reviewer, *config.reviewer_args]
    logger.debug("Running reviewer: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            input=request.prompt,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError:
        return ReviewOutcome.unavailable()
    except OSError as exc:
        return ReviewOutcome.error(127, str(exc))
    output = result.stdout or ""
    if result.returncode != 0 or ERROR_MARKER in output:
        return ReviewOutcome.error(result.returncode, output)
    return ReviewOutcome.success(output)


# ---------------------------------------------------------------------------
# Operator decision
# ---------------------------------------------------------------------------

TTY_PATH = "/dev/tty"


def has_terminal() -> bool:
    try:
        fd = os.open(TTY_PATH, os.O_RDONLY)
    except OSError:
        return False
    os.close(fd)
    return True


def read_tty_char(timeout: float) -> str | None:
    import termios
    import tty

    try:
        fd = os.open(TTY_PATH, os.O_RDONLY)
    except OSError:
        return None
    try:
        saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        try:
            ready, _, _ = select.select([fd], [], [], timeout)
            if not ready:
                return None
            return os.read(fd, 1).decode("utf-8", errors="replace")
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
    finally:
        os.close(fd)


def ask(
    question: str,
    timeout_seconds: int,
    interactive: bool,
    read_char: Callable[[float], str | None] = read_tty_char,
    out: TextIO | None = None,
) -> Decision:
    """Ask a yes/no question once; anything but y/Y, including silence, aborts."""
    out = out or sys.stderr
    out.write(f"\n{question} (y/n) ")
    out.flush()
    if not interactive:
        out.write("\n")
        logger.info("No terminal attached, defaulting to 'n'")
        return Decision.ABORT
    logger.debug("Waiting %ss for input, defaulting to 'n'", timeout_seconds)
    reply = read_char(float(timeout_seconds)) or ""
    out.write(f"{reply.strip()}\n")
    if reply.lower() == "y":
        return Decision.PROCEED
    if not reply:
        logger.info("No answer within %s seconds, defaulting to 'n'", timeout_seconds)
    return Decision.ABORT


# ---------------------------------------------------------------------------
# Run log
# ---------------------------------------------------------------------------

def make_run_dir(runs_dir: str, name: str) -> str:
    os.makedirs(runs_dir, exist_ok=True)
    run_dir = os.path.join(runs_dir, name)
    suffix = 1
    while True:
        try:
            os.mkdir(run_dir)
            return run_dir
        except FileExistsError:
            suffix += 1
            run_dir = os.path.join(runs_dir, f"{name}-{suffix}")


def write_run_log(log_dir: str, run: ReviewRun) -> str:
    """Persist one review run and return the path of its markdown log."""
    stamp = run.timestamp or utc_now()
    run_dir = make_run_dir(os.path.join(log_dir, "runs"), f"{stamp.replace(':', '')}-{run.hook}")
    log_md = os.path.join(run_dir, "review.log.md")
    outcome = run.outcome

    with open(log_md, "w", encoding="utf-8") as f:
        f.write(f"timestamp: {stamp}\n")
        f.write(f"hook: {run.hook}\n")
        f.write(f"range: {run.range_label}\n")
        f.write(f"outcome: {outcome.status if outcome else 'skipped'}\n")
        if outcome and outcome.exit_code:
            f.write(f"exit_code: {outcome.exit_code}\n")
        f.write(f"decision: {run.decision.value}\n")
        f.write("files:\n")
        for path in run.files:
            f.write(f"- {path}\n")
        f.write("\n")
        f.write("diff:\n")
        f.write("```diff\n")
        f.write(run.diff_text)
        f.write("\n```\n")
        if outcome and outcome.output:
            f.write("\n")
            f.write("reviewer_response:\n")
            f.write(outcome.output)
            f.write("\n")

    shutil.copyfile(log_md, os.path.join(log_dir, "latest.log.md"))

    entry: dict[str, Any] = {
        "timestamp": stamp,
        "hook": run.hook,
        "range": run.range_label,
        "files": run.files,
        "outcome": outcome.status if outcome else "skipped",
        "exit_code": outcome.exit_code if outcome else None,
        "decision": run.decision.value,
        "log": log_md,
    }
    with open(os.path.join(log_dir, "log.jsonl"), "a", encoding="utf-8") as f:
        f.write(json.dumps(entry) + "\n")
    return log_md
