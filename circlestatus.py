#!/usr/bin/env python3
"""CircleCI Branch Build Monitor.

Fetches the most recent CircleCI builds for the token's user and displays the
latest build outcome for each branch that exists in the local git repository.
The checked-out branch is highlighted; failed builds show their build number.

Usage:
    python circlestatus.py [-t TOKEN]

Options:
    -t TOKEN   CircleCI API token (default: $CIRCLECI_TOKEN).
"""
from __future__ import annotations

import argparse
import asyncio
import enum
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Sequence, TextIO

import aiohttp
import git


RECENT_BUILDS_URL = "https://circleci.com/api/v1.1/recent-builds"
FETCH_LIMIT = 50
TOKEN_ENV = "CIRCLECI_TOKEN"
LOG_LEVEL_ENV = "CIRCLESTATUS_LOG_LEVEL"

log = logging.getLogger("circlestatus")


class CircleStatusError(Exception):
    """Base class for every fatal condition reported by the tool."""


class ConfigError(CircleStatusError):
    pass


class NetworkError(CircleStatusError):
    pass


class DecodeError(CircleStatusError):
    pass


class RepositoryError(CircleStatusError):
    pass


class DetachedHeadError(CircleStatusError):
    pass


class EmptySelectionError(CircleStatusError):
    pass


class Outcome(enum.Enum):
    RETRIED = "retried"
    CANCELED = "canceled"
    INFRASTRUCTURE_FAIL = "infrastructure_fail"
    TIMEDOUT = "timedout"
    NOT_RUN = "not_run"
    RUNNING = "running"
    FAILED = "failed"
    QUEUED = "queued"
    SCHEDULED = "scheduled"
    NOT_RUNNING = "not_running"
    NO_TESTS = "no_tests"
    FIXED = "fixed"
    SUCCESS = "success"


@dataclass(frozen=True)
class Build:
    branch: str
    build_num: int
    outcome: Outcome | None = None


def _parse_build(index: int, item: Any) -> Build | None:
    if not isinstance(item, dict):
        raise DecodeError(f"build #{index} is not an object")

    branch = item.get("branch")
    if branch is not None and not isinstance(branch, str):
        raise DecodeError(f"build #{index} has a non-string branch: {branch!r}")

    build_num = item.get("build_num")
    if isinstance(build_num, bool) or not isinstance(build_num, int):
        raise DecodeError(f"build #{index} has no integer build_num")

    outcome = item.get("outcome")
    if outcome is not None:
        try:
            outcome = Outcome(outcome)
        except ValueError:
            raise DecodeError(
                f"build {build_num} has an unknown outcome: {outcome!r}"
            ) from None

    if not branch:
        return None
    return Build(branch=branch, build_num=build_num, outcome=outcome)


def parse_builds(payload: Any) -> List[Build]:
    """Convert a decoded ``recent-builds`` response into :class:`Build` records.

    Records without a branch (tag builds, for instance) are dropped. Anything
    that does not match the expected schema raises :class:`DecodeError`.
    """
    if not isinstance(payload, list):
        raise DecodeError(
            f"expected a JSON array of builds, got {type(payload).__name__}"
        )
    builds: List[Build] = []
    for index, item in enumerate(payload):
        build = _parse_build(index, item)
        if build is not None:
            builds.append(build)
    log.debug(
        "decoded %d builds, dropped %d without a branch",
        len(builds),
        len(payload) - len(builds),
    )
    return builds


async def fetch_builds(
    session: aiohttp.ClientSession,
    token: str,
    limit: int = FETCH_LIMIT,
    url: str = RECENT_BUILDS_URL,
) -> List[Build]:
    """Return the ``limit`` most recent builds visible to ``token``.

    Raises :class:`NetworkError` when the API cannot be reached or answers
    with an error status, and :class:`DecodeError` when the body is not the
    expected JSON.
    """
    params = {"circle-token": token, "limit": str(limit)}
    log.debug("GET %s limit=%d", url, limit)
    try:
        async with session.get(url, params=params) as resp:
            if resp.status < 200 or resp.status >= 300:
                raise NetworkError(f"HTTP {resp.status} from {url}")
            try:
                data = await resp.json(content_type=None)
            except ValueError as exc:
                raise DecodeError(f"response is not valid JSON: {exc}") from exc
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise NetworkError(
            f"failed to call the CircleCI API: {str(exc) or type(exc).__name__}"
        ) from exc
    return parse_builds(data)


async def load_builds(token: str, limit: int = FETCH_LIMIT) -> List[Build]:
    async with aiohttp.ClientSession() as session:
        return await fetch_builds(session, token, limit)


def select_builds(
    builds: Iterable[Build], is_local_branch: Callable[[str], bool]
) -> List[Build]:
    """Pick the most recent build of every local branch.

    The result holds at most one build per branch and is ordered by ascending
    build number. Builds sharing a build number keep their input order when
    deciding which one is most recent.
    """
    seen = set()
    latest: List[Build] = []
    for build in sorted(builds, key=lambda b: b.build_num, reverse=True):
        if build.branch in seen:
            continue
        seen.add(build.branch)
        latest.append(build)

    local = [build for build in latest if is_local_branch(build.branch)]
    return sorted(local, key=lambda b: b.build_num)


# ANSI SGR parameters
ALERT = "31"
SUCCESS = "32"
INFO = "34"
HIGHLIGHT = "35"
CURRENT_BRANCH = "1;33"


@dataclass(frozen=True)
class OutcomeStyle:
    label: str
    color: str | None = None
    show_build_num: bool = False


OUTCOME_STYLES = {
    Outcome.RETRIED: OutcomeStyle("retried"),
    Outcome.CANCELED: OutcomeStyle("canceled"),
    Outcome.INFRASTRUCTURE_FAIL: OutcomeStyle("infrastructure fail", ALERT),
    Outcome.TIMEDOUT: OutcomeStyle("timeout", ALERT),
    Outcome.NOT_RUN: OutcomeStyle("not run"),
    Outcome.RUNNING: OutcomeStyle("running", INFO),
    Outcome.FAILED: OutcomeStyle("failed", ALERT, show_build_num=True),
    Outcome.QUEUED: OutcomeStyle("queued"),
    Outcome.SCHEDULED: OutcomeStyle("scheduled", HIGHLIGHT),
    Outcome.NOT_RUNNING: OutcomeStyle("not running"),
    Outcome.NO_TESTS: OutcomeStyle("no tests"),
    Outcome.FIXED: OutcomeStyle("ok", SUCCESS),
    Outcome.SUCCESS: OutcomeStyle("ok", SUCCESS),
}

NO_OUTCOME_LABEL = "no outcome (yet)"
NO_OUTCOME_STYLE = OutcomeStyle(NO_OUTCOME_LABEL)


def style_for(outcome: Outcome | None) -> OutcomeStyle:
    """Return the display style for ``outcome``."""
    if outcome is None:
        return NO_OUTCOME_STYLE
    return OUTCOME_STYLES[outcome]


def colorize(text: str, color: str | None, enabled: bool = True) -> str:
    if not enabled or not color:
        return text
    return f"\033[{color}m{text}\033[0m"


def use_color(stream: TextIO) -> bool:
    """Return whether ANSI colors should be written to ``stream``."""
    if "NO_COLOR" in os.environ:
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def render_builds(
    builds: Sequence[Build], current_branch: str, color: bool = True
) -> List[str]:
    """Format one aligned line per build, in the order given."""
    if not builds:
        raise EmptySelectionError("no builds to display")
    width = max(len(build.branch) for build in builds)

    lines: List[str] = []
    for build in builds:
        branch = build.branch.rjust(width)
        if build.branch == current_branch:
            branch = colorize(branch, CURRENT_BRANCH, color)
        style = style_for(build.outcome)
        fields = [branch, colorize(style.label, style.color, color)]
        if style.show_build_num:
            fields.append(str(build.build_num))
        lines.append(" ".join(fields))
    return lines


class GitRepository:
    """Read-only view of the local branches of a git working tree."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        try:
            self.repo = git.Repo(root, search_parent_directories=True)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError) as exc:
            raise RepositoryError(f"no git repository found at {root}") from exc

    def local_branches(self) -> List[str]:
        return [head.name for head in self.repo.heads]

    def is_local_branch(self, name: str) -> bool:
        return name in self.local_branches()

    def current_branch_name(self) -> str:
        try:
            return self.repo.active_branch.name
        except TypeError as exc:
            raise DetachedHeadError(
                "HEAD is detached; check out a local branch"
            ) from exc


def resolve_token(
    token: str | None, environ: Mapping[str, str] = os.environ
) -> str:
    """Return the token from ``--token``, falling back to ``$CIRCLECI_TOKEN``."""
    token = token or environ.get(TOKEN_ENV)
    if not token:
        raise ConfigError(
            f"missing --token argument or {TOKEN_ENV} environment variable"
        )
    return token


async def report(token: str, repo: GitRepository, color: bool) -> List[str]:
    """Fetch, select and render the build summary for ``repo``."""
    current = repo.current_branch_name()
    log.debug("current branch is %s", current)
    builds = await load_builds(token)
    selection = select_builds(builds, repo.is_local_branch)
    log.debug("selected %d of %d builds", len(selection), len(builds))
    if not selection:
        raise EmptySelectionError(
            "no recent builds match a local branch of this repository"
        )
    return render_builds(selection, current, color=color)


def configure_logging(environ: Mapping[str, str] = os.environ) -> None:
    level = getattr(logging, environ.get(LOG_LEVEL_ENV, "WARNING").upper(), None)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "-t",
        "--token",
        help=f"CircleCI API token (default: ${TOKEN_ENV})",
    )
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> int:
    configure_logging()
    args = parse_args(argv)
    try:
        token = resolve_token(args.token)
        repo = GitRepository(Path.cwd())
        lines = asyncio.run(report(token, repo, use_color(sys.stdout)))
    except CircleStatusError as exc:
        print(f"circlestatus: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
