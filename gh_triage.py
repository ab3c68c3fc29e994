#!/usr/bin/env python3
# gh_triage: cross-project GitHub issue triage in the terminal
#
# Hotkeys (issue list)
#   up/down    move the highlight (up on the first row jumps to the filter box)
#   pgup/pgdn  scroll by 10 rows
#   enter      expand/collapse the highlighted issue (url + body)
#   m          milestone menu: 0 none, 1 current, 2 next, 3 someday
#   p / t      priority / type menu: digit = position in the configured list, 0 clears
#   /          filter box (space separated tokens are AND-ed, "#42" pins issue 42)
#   s          sort box: +idx -idx +repo +num +title
#   ?          help overlay
#   :          command line (:q, :wq)
#   esc        close the menu / leave a box / reset filter and sort
#   ctrl-c     quit
#
# Config highlights (triage.yml)
#   next-milestone: Next
#   someday-milestone: Someday
#   projects: [acme/api, acme/web]
#   priorities: [{name: blocker, color: e11d21}, {name: critical, color: eb6420}]
#   types: [{name: bug, color: f7c6c7}, {name: task, color: fef2c0}]
#
# Notes
# - The triage index is milestone, priority and type rank glued together:
#   "123" = current milestone, second priority, third type. 0 means unset.
# - The "current" milestone is the open milestone with the earliest future due
#   date; next/someday are open milestones without a due date, matched by title.
#
# Environment
# - GITHUB_API_TOKEN or GITHUB_TOKEN (scopes: repo, read:org)
# - MOCK_FETCH=1 (optional offline demo)

from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import functools
import json
import os
import random
import sys
import textwrap
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth
import logging
from logging.handlers import RotatingFileHandler


__version__ = "0.3.0"

logger = logging.getLogger('gh_triage')


# -----------------------------
# Config models
# -----------------------------
@dataclass
class Label:
    name: str
    color: str = ""


DEFAULT_NEXT_MILESTONE = "Next"
DEFAULT_SOMEDAY_MILESTONE = "Someday"

DEFAULT_PRIORITIES = [
    Label("blocker", "e11d21"),
    Label("critical", "eb6420"),
    Label("normal", "fbca04"),
    Label("low", "009800"),
]

DEFAULT_TYPES = [
    Label("bug", "f7c6c7"),
    Label("task", "fef2c0"),
    Label("enhancement", "bfe5bf"),
    Label("question", "c7def8"),
]


@dataclass
class Config:
    next_milestone: str = DEFAULT_NEXT_MILESTONE
    someday_milestone: str = DEFAULT_SOMEDAY_MILESTONE
    projects: List[str] = field(default_factory=list)
    priorities: List[Label] = field(default_factory=lambda: list(DEFAULT_PRIORITIES))
    types: List[Label] = field(default_factory=lambda: list(DEFAULT_TYPES))


def _parse_labels(raw: dict, key: str) -> List[Label]:
    items = raw.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError(f"Config: '{key}' must be a list of {{name, color}} entries.")
    labels: List[Label] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            raise ValueError(f"Config: '{key}' entry needs a 'name': {item!r}")
        labels.append(Label(str(item["name"]), str(item.get("color") or "")))
    return labels


def load_config(path: str) -> Config:
    """Read triage.yml; a missing file yields the defaults."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        logger.info("No config at %s, using defaults", path)
        raw = None
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config: {path} must contain a mapping.")
    projects = raw.get("projects") or []
    if not isinstance(projects, list):
        raise ValueError("Config: 'projects' must be a list of owner/repo names.")
    for project in projects:
        if not isinstance(project, str) or project.count("/") != 1:
            raise ValueError(f"Config: project must look like owner/repo: {project!r}")
    return Config(
        next_milestone=str(raw.get("next-milestone") or DEFAULT_NEXT_MILESTONE),
        someday_milestone=str(raw.get("someday-milestone") or DEFAULT_SOMEDAY_MILESTONE),
        projects=list(projects),
        priorities=_parse_labels(raw, "priorities") or list(DEFAULT_PRIORITIES),
        types=_parse_labels(raw, "types") or list(DEFAULT_TYPES),
    )


def split_project(project: str) -> Tuple[str, str]:
    owner, _, repo = (project or "").partition("/")
    if not owner or not repo or "/" in repo:
        raise ValueError(f"Project must look like owner/repo: {project!r}")
    return owner, repo


# -----------------------------
# Logging
# -----------------------------
def setup_logging(log_path: str, log_level: str = 'ERROR') -> None:
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    fh.setLevel(getattr(logging, str(log_level).upper(), logging.ERROR))
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)


@contextmanager
def profile(name: str) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        logger.debug("[prof] %s in %.3fs", name, time.perf_counter() - start)


# -----------------------------
# Issue model
# -----------------------------
@dataclass
class Milestone:
    number: int
    title: str
    due_on: Optional[dt.datetime] = None


@dataclass
class Rank:
    """Position (1-based) of a classification in its configured list; 0 = unset."""
    index: int = 0
    value: object = None


@dataclass
class Issue:
    number: int
    title: str
    body: str
    url: str
    owner: str
    repo: str
    labels: List[str] = field(default_factory=list)
    milestone: Rank = field(default_factory=Rank)
    priority: Rank = field(default_factory=Rank)
    issue_type: Rank = field(default_factory=Rank)

    @property
    def project(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def triage_number(self) -> int:
        return int(f"{self.milestone.index}{self.priority.index}{self.issue_type.index}")

    @property
    def triage_index(self) -> str:
        return f"{self.milestone.index}{self.priority.index}{self.issue_type.index}"


def _parse_timestamp(raw: Optional[str]) -> Optional[dt.datetime]:
    if not raw:
        return None
    try:
        return dt.datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable timestamp %r", raw)
        return None


def _owner_repo_from_url(url: str) -> Tuple[str, str]:
    # https://github.com/<owner>/<repo>/issues/<number>
    parts = (url or "").rstrip("/").split("/")
    if len(parts) < 4:
        raise ValueError(f"Unexpected issue url: {url!r}")
    return parts[-4], parts[-3]


def _rank_for_labels(labels: List[str], options: List[Label]) -> Rank:
    # the last configured option present on the issue wins
    rank = Rank()
    for i, option in enumerate(options):
        if option.name in labels:
            rank = Rank(i + 1, option)
    return rank


def issue_from_api(
    raw: dict,
    milestones: Dict[str, List[Optional[Milestone]]],
    priorities: List[Label],
    types: List[Label],
) -> Issue:
    url = str(raw.get("html_url") or "")
    owner, repo = _owner_repo_from_url(url)
    labels = [
        str(lab["name"]) for lab in (raw.get("labels") or [])
        if isinstance(lab, dict) and lab.get("name")
    ]
    milestone = Rank()
    raw_ms = raw.get("milestone")
    if isinstance(raw_ms, dict) and raw_ms.get("number") is not None:
        for i, ours in enumerate(milestones.get(f"{owner}/{repo}") or []):
            if ours is not None and ours.number == raw_ms["number"]:
                milestone = Rank(i + 1, ours)
    return Issue(
        number=int(raw.get("number") or 0),
        title=str(raw.get("title") or ""),
        body=str(raw.get("body") or ""),
        url=url,
        owner=owner,
        repo=repo,
        labels=labels,
        milestone=milestone,
        priority=_rank_for_labels(labels, priorities),
        issue_type=_rank_for_labels(labels, types),
    )


# -----------------------------
# Filter & sort
# -----------------------------
DEFAULT_SORT = "+idx"


def issue_haystack(issue: Issue) -> str:
    parts = [
        str(issue.number), issue.repo, issue.title,
        f"m{issue.milestone.index}", f"p{issue.priority.index}", f"t{issue.issue_type.index}",
    ]
    parts.extend(issue.labels)
    return " ".join(parts).lower()


def filter_issues(issues: List[Issue], query: str) -> List[Issue]:
    """Keep issues matching every whitespace separated token of the query.

    A "#<number>" anywhere in the query selects that issue regardless of the
    other tokens.
    """
    if not query:
        return list(issues)
    tokens = [tok.lower() for tok in query.split()]
    selected: List[Issue] = []
    for issue in issues:
        haystack = issue_haystack(issue)
        pinned = f"#{issue.number}" in query
        if all(pinned or tok in haystack for tok in tokens):
            selected.append(issue)
    return selected


def triage_less(a: Issue, b: Issue) -> bool:
    a_num, b_num = a.triage_number, b.triage_number
    if a_num == b_num:
        a_num += a.number
        b_num += b.number
    a_top = a.priority.index == 1
    b_top = b.priority.index == 1
    if a_top != b_top:
        return a_top
    if a_num == b_num:
        return a.repo < b.repo
    return a_num < b_num


def repo_less(a: Issue, b: Issue) -> bool:
    if a.repo == b.repo:
        return triage_less(a, b)
    return a.repo < b.repo


def number_less(a: Issue, b: Issue) -> bool:
    if a.number == b.number:
        return triage_less(a, b)
    return a.number < b.number


def title_less(a: Issue, b: Issue) -> bool:
    if a.title == b.title:
        return triage_less(a, b)
    return a.title < b.title


SORT_FUNCS: Dict[str, Callable[[Issue, Issue], bool]] = {
    "idx": triage_less,
    "repo": repo_less,
    "num": number_less,
    "title": title_less,
}


@dataclass
class SortSpec:
    text: str = DEFAULT_SORT
    less: Optional[Callable[[Issue, Issue], bool]] = triage_less
    ascending: bool = True
    valid: bool = True


def parse_sort(text: str, previous: Optional[SortSpec] = None) -> SortSpec:
    previous = previous or SortSpec()
    if len(text) < 2:
        return SortSpec(text, previous.less, previous.ascending, previous.valid)
    key = text.lower()
    ascending = True
    if key[0] == "-":
        ascending = False
        key = key[1:]
    elif key[0] == "+":
        key = key[1:]
    less = SORT_FUNCS.get(key)
    if less is None:
        return SortSpec(text, None, previous.ascending, False)
    return SortSpec(text, less, ascending, True)


def sort_issues(
    issues: List[Issue],
    less: Optional[Callable[[Issue, Issue], bool]],
    ascending: bool = True,
) -> List[Issue]:
    if less is None:
        return list(issues)

    def compare(a: Issue, b: Issue) -> int:
        if not ascending:
            a, b = b, a
        if less(a, b):
            return -1
        if less(b, a):
            return 1
        return 0

    return sorted(issues, key=functools.cmp_to_key(compare))


# -----------------------------
# GitHub REST client
# -----------------------------
GITHUB_API_URL = "https://api.github.com"
PER_PAGE = 100


class GithubError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class MilestoneError(RuntimeError):
    def __init__(self, project: str, milestones: List[Optional[Milestone]]):
        names = ("current", "next", "someday")
        missing = [n for n, m in zip(names, milestones) if m is None]
        super().__init__(f"Did not find valid milestones for {project} (missing: {', '.join(missing)})")
        self.project = project
        self.milestones = milestones


@dataclass
class IssueResult:
    issues: List[dict]
    error: Optional[Exception] = None


def resolve_milestones(
    raw_milestones: List[dict],
    next_title: str,
    someday_title: str,
    now: Optional[dt.datetime] = None,
) -> List[Optional[Milestone]]:
    """Pick [current, next, someday] out of a project's open milestones."""
    now = now or dt.datetime.now(dt.timezone.utc)
    current: Optional[Milestone] = None
    next_ms: Optional[Milestone] = None
    someday: Optional[Milestone] = None
    for item in raw_milestones:
        if not isinstance(item, dict) or item.get("number") is None:
            continue
        number = int(item["number"])
        title = str(item.get("title") or "")
        due_on = _parse_timestamp(item.get("due_on"))
        if due_on is not None:
            if due_on > now and (current is None or due_on < current.due_on):
                current = Milestone(number, title, due_on)
            continue
        if title == next_title:
            next_ms = Milestone(number, title)
        if title == someday_title:
            someday = Milestone(number, title)
    return [current, next_ms, someday]


def _session(token: str) -> requests.Session:
    s = requests.Session()
    s.headers["Authorization"] = f"Bearer {token}"
    s.headers["Accept"] = "application/vnd.github+json"
    return s


def _retry_sleep(seconds: float) -> None:
    logger.info("Rate limited; waiting %ds", int(seconds))
    time.sleep(max(0.0, seconds))


def _parse_retry_after_seconds(resp: Optional[requests.Response]) -> Optional[int]:
    if resp is None or resp.headers is None:
        return None
    # Prefer Retry-After header (secondary rate limits)
    ra = resp.headers.get('Retry-After')
    if ra:
        try:
            return int(float(ra))
        except ValueError:
            pass
    # Next, X-RateLimit-Reset (epoch seconds)
    xrlr = resp.headers.get('X-RateLimit-Reset')
    if xrlr:
        try:
            return max(1, int(xrlr) - int(time.time()))
        except ValueError:
            pass
    return None


def _should_retry(resp: requests.Response) -> bool:
    if resp.status_code in (429, 502, 503, 504):
        return True
    if resp.status_code == 403:
        headers = resp.headers or {}
        return bool(headers.get('Retry-After')) or headers.get('X-RateLimit-Remaining') == '0'
    return False


class GithubAPI:
    """Thin REST client for the handful of GitHub endpoints triage needs."""

    def __init__(
        self,
        token: str,
        config: Config,
        base_url: str = GITHUB_API_URL,
        session: Optional[requests.Session] = None,
        max_total_wait: int = 300,
    ):
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.session = session or _session(token)
        self.max_total_wait = max_total_wait

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        backoff = 5
        total_wait = 0
        while True:
            try:
                resp = self.session.request(method, url, timeout=30, **kwargs)
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError):
                wait_s = min(60, backoff)
                backoff = min(300, backoff * 2)
                if total_wait + wait_s > self.max_total_wait:
                    raise
                _retry_sleep(wait_s)
                total_wait += wait_s
                continue
            if _should_retry(resp):
                wait_s = _parse_retry_after_seconds(resp)
                if wait_s is None:
                    wait_s = min(300, backoff)
                    backoff = min(300, backoff * 2)
                if total_wait + wait_s <= self.max_total_wait:
                    _retry_sleep(wait_s)
                    total_wait += wait_s
                    continue
            if resp.status_code >= 300:
                logger.warning("%s %s HTTP %s: %s", method, url, resp.status_code, resp.text[:200])
                raise GithubError(
                    f"{method} {url} failed ({resp.status_code}): {resp.text[:200]}",
                    status=resp.status_code,
                )
            return resp

    def _paginate(self, path: str, params: Optional[dict]) -> Iterator[object]:
        url: Optional[str] = path
        while url:
            resp = self._request("GET", url, params=params)
            yield resp.json()
            # the next link already carries the query string
            url = (resp.links or {}).get("next", {}).get("url")
            params = None

    def _collect(self, path: str, params: Optional[dict] = None) -> List[dict]:
        out: List[dict] = []
        for data in self._paginate(path, params):
            out.extend(data or [])
        return out

    def _issue_pages(self, path: str, params: dict, key: Optional[str] = None) -> Iterator[IssueResult]:
        pages = self._paginate(path, params)
        while True:
            try:
                data = next(pages)
                items = data.get(key) if key else data
            except StopIteration:
                return
            except (requests.RequestException, RuntimeError, ValueError) as exc:
                logger.warning("Fetching %s failed: %s", path, exc)
                yield IssueResult([], exc)
                return
            yield IssueResult(list(items or []))

    # -- issue streams
    def search(self, query: str) -> Iterator[IssueResult]:
        params = {"q": query, "sort": "updated", "order": "desc", "per_page": PER_PAGE}
        return self._issue_pages("/search/issues", params, key="items")

    def by_org(self, org: str) -> Iterator[IssueResult]:
        params = {"filter": "all", "state": "open", "sort": "updated", "per_page": PER_PAGE}
        return self._issue_pages(f"/orgs/{org}/issues", params)

    def by_user(self) -> Iterator[IssueResult]:
        params = {"state": "open", "sort": "updated", "per_page": PER_PAGE}
        return self._issue_pages("/issues", params)

    # -- milestones
    def list_milestones(self, project: str) -> List[dict]:
        owner, repo = split_project(project)
        params = {"state": "open", "sort": "due_on", "direction": "asc", "per_page": PER_PAGE}
        return self._collect(f"/repos/{owner}/{repo}/milestones", params)

    def milestones(self, project: str) -> List[Optional[Milestone]]:
        with profile(f"GithubAPI.milestones {project}"):
            raw = self.list_milestones(project)
        found = resolve_milestones(raw, self.config.next_milestone, self.config.someday_milestone)
        if any(m is None for m in found):
            raise MilestoneError(project, found)
        return found

    def create_milestone(self, project: str, title: str, due_on: Optional[dt.datetime] = None) -> dict:
        owner, repo = split_project(project)
        payload: Dict[str, object] = {"title": title}
        if due_on is not None:
            payload["due_on"] = due_on.strftime("%Y-%m-%dT%H:%M:%SZ")
        return self._request("POST", f"/repos/{owner}/{repo}/milestones", json=payload).json()

    # -- mutations
    def replace_labels(self, owner: str, repo: str, number: int, labels: List[str]) -> List[dict]:
        resp = self._request("PUT", f"/repos/{owner}/{repo}/issues/{number}/labels", json={"labels": list(labels)})
        return resp.json()

    def set_milestone(self, owner: str, repo: str, number: int, milestone: Optional[int]) -> dict:
        resp = self._request("PATCH", f"/repos/{owner}/{repo}/issues/{number}", json={"milestone": milestone})
        return resp.json()

    # -- labels & repos
    def labels(self, project: str) -> List[dict]:
        owner, repo = split_project(project)
        return self._collect(f"/repos/{owner}/{repo}/labels", {"per_page": PER_PAGE})

    def create_label(self, project: str, name: str, color: str) -> dict:
        owner, repo = split_project(project)
        return self._request("POST", f"/repos/{owner}/{repo}/labels", json={"name": name, "color": color}).json()

    def update_label_color(self, project: str, name: str, color: str) -> dict:
        owner, repo = split_project(project)
        quoted = quote(name, safe="")
        return self._request("PATCH", f"/repos/{owner}/{repo}/labels/{quoted}", json={"color": color}).json()

    def repos(self, org: Optional[str] = None) -> List[dict]:
        if org:
            return self._collect(f"/orgs/{org}/repos", {"type": "all", "per_page": PER_PAGE})
        return self._collect("/user/repos", {"per_page": PER_PAGE})


# -----------------------------
# Mock data
# -----------------------------
MOCK_TITLES = [
    "Crash when config file is empty",
    "Document the release process",
    "Add dark mode to the dashboard",
    "Flaky login test on CI",
    "Upgrade the HTTP client",
    "How do I rotate API keys?",
    "Pagination skips the last page",
    "Cache milestones between runs",
]


def generate_mock_issues(cfg: Config, projects: List[str], count: int = 40) -> List[dict]:
    """Generate GitHub-shaped issue payloads for offline demo & testing."""
    issues: List[dict] = []
    label_cycle = [p.name for p in cfg.priorities] + [""]
    type_cycle = [t.name for t in cfg.types] + [""]
    for i in range(count):
        project = projects[i % len(projects)]
        labels = [name for name in (label_cycle[i % len(label_cycle)], type_cycle[(i // 2) % len(type_cycle)]) if name]
        milestone = (i % 4) or None
        issues.append({
            "number": i + 1,
            "title": MOCK_TITLES[i % len(MOCK_TITLES)],
            "body": f"Mock issue {i + 1} for {project}.\n\nSteps to reproduce are left as an exercise.",
            "html_url": f"https://github.com/{project}/issues/{i + 1}",
            "labels": [{"name": name} for name in labels],
            "milestone": {"number": milestone} if milestone else None,
        })
    return issues


class MockAPI:
    """In-memory stand-in for GithubAPI (MOCK_FETCH=1)."""

    def __init__(self, config: Config, page_size: int = 15, delay: float = 0.3):
        self.config = config
        self.projects = list(config.projects) or ["example/alpha", "example/beta"]
        self.page_size = page_size
        self.delay = delay
        due = dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=7)
        self._milestones = {
            project: [
                Milestone(1, f"{due:%Y-%W} Mock", due),
                Milestone(2, config.next_milestone),
                Milestone(3, config.someday_milestone),
            ]
            for project in self.projects
        }
        self._issues = generate_mock_issues(config, self.projects)

    def milestones(self, project: str) -> List[Optional[Milestone]]:
        found = self._milestones.get(project)
        if not found:
            raise MilestoneError(project, [None, None, None])
        return list(found)

    def _pages(self) -> Iterator[IssueResult]:
        for start in range(0, len(self._issues), self.page_size):
            time.sleep(self.delay)
            yield IssueResult([dict(raw) for raw in self._issues[start:start + self.page_size]])

    def search(self, query: str) -> Iterator[IssueResult]:
        return self._pages()

    def by_org(self, org: str) -> Iterator[IssueResult]:
        return self._pages()

    def by_user(self) -> Iterator[IssueResult]:
        return self._pages()

    def _find(self, owner: str, repo: str, number: int) -> dict:
        url = f"https://github.com/{owner}/{repo}/issues/{number}"
        for raw in self._issues:
            if raw["html_url"] == url:
                return raw
        raise GithubError(f"No such issue: {url}", status=404)

    def replace_labels(self, owner: str, repo: str, number: int, labels: List[str]) -> List[dict]:
        raw = self._find(owner, repo, number)
        raw["labels"] = [{"name": name} for name in labels]
        return raw["labels"]

    def set_milestone(self, owner: str, repo: str, number: int, milestone: Optional[int]) -> dict:
        raw = self._find(owner, repo, number)
        raw["milestone"] = {"number": milestone} if milestone else None
        return raw

    def list_milestones(self, project: str) -> List[dict]:
        return [{"number": m.number, "title": m.title} for m in self._milestones.get(project, []) if m]

    def create_milestone(self, project: str, title: str, due_on: Optional[dt.datetime] = None) -> dict:
        found = self._milestones.setdefault(project, [])
        ms = Milestone(len(found) + 1, title, due_on)
        found.append(ms)
        return {"number": ms.number, "title": title}

    def labels(self, project: str) -> List[dict]:
        return [{"name": lab.name, "color": lab.color} for lab in self.config.priorities + self.config.types]

    def create_label(self, project: str, name: str, color: str) -> dict:
        return {"name": name, "color": color}

    def update_label_color(self, project: str, name: str, color: str) -> dict:
        return {"name": name, "color": color}

    def repos(self, org: Optional[str] = None) -> List[dict]:
        return [{"full_name": project} for project in self.projects]


# -----------------------------
# Render surface & key events
# -----------------------------
TRIAGE_STYLE = {
    "header": "bold",
    "input": "bg:#dadada #121212",
    "input.invalid": "bg:#dadada #008700",
    "list.header": "underline",
    "list.cursor": "bold",
    "dim": "#4e4e4e",
    "overlay": "#af00af bold",
    "overlay.mark": "underline",
    "status": "",
}


def _char_width(ch: str) -> int:
    return max(0, get_cwidth(ch))


def _display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\r", " ").replace("\n", " ").replace("\t", " ")


class Surface:
    """Grid of (char, style) cells; flush() turns it into prompt_toolkit fragments."""

    def __init__(self, width: int = 80, height: int = 24, on_flush: Optional[Callable[[], None]] = None):
        self.on_flush = on_flush
        self.frame: List[Tuple[str, str]] = []
        self.cursor: Optional[Tuple[int, int]] = None
        self.resize(width, height)

    def resize(self, width: int, height: int) -> None:
        self.width = max(0, width)
        self.height = max(0, height)
        self.clear()

    def clear(self) -> None:
        self._chars = [[" "] * self.width for _ in range(self.height)]
        self._styles = [[""] * self.width for _ in range(self.height)]

    def set_cell(self, x: int, y: int, ch: str, style: str = "") -> None:
        if 0 <= x < self.width and 0 <= y < self.height:
            self._chars[y][x] = ch
            self._styles[y][x] = style

    def get_cell(self, x: int, y: int) -> Tuple[str, str]:
        if 0 <= x < self.width and 0 <= y < self.height:
            return self._chars[y][x], self._styles[y][x]
        return " ", ""

    def print_line(self, text: str, x: int, y: int, style: str = "") -> int:
        """Write text from (x, y); returns the column after the last glyph."""
        for ch in _sanitize_cell_text(text):
            width = _char_width(ch)
            if width == 0:
                continue
            self.set_cell(x, y, ch, style)
            if width == 2:
                # placeholder for the right half of a wide glyph
                self.set_cell(x + 1, y, "", style)
            x += width
        return x

    def dim(self) -> None:
        for row in self._styles:
            for i, style in enumerate(row):
                row[i] = f"{style} class:dim".strip()

    def set_cursor(self, x: int, y: int) -> None:
        self.cursor = (x, y)

    def hide_cursor(self) -> None:
        self.cursor = None

    def row(self, y: int) -> str:
        return "".join(self._chars[y]) if 0 <= y < self.height else ""

    def fragments(self) -> List[Tuple[str, str]]:
        frags: List[Tuple[str, str]] = []
        for y in range(self.height):
            if y:
                frags.append(("", "\n"))
            run: List[str] = []
            run_style = ""
            for x in range(self.width):
                style = self._styles[y][x]
                if self.cursor == (x, y) or style != run_style:
                    if run:
                        frags.append((run_style, "".join(run)))
                        run = []
                    run_style = style
                if self.cursor == (x, y):
                    frags.append(("[SetCursorPosition]", ""))
                run.append(self._chars[y][x])
            if run:
                frags.append((run_style, "".join(run)))
        return frags

    def flush(self) -> None:
        self.frame = self.fragments()
        if self.on_flush:
            self.on_flush()


@dataclass(frozen=True)
class KeyEvent:
    key: str = ""
    ch: str = ""


_NAMED_KEYS = {
    Keys.Up: "up",
    Keys.Down: "down",
    Keys.PageUp: "pageup",
    Keys.PageDown: "pagedown",
    Keys.Escape: "escape",
    Keys.ControlM: "enter",
    Keys.ControlJ: "enter",
    Keys.ControlH: "backspace",
    Keys.ControlC: "ctrl-c",
}

# Keys bound explicitly next to Keys.Any (specific bindings win over Any).
_BOUND_KEYS = ("up", "down", "pageup", "pagedown", "escape", "enter", "c-j", "backspace", "c-c")


def key_event_from_prompt_toolkit(event) -> KeyEvent:
    press = event.key_sequence[-1] if event.key_sequence else None
    key = press.key if press is not None else None
    if key in _NAMED_KEYS:
        return KeyEvent(key=_NAMED_KEYS[key])
    if isinstance(key, str) and len(key) == 1 and key.isprintable():
        return KeyEvent(ch=key)
    return KeyEvent()


def _digit(ev: KeyEvent) -> Optional[int]:
    if len(ev.ch) == 1 and ev.ch in "0123456789":
        return int(ev.ch)
    return None


def _edit_buffer(text: str, ev: KeyEvent) -> Optional[str]:
    if ev.key == "backspace":
        return text[:-1]
    if ev.ch:
        return text + ev.ch
    return None


# -----------------------------
# Windows
# -----------------------------
FOCUS_LIST = "list"
FOCUS_FILTER = "filter"
FOCUS_SORT = "sort"
FOCUS_STATUS = "status"
FOCUS_HELP = "help"
FOCUS_ALERT = "alert"

# boxes that show the terminal cursor while focused
EDITOR_FOCUSES = (FOCUS_FILTER, FOCUS_SORT, FOCUS_STATUS)

MENU_DEFAULT = "menu"
MENU_MILESTONE = "milestone"
MENU_PRIORITY = "priority"
MENU_TYPE = "type"

GLOBAL_FOCUS_KEYS = {"/": FOCUS_FILTER, "s": FOCUS_SORT, "?": FOCUS_HELP, ":": FOCUS_STATUS}

SCROLL_QUANTUM = 10
SORT_BOX_END = 30
FILTER_BOX_END = 60
QUIT_COMMANDS = ("q", "q!", "wq", "quit")

HELP_OVERLAY = """
         **********************************************************************
            ******************            ↳ the search query behind this list
              ↳ sort by idx, repo, num or title; prefix + or - for direction
   ↙  ↙  ↙   ↙
  *** ****  ***  *****

  ↙ milestone: 1 current, 2 next, 3 someday, 0 none
  *
   ↙ priority: position in your priorities list, 0 none
   *
    ↙ type: position in your types list, 0 none
    *
  *** ← together: the triage index, lowest first
"""[1:]


@dataclass
class UIState:
    """State shared by the root window and every subwindow."""
    focus: str = FOCUS_LIST
    context_menu: Optional[str] = MENU_DEFAULT
    filter_text: str = ""
    sort: SortSpec = field(default_factory=SortSpec)
    alert: str = ""
    status: str = ""
    notice: str = ""


@dataclass
class IssueChange:
    attr: str
    rank: Rank
    labels: Optional[List[str]] = None
    milestone_number: Optional[int] = None


def label_change(issue: Issue, attr: str, options: List[Label], digit: int) -> IssueChange:
    """Swap the issue's label from one category for the option at `digit` (0 clears)."""
    recognized = {o.name for o in options}
    labels = [name for name in issue.labels if name not in recognized]
    if digit == 0:
        return IssueChange(attr, Rank(), labels=labels)
    option = options[digit - 1]
    labels.append(option.name)
    return IssueChange(attr, Rank(digit, option), labels=labels)


class Subwindow:
    """Base window: no-op init/draw/handle_event."""

    def __init__(self, root: "TriageWindow"):
        self.root = root

    @property
    def state(self) -> UIState:
        return self.root.state

    @property
    def surface(self) -> Surface:
        return self.root.surface

    def init(self) -> None:
        pass

    def draw(self, x: int, y: int, x1: int, y1: int) -> None:
        pass

    def handle_event(self, ev: KeyEvent) -> bool:
        return False


class HeaderWindow(Subwindow):
    def draw(self, x, y, x1, y1):
        self.surface.print_line(f"*triage* {self.root.title}", x, y, "class:header")


class SortWindow(Subwindow):
    def init(self):
        self.state.sort = parse_sort(DEFAULT_SORT)

    def draw(self, x, y, x1, y1):
        sort = self.state.sort
        focused = self.state.focus == FOCUS_SORT
        start = self.surface.print_line(f"{'>' if focused else ' '}[s] sort: ", x + 1, y)
        style = "class:input" if focused else ""
        if not sort.valid:
            style = "class:input.invalid"
        end = self.surface.print_line(sort.text, start, y, style)
        if focused:
            for col in range(end, x + SORT_BOX_END):
                self.surface.set_cell(col, y, " ", style)
            self.surface.set_cursor(end, y)
        self.surface.print_line(" [?] help [^C] exit", x + SORT_BOX_END, y)

    def handle_event(self, ev):
        if ev.key == "down":
            self.root.set_focus(FOCUS_FILTER)
            return True
        if ev.key == "escape":
            self.root.focus_list()
            return True
        text = _edit_buffer(self.state.sort.text, ev)
        if text is None:
            return False
        self.state.sort = parse_sort(text, self.state.sort)
        return True


class FilterWindow(Subwindow):
    def draw(self, x, y, x1, y1):
        focused = self.state.focus == FOCUS_FILTER
        start = self.surface.print_line(f"{'>' if focused else ' '}[/] filter: ", x + 1, y)
        style = "class:input" if focused else ""
        end = self.surface.print_line(self.state.filter_text, start, y, style)
        if focused:
            for col in range(end, x + FILTER_BOX_END):
                self.surface.set_cell(col, y, " ", style)
            self.surface.set_cursor(end, y)

    def handle_event(self, ev):
        if ev.key == "up":
            self.root.set_focus(FOCUS_SORT)
            return True
        if ev.key in ("down", "escape"):
            self.root.focus_list()
            return True
        text = _edit_buffer(self.state.filter_text, ev)
        if text is None:
            return False
        self.state.filter_text = text
        return True


class StatusWindow(Subwindow):
    """Bottom line: issue details, notices, and the ':' command line."""

    def init(self):
        self.buffer = ""

    def draw(self, x, y, x1, y1):
        if self.state.focus == FOCUS_STATUS:
            end = self.surface.print_line(f":{self.buffer}", x, y)
            self.surface.set_cursor(end, y)
            return
        text = self.state.notice or self.state.status
        self.surface.print_line(f"[:] {text}", x, y, "class:status")

    def handle_event(self, ev):
        if ev.key == "escape":
            self.buffer = ""
            self.root.focus_list()
            return True
        if ev.key == "backspace":
            if not self.buffer:
                self.root.focus_list()
            self.buffer = self.buffer[:-1]
            return True
        if ev.key == "enter":
            self.execute()
            return True
        if ev.ch:
            self.buffer += ev.ch
            return True
        return False

    def execute(self) -> None:
        command = self.buffer.strip()
        self.buffer = ""
        self.root.focus_list()
        if command in QUIT_COMMANDS:
            self.root.quit()
        elif command:
            self.state.notice = f"Not an editor command: {command}"


class HelpWindow(Subwindow):
    def draw(self, x, y, x1, y1):
        if self.state.focus != FOCUS_HELP:
            return
        self.surface.dim()
        for iy, line in enumerate(HELP_OVERLAY.splitlines()):
            for ix, ch in enumerate(line):
                if ch == " ":
                    continue
                if ch == "*":
                    under, _ = self.surface.get_cell(x + ix, y + iy)
                    self.surface.set_cell(x + ix, y + iy, under, "class:overlay.mark")
                else:
                    self.surface.set_cell(x + ix, y + iy, ch, "class:overlay")

    def handle_event(self, ev):
        self.root.focus_list()
        return True


class AlertWindow(Subwindow):
    """Centered message over a dimmed screen; drawn whenever the alert text is set."""

    def draw(self, x, y, x1, y1):
        lines = self.state.alert.splitlines()
        if not lines:
            return
        self.surface.dim()
        top = y + max(0, (y1 - y - len(lines)) // 2)
        for i, line in enumerate(lines):
            left = x + max(0, (x1 - x - _display_width(line)) // 2)
            self.surface.print_line(line, left, top + i, "class:overlay")

    def handle_event(self, ev):
        self.state.alert = ""
        self.root.focus_list()
        return True


class ListMenu(Subwindow):
    def draw(self, x, y, x1, y1):
        if self.state.focus != FOCUS_LIST:
            return
        expand = "collapse" if self.root.issue_list.expanding else "expand"
        self.surface.print_line(
            f"[m] set milestone [p] set priority [t] set type [enter] {expand}", x + 2, y)

    def handle_event(self, ev):
        if ev.key == "enter":
            self.root.issue_list.expanding = not self.root.issue_list.expanding
            return True
        menu = {"m": MENU_MILESTONE, "p": MENU_PRIORITY, "t": MENU_TYPE}.get(ev.ch)
        if menu is None:
            return False
        self.state.context_menu = menu
        return True


class MilestoneMenu(Subwindow):
    def draw(self, x, y, x1, y1):
        if self.state.focus != FOCUS_LIST:
            return
        self.surface.print_line("milestone: [0] none [1] current [2] next [3] someday", x + 2, y)

    def handle_event(self, ev):
        issue = self.root.issue_list.current_issue()
        digit = _digit(ev)
        if issue is None or digit is None or digit > 3:
            return False
        milestones = self.root.milestones.get(issue.project)
        if not milestones:
            logger.warning("No current/next/someday milestones for %s", issue.project)
            self.state.notice = f"No current/next/someday milestones for {issue.project}"
            return False
        if digit == 0:
            change = IssueChange("milestone", Rank())
        else:
            chosen = milestones[digit - 1]
            change = IssueChange("milestone", Rank(digit, chosen), milestone_number=chosen.number)
        self.root.apply_mutation(issue, change)
        return True


class LabelMenu(Subwindow):
    """Digit menu over one configured label list (priorities or types)."""
    title = ""
    attr = ""

    def options(self) -> List[Label]:
        raise NotImplementedError

    def draw(self, x, y, x1, y1):
        if self.state.focus != FOCUS_LIST:
            return
        entries = "".join(f" [{i}] {o.name}" for i, o in enumerate(self.options(), start=1))
        self.surface.print_line(f"{self.title}:{entries}", x + 2, y)

    def handle_event(self, ev):
        issue = self.root.issue_list.current_issue()
        digit = _digit(ev)
        options = self.options()
        if issue is None or digit is None or digit > len(options):
            return False
        self.root.apply_mutation(issue, label_change(issue, self.attr, options, digit))
        return True


class PriorityMenu(LabelMenu):
    title = "priority"
    attr = "priority"

    def options(self):
        return self.root.config.priorities


class TypeMenu(LabelMenu):
    title = "type"
    attr = "issue_type"

    def options(self):
        return self.root.config.types


class IssueListWindow(Subwindow):
    def __init__(self, root):
        super().__init__(root)
        self.issues: List[Issue] = []
        self.filtered: List[Issue] = []
        self.current_issues: List[Issue] = []
        self.current_filter = ""
        self.current_index = 0
        self.scroll_index = 0
        self.last_index = SCROLL_QUANTUM - 1
        self.page_rows = SCROLL_QUANTUM
        self.expanding = False

    def init(self):
        # the default spawn hands back the worker thread
        self.worker = self.root.spawn(self.root.run_refresh)

    def current_issue(self) -> Optional[Issue]:
        if 0 <= self.current_index < len(self.current_issues):
            return self.current_issues[self.current_index]
        return None

    def set_issues(self, issues: List[Issue]) -> None:
        """Swap in a new fetch result; caller holds the draw lock."""
        self.issues = list(issues)
        self.filtered = filter_issues(self.issues, self.current_filter)
        self.sort()
        if self.current_index >= len(self.current_issues):
            self.current_index = max(0, len(self.current_issues) - 1)

    def filter(self, query: str) -> None:
        if query == self.current_filter:
            return
        self.current_filter = query
        self.current_index = 0
        self.scroll_index = 0
        self.filtered = filter_issues(self.issues, query)

    def sort(self) -> None:
        spec = self.state.sort
        self.current_issues = sort_issues(self.filtered, spec.less, spec.ascending)

    def scroll(self, delta: int) -> None:
        total = len(self.current_issues)
        max_scroll = max(0, total - min(SCROLL_QUANTUM, self.page_rows))
        self.scroll_index = max(0, min(self.scroll_index + delta, max_scroll))
        last_visible = self.scroll_index + self.page_rows - 1
        self.current_index = max(self.scroll_index, min(self.current_index, last_visible))
        self.current_index = max(0, min(self.current_index, total - 1))

    def draw(self, x, y, x1, y1):
        self.filter(self.state.filter_text)
        self.sort()
        surface = self.surface
        focused = self.state.focus == FOCUS_LIST
        for col, ch in enumerate(" idx repo  num  title"):
            surface.set_cell(x + 1 + col, y, ch, "" if ch == " " else "class:list.header")
        if self.scroll_index > 0:
            surface.set_cell(x, y + 1, "↑")
        body_width = max(10, x1 - x - 6)
        row_y = y + 1
        self.last_index = self.scroll_index
        for i in range(self.scroll_index, len(self.current_issues)):
            if row_y > y1:
                surface.set_cell(x, y1, "↓")
                break
            issue = self.current_issues[i]
            highlighted = focused and i == self.current_index
            if highlighted:
                self.state.status = " ".join([issue.project] + issue.labels)
            line = f"{'>' if highlighted else ' '}{issue.triage_index} {issue.repo[:5]:>5}/{issue.number:<4} {issue.title}"
            surface.print_line(line, x + 1, row_y, "class:list.cursor" if highlighted else "")
            self.last_index = i
            row_y += 1
            if i == self.current_index and self.expanding:
                for text in [issue.url] + _wrap_body(issue.body, body_width):
                    if row_y > y1:
                        break
                    surface.print_line(text, x + 5, row_y)
                    row_y += 1
        self.page_rows = max(1, y1 - y)
        if self.root.debug:
            self.state.status += f" ci: {self.current_index} si: {self.scroll_index} li: {self.last_index}"

    def handle_event(self, ev):
        menu = self.root.context_window()
        if menu is not None and menu.handle_event(ev):
            return True
        if ev.key == "escape":
            if self.state.context_menu == MENU_DEFAULT:
                return False
            self.state.context_menu = MENU_DEFAULT
            return True
        if ev.key == "pagedown":
            self.scroll(SCROLL_QUANTUM)
            return True
        if ev.key == "pageup":
            self.scroll(-SCROLL_QUANTUM)
            return True
        if ev.key == "down":
            if self.current_index < len(self.current_issues) - 1:
                self.current_index += 1
            if self.current_index > self.last_index:
                self.scroll(SCROLL_QUANTUM)
            return True
        if ev.key == "up":
            if self.current_index == 0:
                self.root.set_focus(FOCUS_FILTER)
                return True
            self.current_index -= 1
            if self.current_index < self.scroll_index:
                self.scroll(-SCROLL_QUANTUM)
            return True
        return False

    def _show_progress(self, message: str) -> None:
        # caller holds draw_lock; an error alert stays up until dismissed
        if self.state.focus != FOCUS_ALERT:
            self.state.alert = message

    def refresh(self) -> None:
        root = self.root
        cfg = root.config
        with profile("IssueListWindow.refresh"):
            with root.draw_lock:
                self._show_progress("Fetching issues...")
            root.redraw()
            issues: List[Issue] = []
            for page in root.fetch_pages():
                if page.error is not None:
                    raise page.error
                issues.extend(issue_from_api(raw, root.milestones, cfg.priorities, cfg.types) for raw in page.issues)
                with root.draw_lock:
                    self.set_issues(issues)
                    self._show_progress(f"Fetching issues, got: {len(issues)}")
                root.redraw()
                if root.closed:
                    logger.info("Refresh stopped after %d issues, UI closed", len(issues))
                    return
            logger.info("Fetched %d issues", len(issues))
            if root.debug:
                dump_issues(issues)
            with root.draw_lock:
                self._show_progress("")
            root.redraw()


def _wrap_body(body: str, width: int) -> List[str]:
    lines: List[str] = []
    for paragraph in (body or "").splitlines():
        lines.extend(textwrap.wrap(paragraph, width) or [""])
    return lines


def dump_issues(issues: List[Issue], path: str = "raw_issues.json") -> None:
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump([asdict(issue) for issue in issues], f, indent=2, default=str)
    except OSError:
        logger.warning("Unable to write %s", path, exc_info=True)


def _spawn_thread(fn: Callable[[], None]) -> threading.Thread:
    worker = threading.Thread(target=fn, name="triage-refresh", daemon=True)
    worker.start()
    return worker


class TriageWindow:
    """Root window: owns the surface, the shared state and every subwindow."""

    def __init__(
        self,
        api,
        config: Config,
        target: str = "",
        org: str = "",
        debug: bool = False,
        surface: Optional[Surface] = None,
        spawn: Optional[Callable[[Callable[[], None]], object]] = None,
        get_size: Optional[Callable[[], Tuple[int, int]]] = None,
    ):
        self.api = api
        self.config = config
        self.target = target
        self.org = org
        self.debug = debug
        self.surface = surface or Surface()
        self.spawn = spawn or _spawn_thread
        self.get_size = get_size or (lambda: (self.surface.width, self.surface.height))
        self.on_quit: Callable[[], None] = lambda: None
        self.closed = False
        self.draw_lock = threading.Lock()
        self.state = UIState()
        self.title = ""
        self.milestones: Dict[str, List[Optional[Milestone]]] = {}

        self.header = HeaderWindow(self)
        self.sort_box = SortWindow(self)
        self.filter_box = FilterWindow(self)
        self.issue_list = IssueListWindow(self)
        self.status_line = StatusWindow(self)
        self.help = HelpWindow(self)
        self.alert_box = AlertWindow(self)
        self.focus_windows: Dict[str, Subwindow] = {
            FOCUS_LIST: self.issue_list,
            FOCUS_FILTER: self.filter_box,
            FOCUS_SORT: self.sort_box,
            FOCUS_STATUS: self.status_line,
            FOCUS_HELP: self.help,
            FOCUS_ALERT: self.alert_box,
        }
        self.menus: Dict[str, Subwindow] = {
            MENU_DEFAULT: ListMenu(self),
            MENU_MILESTONE: MilestoneMenu(self),
            MENU_PRIORITY: PriorityMenu(self),
            MENU_TYPE: TypeMenu(self),
        }

    def init(self) -> None:
        with profile("TriageWindow.init"):
            self._select_target()
            self.milestones = self._load_milestones()
            for window in [self.header, self.sort_box, self.filter_box, self.status_line,
                           self.help, self.alert_box, *self.menus.values()]:
                window.init()
            self.focus_list()
            # last: starts the background refresh
            self.issue_list.init()

    def _select_target(self) -> None:
        if self.org:
            self.title = f"all open issues for org={self.org}"
            return
        query = "is:open is:issue"
        if self.target:
            self.target = f"{query} {self.target}"
        elif self.config.projects:
            self.target = query + "".join(f" repo:{p}" for p in self.config.projects)
        self.title = self.target or "assigned issues for authenticated user"

    def _load_milestones(self) -> Dict[str, List[Optional[Milestone]]]:
        found: Dict[str, List[Optional[Milestone]]] = {}
        with profile("TriageWindow.milestones"):
            for project in self.config.projects:
                try:
                    found[project] = self.api.milestones(project)
                except (MilestoneError, GithubError, requests.RequestException, ValueError) as exc:
                    logger.warning("Skipping milestones for %s: %s", project, exc)
        return found

    def fetch_pages(self) -> Iterator[IssueResult]:
        if self.org:
            return self.api.by_org(self.org)
        if self.target:
            return self.api.search(self.target)
        return self.api.by_user()

    def run_refresh(self) -> None:
        try:
            self.issue_list.refresh()
        except Exception as exc:
            logger.exception("Refresh failed")
            self.show_error(f"Error fetching issues: {exc}")

    # -- focus
    def set_focus(self, focus: str, menu: Optional[str] = None) -> None:
        if focus not in EDITOR_FOCUSES:
            self.surface.hide_cursor()
        self.state.focus = focus
        self.state.context_menu = menu

    def focus_list(self) -> None:
        self.set_focus(FOCUS_LIST, MENU_DEFAULT)

    def context_window(self) -> Optional[Subwindow]:
        if self.state.context_menu is None:
            return None
        return self.menus.get(self.state.context_menu)

    def show_error(self, message: str) -> None:
        with self.draw_lock:
            self.state.alert = message
            self.set_focus(FOCUS_ALERT, self.state.context_menu)
        self.redraw()

    def quit(self) -> None:
        self.closed = True
        self.on_quit()

    # -- mutations
    def apply_mutation(self, issue: Issue, change: IssueChange) -> None:
        """Push one classification edit to GitHub, then mirror it locally."""
        if change.attr == "milestone":
            self.api.set_milestone(issue.owner, issue.repo, issue.number, change.milestone_number)
        else:
            self.api.replace_labels(issue.owner, issue.repo, issue.number, change.labels or [])
            issue.labels = list(change.labels or [])
        setattr(issue, change.attr, change.rank)
        logger.info("%s#%d %s -> %d", issue.project, issue.number, change.attr, change.rank.index)

    # -- events
    def dispatch(self, ev: KeyEvent) -> bool:
        with self.draw_lock:
            handled = self.handle_event(ev)
        self.redraw()
        return handled

    def handle_event(self, ev: KeyEvent) -> bool:
        self.state.notice = ""
        if ev.key == "ctrl-c":
            self.quit()
            return True
        window = self.focus_windows.get(self.state.focus, self.issue_list)
        try:
            handled = window.handle_event(ev)
        except (requests.RequestException, RuntimeError) as exc:
            logger.warning("Update failed: %s", exc)
            self.state.alert = f"Update failed: {exc}"
            self.set_focus(FOCUS_ALERT, self.state.context_menu)
            return True
        if handled:
            return True
        return self.handle_global_event(ev)

    def handle_global_event(self, ev: KeyEvent) -> bool:
        if ev.key == "escape":
            self.focus_list()
            self.state.filter_text = ""
            self.state.sort = parse_sort(DEFAULT_SORT)
            return True
        focus = GLOBAL_FOCUS_KEYS.get(ev.ch)
        if focus is None:
            return False
        self.set_focus(focus, self.state.context_menu)
        return True

    # -- drawing
    def draw(self, x: int, y: int, x1: int, y1: int) -> None:
        self.state.status = ""
        self.header.draw(x, y, x1, y)
        self.sort_box.draw(x, y + 1, x1, y + 1)
        self.filter_box.draw(x, y + 2, x1, y + 2)
        menu = self.context_window()
        if menu is not None:
            menu.draw(x, y + 3, x1, y + 3)
        self.issue_list.draw(x, y + 4, x1, y1 - 2)
        self.status_line.draw(x, y1 - 1, x1, y1 - 1)
        self.help.draw(x, y, x1, y1)
        self.alert_box.draw(x, y, x1, y1)

    def redraw(self) -> None:
        with self.draw_lock:
            width, height = self.get_size()
            if (width, height) != (self.surface.width, self.surface.height):
                self.surface.resize(width, height)
            self.surface.clear()
            self.draw(0, 0, width, height)
            self.surface.flush()

    def check_resize(self) -> None:
        if tuple(self.get_size()) != (self.surface.width, self.surface.height):
            self.redraw()


# -----------------------------
# Application
# -----------------------------
def build_application(root: TriageWindow, **app_kwargs) -> Application:
    control = FormattedTextControl(text=lambda: root.surface.frame, focusable=True, show_cursor=True)
    kb = KeyBindings()

    def _dispatch(event) -> None:
        root.dispatch(key_event_from_prompt_toolkit(event))

    for key in _BOUND_KEYS:
        kb.add(key)(_dispatch)
    kb.add(Keys.Any)(_dispatch)

    app = Application(
        layout=Layout(Window(content=control, wrap_lines=False)),
        key_bindings=kb,
        style=Style.from_dict(TRIAGE_STYLE),
        full_screen=True,
        before_render=lambda _app: root.check_resize(),
        **app_kwargs,
    )
    app.ttimeoutlen = 0.05

    def _size() -> Tuple[int, int]:
        size = app.output.get_size()
        return size.columns, size.rows

    def _on_flush() -> None:
        control.show_cursor = root.surface.cursor is not None
        app.invalidate()

    root.get_size = _size
    root.surface.on_flush = _on_flush
    root.on_quit = app.exit
    return app


def run_ui(api, config: Config, target: str = "", org: str = "", debug: bool = False) -> None:
    pending: List[Callable[[], None]] = []
    root = TriageWindow(api, config, target=target, org=org, debug=debug, spawn=pending.append)
    app = build_application(root)
    root.init()

    async def _in_executor(fn: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, fn)

    def _start_background() -> None:
        root.redraw()
        for fn in pending:
            app.create_background_task(_in_executor(fn))
        pending.clear()

    app.run(pre_run=_start_background)


# -----------------------------
# Commands
# -----------------------------
SHIP_NAMES = [
    "Argo", "Beagle", "Bounty", "Calypso", "Discovery", "Endeavour", "Endurance",
    "Erebus", "Fram", "Golden Hind", "Kon-Tiki", "Mayflower", "Nautilus",
    "Pequod", "Resolute", "Santa Maria", "Terror", "Vasa", "Victoria",
]


def default_milestone_due(now: dt.datetime) -> dt.datetime:
    """First Sunday at least five days out."""
    check = (now + dt.timedelta(days=5)).replace(hour=0, minute=0, second=1, microsecond=0)
    while check.weekday() != 6:
        check += dt.timedelta(days=1)
    return check


def default_milestone_title(due: dt.date) -> str:
    year, week, _ = due.isocalendar()
    ship = random.Random(year * 100 + week).choice(SHIP_NAMES)
    return f"{year}-{week:02d} {ship}"


def expand_targets(target: str, config: Config) -> List[str]:
    if target == "all":
        return list(config.projects)
    projects = (target or "").split()
    for project in projects:
        split_project(project)
    return projects


def cmd_ui(api, config: Config, args: argparse.Namespace) -> None:
    run_ui(api, config, target=" ".join(args.target or []), org=args.org or "", debug=args.debug)


def cmd_show_labels(api, config: Config, args: argparse.Namespace) -> None:
    labels = [{"name": lab.get("name"), "color": lab.get("color")} for lab in api.labels(args.project)]
    print(yaml.safe_dump(labels, sort_keys=False), end="")


def cmd_set_labels(api, config: Config, args: argparse.Namespace) -> None:
    wanted = config.priorities + config.types
    for project in expand_targets(args.target, config):
        existing = {lab.get("name"): lab.get("color") for lab in api.labels(project)}
        for label in wanted:
            if label.name not in existing:
                logger.info("%s: creating label %s", project, label.name)
                api.create_label(project, label.name, label.color)
                print(f"{project}: created {label.name}")
            elif label.color and (existing[label.name] or "").lower() != label.color.lower():
                logger.info("%s: recolouring label %s", project, label.name)
                api.update_label_color(project, label.name, label.color)
                print(f"{project}: updated {label.name} color to {label.color}")


def cmd_show_projects(api, config: Config, args: argparse.Namespace) -> None:
    names = [repo.get("full_name") for repo in api.repos(args.org or None)]
    print(yaml.safe_dump(names, sort_keys=False), end="")


def cmd_show_milestones(api, config: Config, args: argparse.Namespace) -> None:
    report: Dict[str, Dict[str, Optional[str]]] = {}
    for project in config.projects:
        try:
            found = api.milestones(project)
        except MilestoneError as exc:
            logger.warning("%s", exc)
            found = exc.milestones
        report[project] = {
            name: (m.title if m is not None else None)
            for name, m in zip(("current", "next", "someday"), found)
        }
    print(yaml.safe_dump(report, sort_keys=False), end="")


def cmd_set_milestones(api, config: Config, args: argparse.Namespace) -> None:
    for project in expand_targets(args.target, config):
        titles = {m.get("title") for m in api.list_milestones(project)}
        for title in (config.next_milestone, config.someday_milestone):
            if title in titles:
                continue
            api.create_milestone(project, title)
            print(f"{project}: created milestone {title}")


def cmd_create_milestone(api, config: Config, args: argparse.Namespace) -> None:
    if args.due:
        due = dt.datetime.strptime(args.due, "%Y-%m-%d").replace(second=1)
    else:
        due = default_milestone_due(dt.datetime.now())
    title = args.title or default_milestone_title(due.date())
    for project in expand_targets(args.target, config):
        api.create_milestone(project, title, due)
        print(f"{project}: created milestone {title!r} due {due:%Y-%m-%d}")


COMMANDS: Dict[str, Callable[[object, Config, argparse.Namespace], None]] = {
    "ui": cmd_ui,
    "show-labels": cmd_show_labels,
    "set-labels": cmd_set_labels,
    "show-projects": cmd_show_projects,
    "show-milestones": cmd_show_milestones,
    "set-milestones": cmd_set_milestones,
    "create-milestone": cmd_create_milestone,
}


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN, GITHUB_TOKEN or GITHUB_API_TOKEN from a .env file (current dir or script dir)."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "GITHUB_TOKEN", "GITHUB_API_TOKEN") and v:
                        return v
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
    return None


def build_api(args: argparse.Namespace, config: Config):
    if os.environ.get("MOCK_FETCH") == "1":
        api = MockAPI(config)
        if not config.projects:
            config.projects = list(api.projects)
        return api
    token = (
        args.api_token
        or os.environ.get("GITHUB_API_TOKEN")
        or os.environ.get("GITHUB_TOKEN")
        or load_dotenv_token()
    )
    if not token:
        raise RuntimeError("No API token found; set GITHUB_API_TOKEN or pass --api-token")
    return GithubAPI(token, config)


def soft_exit(args: argparse.Namespace, exc: BaseException) -> None:
    if args.debug:
        raise exc
    logger.error("%s", exc)
    print(f"Error: {exc}", file=sys.stderr)
    sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="gh-triage", description="Cross-project issue triage for GitHub")
    ap.add_argument("--debug", action="store_true", help="Verbose logging, tracebacks, dump raw_issues.json")
    ap.add_argument("--api-token", help="GitHub API token (default: GITHUB_API_TOKEN / GITHUB_TOKEN / .env)")
    ap.add_argument("--config", default="triage.yml", help="Path to YAML config (default triage.yml)")
    ap.add_argument("--log-level", default=None, help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", default="triage.log", help="Log file path (default triage.log)")
    sub = ap.add_subparsers(dest="command")

    ui = sub.add_parser("ui", help="Interactive triage (default)")
    ui.add_argument("target", nargs="*", help="Extra search terms, e.g. repo:acme/api label:bug")
    ui.add_argument("--org", default="", help="List every open issue of an organization")

    p = sub.add_parser("show-labels", help="Print a project's labels as YAML")
    p.add_argument("project", help="owner/repo")

    p = sub.add_parser("set-labels", help="Create/recolour the configured priority and type labels")
    p.add_argument("target", help="'all' or space separated owner/repo list")

    p = sub.add_parser("show-projects", help="List repositories of an org (or your own)")
    p.add_argument("org", nargs="?", default="")

    sub.add_parser("show-milestones", help="Print current/next/someday for configured projects")

    p = sub.add_parser("set-milestones", help="Create the next/someday milestones where missing")
    p.add_argument("target", help="'all' or space separated owner/repo list")

    p = sub.add_parser("create-milestone", help="Create a dated milestone")
    p.add_argument("target", help="'all' or space separated owner/repo list")
    p.add_argument("--due", help="Due date YYYY-MM-DD (default: first Sunday at least 5 days out)")
    p.add_argument("--title", help="Title (default: YYYY-WW <ship name>)")

    sub.add_parser("version", help="Print the version")
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    ap = build_parser()
    args = ap.parse_args(argv)
    if args.command is None:
        args.command, args.target, args.org = "ui", [], ""
    if args.command == "version":
        print(__version__)
        return

    setup_logging(args.log_file, args.log_level or ("DEBUG" if args.debug else "ERROR"))
    try:
        config = load_config(args.config)
    except (ValueError, yaml.YAMLError, OSError) as exc:
        print(f"Invalid config {args.config}: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        api = build_api(args, config)
        COMMANDS[args.command](api, config, args)
    except (RuntimeError, ValueError, OSError, requests.RequestException) as exc:
        soft_exit(args, exc)


if __name__ == "__main__":
    main()
