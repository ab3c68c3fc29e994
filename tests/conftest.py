import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import gh_triage as triage  # noqa: E402


DUE = dt.datetime(2030, 1, 6, 0, 0, 1, tzinfo=dt.timezone.utc)
MILESTONES = [
    triage.Milestone(11, "2030-01 Argo", DUE),
    triage.Milestone(12, "Next"),
    triage.Milestone(13, "Someday"),
]
NAMED_KEYS = {"up", "down", "pageup", "pagedown", "escape", "enter", "backspace", "ctrl-c"}


def _raw_issue(number, owner="acme", repo="api", title=None, labels=(), milestone=None, body=""):
    return {
        "number": number,
        "title": title or f"Issue {number}",
        "body": body,
        "html_url": f"https://github.com/{owner}/{repo}/issues/{number}",
        "labels": [{"name": name} for name in labels],
        "milestone": {"number": milestone} if milestone else None,
    }


class FakeAPI:
    """Tracker double: pages are lists of raw issues, or an exception for an error page."""

    def __init__(self, pages=None, milestones=None):
        self.pages = list(pages or [])
        self.milestone_map = dict(milestones or {})
        self.calls = []
        self.fail_with = None

    def milestones(self, project):
        found = self.milestone_map.get(project)
        if found is None:
            raise triage.MilestoneError(project, [None, None, None])
        return list(found)

    def _stream(self):
        for page in self.pages:
            if isinstance(page, Exception):
                yield triage.IssueResult([], page)
                return
            yield triage.IssueResult(list(page))

    def search(self, query):
        self.calls.append(("search", query))
        return self._stream()

    def by_org(self, org):
        self.calls.append(("by_org", org))
        return self._stream()

    def by_user(self):
        self.calls.append(("by_user",))
        return self._stream()

    def replace_labels(self, owner, repo, number, labels):
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(("replace_labels", owner, repo, number, list(labels)))
        return [{"name": name} for name in labels]

    def set_milestone(self, owner, repo, number, milestone):
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(("set_milestone", owner, repo, number, milestone))
        return {}


@pytest.fixture
def config():
    return triage.Config(projects=["acme/api", "acme/web"])


@pytest.fixture
def fake_api():
    return FakeAPI(milestones={"acme/api": list(MILESTONES)})


@pytest.fixture
def raw_issue():
    return _raw_issue


@pytest.fixture
def make_issue(config):
    def _make(number, repo="api", milestone=0, priority=0, issue_type=0, title=None, labels=None, owner="acme", body=""):
        labels = list(labels or [])
        issue = triage.Issue(
            number=number,
            title=title or f"Issue {number}",
            body=body,
            url=f"https://github.com/{owner}/{repo}/issues/{number}",
            owner=owner,
            repo=repo,
            labels=labels,
        )
        if milestone:
            issue.milestone = triage.Rank(milestone, MILESTONES[milestone - 1])
        for attr, options, index in (("priority", config.priorities, priority), ("issue_type", config.types, issue_type)):
            if index:
                option = options[index - 1]
                setattr(issue, attr, triage.Rank(index, option))
                if option.name not in labels:
                    labels.append(option.name)
        return issue
    return _make


@pytest.fixture
def make_root(fake_api, config):
    """Root window on an in-memory surface; the background refresh is not started."""
    def _make(issues=None, width=100, height=30, api=None, **kwargs):
        root = triage.TriageWindow(
            api or fake_api,
            config,
            surface=triage.Surface(width, height),
            spawn=lambda fn: None,
            **kwargs,
        )
        root.init()
        if issues is not None:
            root.issue_list.set_issues(issues)
        root.redraw()
        return root
    return _make


@pytest.fixture
def press():
    def _press(root, *keys):
        for key in keys:
            ev = triage.KeyEvent(key=key) if key in NAMED_KEYS else triage.KeyEvent(ch=key)
            root.dispatch(ev)
    return _press
