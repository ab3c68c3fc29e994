import datetime as dt

import pytest

import gh_triage as triage
from conftest import MILESTONES


NOW = dt.datetime(2024, 3, 1, tzinfo=dt.timezone.utc)


def test_issue_from_api_ranks(config, raw_issue):
    raw = raw_issue(7, owner='acme', repo='api', labels=['critical', 'enhancement', 'ui'], milestone=12)
    issue = triage.issue_from_api(raw, {'acme/api': MILESTONES}, config.priorities, config.types)
    assert (issue.owner, issue.repo, issue.number) == ('acme', 'api', 7)
    assert issue.project == 'acme/api'
    assert issue.labels == ['critical', 'enhancement', 'ui']
    assert issue.milestone.index == 2
    assert issue.milestone.value.title == 'Next'
    assert issue.priority.index == 2
    assert issue.issue_type.index == 3
    assert issue.triage_index == '223'
    assert issue.triage_number == 223


def test_issue_from_api_unknown_milestone_and_project(config, raw_issue):
    raw = raw_issue(1, repo='web', labels=['bug'], milestone=12)
    issue = triage.issue_from_api(raw, {'acme/api': MILESTONES}, config.priorities, config.types)
    assert issue.milestone.index == 0
    assert issue.priority.index == 0
    assert issue.issue_type.index == 1
    assert issue.triage_number == 1


def test_last_matching_label_wins(config, raw_issue):
    raw = raw_issue(3, labels=['low', 'blocker'])
    issue = triage.issue_from_api(raw, {}, config.priorities, config.types)
    assert issue.priority.index == 4
    assert issue.priority.value.name == 'low'


def test_issue_from_api_rejects_bad_url(config):
    with pytest.raises(ValueError):
        triage.issue_from_api({'number': 1, 'html_url': 'nope'}, {}, config.priorities, config.types)


def test_resolve_milestones_picks_earliest_future_due():
    raw = [
        {'number': 1, 'title': 'old', 'due_on': '2024-02-01T08:00:00Z'},
        {'number': 2, 'title': 'later', 'due_on': '2024-04-01T08:00:00Z'},
        {'number': 3, 'title': 'soon', 'due_on': '2024-03-10T08:00:00Z'},
        {'number': 4, 'title': 'Next', 'due_on': None},
        {'number': 5, 'title': 'Someday'},
        {'number': 6, 'title': 'Unrelated'},
    ]
    current, nxt, someday = triage.resolve_milestones(raw, 'Next', 'Someday', now=NOW)
    assert (current.number, current.title) == (3, 'soon')
    assert current.due_on == dt.datetime(2024, 3, 10, 8, tzinfo=dt.timezone.utc)
    assert nxt == triage.Milestone(4, 'Next')
    assert someday == triage.Milestone(5, 'Someday')


def test_resolve_milestones_incomplete():
    raw = [{'number': 4, 'title': 'Next'}]
    assert triage.resolve_milestones(raw, 'Next', 'Someday', now=NOW) == [None, triage.Milestone(4, 'Next'), None]


def test_milestone_error_carries_triplet():
    found = [None, triage.Milestone(4, 'Next'), None]
    err = triage.MilestoneError('acme/api', found)
    assert err.milestones is found
    assert 'acme/api' in str(err)
    assert 'current' in str(err) and 'someday' in str(err)
    assert isinstance(err, RuntimeError)
