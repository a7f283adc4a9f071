"""
Shared pytest fixtures for all tests.

Provides a configuration dict, an in-memory directory, an in-memory usage
store and factories for events and summaries.
"""

import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from usage_aggregator.directory import Allocation, OpenstackRequest, Project, User
from usage_aggregator.models import (
    Identity,
    Metrics,
    Tier,
    UsageEvent,
    UsageSource,
    UsageSummary,
)
from usage_aggregator.periods import day_window, start_of_day
from usage_aggregator.utils import utcnow


class FakeDirectory:
    """In-memory organizational directory with call counters."""

    def __init__(self, users=None, projects=None, allocations=None, openstack_requests=None):
        self.users = list(users or [])
        self.projects = list(projects or [])
        self.allocations = list(allocations or [])
        self.requests = list(openstack_requests or [])
        self.calls = {"find_user": 0, "personal_project": 0, "latest_allocations": 0, "list_projects": 0}

    def find_user(self, scheme, value):
        self.calls["find_user"] += 1
        for user in self.users:
            if scheme == "oidc_sub" and user.external_id == value:
                return user
            if scheme == "user_email" and user.email and user.email.lower() == value.lower():
                return user
            if scheme == "perun_username" and user.username and user.username.lower() == value.lower():
                return user
        return None

    def get_user(self, user_id):
        return next((user for user in self.users if user.id == user_id), None)

    def get_project(self, project_id):
        return next((project for project in self.projects if project.id == project_id), None)

    def personal_project(self, user_id):
        self.calls["personal_project"] += 1
        return next((p for p in self.projects if p.pi_id == user_id and p.is_personal), None)

    def list_projects(self):
        self.calls["list_projects"] += 1
        return list(self.projects)

    def latest_allocations(self, project_ids):
        self.calls["latest_allocations"] += 1
        latest = {}
        for allocation in self.allocations:
            if allocation.project_id not in project_ids:
                continue
            current = latest.get(allocation.project_id)
            if current is None or (allocation.start_date or date.min) > (current.start_date or date.min):
                latest[allocation.project_id] = allocation
        return latest

    def openstack_requests(self):
        return list(self.requests)


class FakeStore:
    """In-memory stand-in for UsageStore with the same method contracts."""

    def __init__(self):
        self.events = []
        self.links = {}
        self.summaries = {}
        self.fail_upsert_for = set()
        self.fail_rollup_for = set()
        self.upserts = 0

    # Events

    def insert_events(self, events):
        for event in events:
            if event.id is None:
                event.id = str(uuid.uuid4())
        self.events.extend(events)
        return len(events)

    def fetch_events(self, start=None, end=None, project_id=None, source=None, identity_claims=None,
                     unmapped_only=False):
        if identity_claims is not None and not identity_claims:
            return []
        claims = set(identity_claims or [])
        result = []
        for event in self.events:
            if start is not None and event.time_window_start < start:
                continue
            if end is not None and event.time_window_start >= end:
                continue
            if project_id is not None and event.project_id != project_id:
                continue
            if source is not None and UsageSource(event.source).value != UsageSource(source).value:
                continue
            if identity_claims is not None and not claims & {i.key for i in event.identities}:
                continue
            if unmapped_only and event.project_id is not None:
                continue
            result.append(event)
        return sorted(result, key=lambda e: (e.time_window_start, e.id))

    def set_event_project_ids(self, assignments):
        for event in self.events:
            if event.id in assignments:
                event.project_id = assignments[event.id]
        return len(assignments)

    def replace_event_links(self, event_ids, links):
        for event_id in event_ids:
            self.links.pop(event_id, None)
        for link in links:
            self.links[link.event_id] = link
        return len(links)

    def delete_events_before(self, cutoff):
        kept = [e for e in self.events if not (e.time_window_start < cutoff and e.project_id is not None)]
        deleted = len(self.events) - len(kept)
        self.events = kept
        return deleted

    def latest_event_vcpus(self, project_ids, source):
        candidates = [
            e for e in self.events
            if e.project_id in set(project_ids) and UsageSource(e.source).value == UsageSource(source).value
        ]
        if not candidates:
            return 0
        latest = max(e.time_window_start for e in candidates)
        return sum(e.metrics.vcpus_allocated or 0 for e in candidates if e.time_window_start == latest)

    # Summaries

    def upsert_summary(self, summary):
        if summary.project_slug in self.fail_upsert_for:
            raise RuntimeError(f"write failed for {summary.project_slug}")
        self.upserts += 1
        now = utcnow()
        existing = self.summaries.get(summary.natural_key)
        if existing is not None:
            stored = replace(
                summary,
                id=existing.id,
                project_id=summary.project_id if summary.project_id is not None else existing.project_id,
                created_at=existing.created_at,
                updated_at=now,
            )
        else:
            stored = replace(summary, id=summary.id or str(uuid.uuid4()), created_at=now, updated_at=now)
        self.summaries[summary.natural_key] = stored

    def all_summaries(self):
        return sorted(self.summaries.values(), key=lambda s: (s.time_window_start, s.id))

    def fetch_summaries(self, start=None, end=None, tier=None, project_id=None, source=None,
                        identity_claims=None, unmapped_only=False):
        if identity_claims is not None and not identity_claims:
            return []
        claims = set(identity_claims or [])
        result = []
        for summary in self.all_summaries():
            if start is not None and summary.time_window_start < start:
                continue
            if end is not None and summary.time_window_start >= end:
                continue
            if tier is not None and summary.tier is not tier:
                continue
            if project_id is not None and summary.project_id != project_id:
                continue
            if source is not None and UsageSource(summary.source).value != UsageSource(source).value:
                continue
            if identity_claims is not None and not claims & {i.key for i in summary.identities}:
                continue
            if unmapped_only and summary.project_id is not None:
                continue
            result.append(summary)
        return result

    def latest_summary_before(self, summary, before):
        candidates = [
            s for s in self.summaries.values()
            if s.scope_key == summary.scope_key and s.time_window_start < before
        ]
        return max(candidates, key=lambda s: (s.time_window_start, s.time_window_end)) if candidates else None

    def set_summary_project(self, summary_id, project_id):
        for key, summary in self.summaries.items():
            if summary.id == summary_id:
                self.summaries[key] = replace(summary, project_id=project_id)

    def replace_with_rollup(self, rollup, source_ids):
        if rollup.project_slug in self.fail_rollup_for:
            raise RuntimeError(f"rollup failed for {rollup.project_slug}")
        existing_key = None
        for key, summary in self.summaries.items():
            same = (
                summary.project_id == rollup.project_id
                and UsageSource(summary.source) == UsageSource(rollup.source)
                and summary.time_window_start == rollup.time_window_start
                and summary.time_window_end == rollup.time_window_end
            )
            if same and rollup.project_id is None:
                same = summary.scope_key == rollup.scope_key
            if same:
                existing_key = key
                break

        if existing_key is not None:
            existing = self.summaries[existing_key]
            self.summaries[existing_key] = replace(
                rollup,
                id=existing.id,
                project_slug=existing.project_slug,
                is_personal=existing.is_personal,
                user_identifier=existing.user_identifier,
                created_at=existing.created_at,
                updated_at=utcnow(),
            )
            outcome = "updated"
        else:
            self.upsert_summary(rollup)
            outcome = "inserted"

        ids = set(source_ids)
        for key in [k for k, s in self.summaries.items() if s.id in ids]:
            del self.summaries[key]
        return outcome

    def summary_scopes(self):
        return sorted(
            {(s.project_id, UsageSource(s.source).value) for s in self.summaries.values() if s.project_id is not None}
        )

    def retention_stats(self, raw_cutoff):
        return {
            "raw_events": {
                "total": len(self.events),
                "older_than_threshold": sum(1 for e in self.events if e.time_window_start < raw_cutoff),
                "unmapped": sum(1 for e in self.events if e.project_id is None),
            },
            "summaries": {
                tier.value: sum(1 for s in self.summaries.values() if s.tier is tier) for tier in Tier
            },
        }


@pytest.fixture
def standard_config():
    """Standard configuration for all tests."""
    return {
        "postgresql": {
            "host": "localhost",
            "port": 5432,
            "database": "test_db",
            "user": "test_user",
            "password": "test_password",
            "schema": "public",
        },
        "retention": {
            "daily_to_weekly_days": 30,
            "weekly_to_biweekly_days": 90,
            "biweekly_to_monthly_days": 180,
            "schedule_cron": "0 2 * * 1",
        },
        "catalog": {"customers_csv": None},
        "logging": {"level": "DEBUG", "format": "console"},
        "performance": {"db_batch_size": 2},
    }


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def sample_users():
    return [
        User(id=1, external_id="sub-alice", email="Alice@Example.org", username="alice", name="Alice"),
        User(id=2, external_id="sub-bob", email="bob@example.org", username="bob", name="Bob"),
    ]


@pytest.fixture
def sample_projects():
    return [
        Project(id=10, title="Alpha Project", project_slug="alpha-project", pi_id=1),
        Project(id=11, title="Beta", project_slug="beta", pi_id=2),
        Project(id=12, title="Alice Personal", project_slug="alice-personal", pi_id=1, is_personal=True),
        Project(id=13, title="Čistá Věda", project_slug=None, pi_id=2),
    ]


@pytest.fixture
def fake_directory(sample_users, sample_projects):
    return FakeDirectory(
        users=sample_users,
        projects=sample_projects,
        allocations=[
            Allocation(id=100, project_id=10, start_date=date(2025, 1, 1)),
            Allocation(id=101, project_id=10, start_date=date(2025, 6, 1)),
            Allocation(id=110, project_id=11, start_date=date(2025, 3, 1)),
        ],
        openstack_requests=[
            OpenstackRequest(allocation_id=200, project_id=11, customer_key="cerit-sc", project_title="Beta"),
        ],
    )


@pytest.fixture
def make_event():
    """Factory for usage events; ``day`` sets a window inside that UTC day."""

    def factory(
        source="pbs",
        day=date(2025, 1, 6),
        project="Alpha Project",
        cpu=100,
        identities=None,
        personal=None,
        context=None,
        hour=10,
        **metrics,
    ):
        start = start_of_day(day) + timedelta(hours=hour)
        ctx = dict(context or {})
        if project is not None:
            ctx.setdefault("project", project)
        if personal is not None:
            ctx["is_personal"] = personal
        return UsageEvent(
            source=UsageSource(source),
            time_window_start=start,
            time_window_end=start + timedelta(hours=1),
            collected_at=start + timedelta(hours=1, minutes=5),
            metrics=Metrics(cpu_time_seconds=cpu, **metrics),
            identities=[Identity(*pair) for pair in (identities or [])],
            context=ctx,
        )

    return factory


@pytest.fixture
def make_summary():
    """Factory for daily summaries (or any tier via ``window``)."""

    def factory(
        day=date(2025, 1, 6),
        source="pbs",
        project_slug="Alpha Project",
        project_id=10,
        window=None,
        is_personal=False,
        user_identifier=None,
        identities=None,
        event_count=1,
        **metrics,
    ):
        start, end = window or day_window(day)
        return UsageSummary(
            id=str(uuid.uuid4()),
            time_window_start=start,
            time_window_end=end,
            source=UsageSource(source),
            project_slug=project_slug,
            is_personal=is_personal,
            user_identifier=user_identifier,
            project_id=project_id,
            event_count=event_count,
            identities=[Identity(*pair) for pair in (identities or [])],
            updated_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            **metrics,
        )

    return factory
