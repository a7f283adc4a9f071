"""Resolve usage events to directory users, projects and allocations.

All functions are pure over an explicit :class:`ResolutionContext`, which
carries the per-batch caches (project title/slug indexes, OpenStack
allocation requests, personal projects, latest allocations).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, NamedTuple, Optional, Tuple

from .customer_catalog import CustomerCatalog
from .directory import Allocation, Project, User
from .models import IDENTITY_PRIORITY, EventLink, Identity, UsageEvent, strategy_for
from .utils import get_logger, slugify

logger = get_logger("resolver")

OPENSTACK_ALLOCATION_REQUEST = "openstack_allocation_request"
PERSONAL_PROJECT = "personal_project"
TITLE_MATCH = "title_match"
SLUG_MATCH = "slug_match"
PROJECT_ALLOCATION_LATEST = "project_allocation_latest"


class UserMatch(NamedTuple):
    user: Optional[User]
    scheme: Optional[str]


class ProjectMatch(NamedTuple):
    project: Optional[Project]
    strategy: Optional[str]
    allocation: Optional[Allocation] = None
    allocation_strategy: Optional[str] = None


NO_USER = UserMatch(None, None)
NO_PROJECT = ProjectMatch(None, None)


def prefixed_project_key(customer_key: Optional[str], project_title: str) -> str:
    """``<customer-slug>-<project-slug>`` as OpenStack names provisioned projects."""
    customer_slug = slugify(customer_key)
    project_slug = slugify(project_title) or "project"
    return f"{customer_slug}-{project_slug}" if customer_slug else project_slug


@dataclass
class ResolutionContext:
    """Directory handle plus the caches shared by one resolution batch."""

    directory: Any
    catalog: CustomerCatalog = field(default_factory=CustomerCatalog)
    projects_by_title: Dict[str, Project] = field(default_factory=dict)
    projects_by_slug: Dict[str, Project] = field(default_factory=dict)
    openstack_allocations: Dict[str, Tuple[Allocation, Project]] = field(default_factory=dict)
    _users: Dict[Tuple[str, str], Optional[User]] = field(default_factory=dict)
    _personal_projects: Dict[int, Optional[Project]] = field(default_factory=dict)
    _latest_allocations: Dict[int, Optional[Allocation]] = field(default_factory=dict)

    @classmethod
    def build(cls, directory, catalog: Optional[CustomerCatalog] = None) -> "ResolutionContext":
        """Load the project indexes and OpenStack request cache from the directory."""
        projects = directory.list_projects()
        by_id = {project.id: project for project in projects}

        by_title: Dict[str, Project] = {}
        by_slug: Dict[str, Project] = {}
        for project in projects:
            if not project.title:
                continue
            by_title.setdefault(project.title.lower(), project)
            by_slug.setdefault(slugify(project.title), project)
        for project in projects:
            if project.project_slug:
                by_slug.setdefault(project.project_slug.lower(), project)

        openstack: Dict[str, Tuple[Allocation, Project]] = {}
        for request in directory.openstack_requests():
            if not request.customer_key:
                continue
            project = by_id.get(request.project_id) or Project(id=request.project_id, title=request.project_title)
            key = prefixed_project_key(request.customer_key, request.project_title).lower()
            openstack[key] = (Allocation(id=request.allocation_id, project_id=request.project_id), project)

        logger.debug(
            "Built resolution context",
            projects=len(projects),
            openstack_requests=len(openstack),
        )
        return cls(
            directory=directory,
            catalog=catalog or CustomerCatalog(),
            projects_by_title=by_title,
            projects_by_slug=by_slug,
            openstack_allocations=openstack,
        )

    def find_user(self, scheme: str, value: str) -> Optional[User]:
        key = (scheme, value)
        if key not in self._users:
            self._users[key] = self.directory.find_user(scheme, value)
        return self._users[key]

    def personal_project(self, user_id: int) -> Optional[Project]:
        if user_id not in self._personal_projects:
            self._personal_projects[user_id] = self.directory.personal_project(user_id)
        return self._personal_projects[user_id]

    def prefetch_latest_allocations(self, project_ids: Iterable[int]):
        missing = {pid for pid in project_ids if pid is not None and pid not in self._latest_allocations}
        if not missing:
            return
        found = self.directory.latest_allocations(missing)
        for project_id in missing:
            self._latest_allocations[project_id] = found.get(project_id)

    def latest_allocation(self, project_id: int) -> Optional[Allocation]:
        self.prefetch_latest_allocations([project_id])
        return self._latest_allocations.get(project_id)


def resolve_user_from_identities(identities: Iterable[Identity], directory) -> UserMatch:
    """Try identity schemes in priority order; first directory hit wins."""
    identities = list(identities or [])
    for scheme in IDENTITY_PRIORITY:
        identity = next(
            (candidate for candidate in identities if candidate.scheme == scheme.value and candidate.value),
            None,
        )
        if identity is None:
            continue
        user = directory.find_user(scheme.value, identity.value)
        if user is not None:
            return UserMatch(user, scheme.value)
    return NO_USER


def resolve_user(event: UsageEvent, directory) -> UserMatch:
    """Resolve the user behind an event; ``directory`` may be a ResolutionContext."""
    return resolve_user_from_identities(event.identities, directory)


def _match_project(
    name: Optional[str],
    source,
    is_personal: bool,
    user: Optional[User],
    context: ResolutionContext,
) -> ProjectMatch:
    if not name:
        return NO_PROJECT

    strategy = strategy_for(source)

    if strategy.prefixed_namespace:
        hit = context.openstack_allocations.get(name.lower())
        if hit is not None:
            allocation, project = hit
            return ProjectMatch(project, OPENSTACK_ALLOCATION_REQUEST, allocation, OPENSTACK_ALLOCATION_REQUEST)

    if is_personal and user is not None:
        personal = context.personal_project(user.id)
        if personal is not None:
            return ProjectMatch(personal, PERSONAL_PROJECT)

    target = context.catalog.strip_prefix(name) if strategy.prefixed_namespace else name

    project = context.projects_by_title.get(target.lower())
    if project is not None:
        return ProjectMatch(project, TITLE_MATCH)

    project = context.projects_by_slug.get(slugify(target))
    if project is not None:
        return ProjectMatch(project, SLUG_MATCH)

    return NO_PROJECT


def _with_allocation(match: ProjectMatch, context: ResolutionContext) -> ProjectMatch:
    if match.project is None or match.allocation is not None:
        return match
    allocation = context.latest_allocation(match.project.id)
    if allocation is None:
        return match
    return match._replace(allocation=allocation, allocation_strategy=PROJECT_ALLOCATION_LATEST)


def resolve_project(event: UsageEvent, user: Optional[User], context: ResolutionContext) -> ProjectMatch:
    """Map an event to a project (and allocation) using the ordered strategies."""
    match = _match_project(event.project_name, event.source, event.is_personal, user, context)
    return _with_allocation(match, context)


def resolve_event(event: UsageEvent, context: ResolutionContext) -> EventLink:
    """Resolve user, project and allocation for one event."""
    user_match = resolve_user(event, context)
    project_match = resolve_project(event, user_match.user, context)
    return EventLink(
        event_id=event.id,
        user_id=user_match.user.id if user_match.user else None,
        project_id=project_match.project.id if project_match.project else None,
        allocation_id=project_match.allocation.id if project_match.allocation else None,
        user_match_scheme=user_match.scheme,
        project_match_strategy=project_match.strategy,
        allocation_match_strategy=project_match.allocation_strategy,
    )


def resolve_summary_project(
    slug: Optional[str],
    source,
    is_personal: bool,
    identities: Iterable[Identity],
    context: ResolutionContext,
) -> Optional[Project]:
    """Resolve the project of a summary row; used to backfill ``project_id``."""
    user = resolve_user_from_identities(identities, context).user if is_personal else None
    return _match_project(slug, source, is_personal, user, context).project


def allocation_identifier(event: UsageEvent, catalog: Optional[CustomerCatalog] = None) -> Optional[str]:
    """Job name for scheduler sources, prefix-stripped project name for the cloud source."""
    strategy = event.strategy
    if strategy.allocation_context_key:
        value = event.context.get(strategy.allocation_context_key)
        return str(value) if value not in (None, "") else None
    if strategy.prefixed_namespace and event.project_name:
        return (catalog or CustomerCatalog()).strip_prefix(event.project_name)
    return None
