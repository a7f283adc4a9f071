"""Read-only access to the organizational directory (users, projects, allocations).

The directory is owned by the resource manager; this package only reads it
to resolve usage events to users, projects and allocations.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .db import PostgresClient
from .models import IdentityScheme
from .utils import PerformanceTimer, to_number


@dataclass(frozen=True)
class User:
    id: int
    external_id: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    name: Optional[str] = None

    def identity_claims(self) -> List[Tuple[str, str]]:
        """(scheme, value) pairs under which this user's usage is reported."""
        claims = [
            (IdentityScheme.OIDC_SUB.value, self.external_id),
            (IdentityScheme.USER_EMAIL.value, self.email),
            (IdentityScheme.PERUN_USERNAME.value, self.username),
        ]
        return [(scheme, str(value)) for scheme, value in claims if value]

    @property
    def label(self) -> str:
        return self.name or self.email or self.username or str(self.id)


@dataclass(frozen=True)
class Project:
    id: int
    title: str
    project_slug: Optional[str] = None
    pi_id: Optional[int] = None
    is_personal: bool = False


@dataclass(frozen=True)
class Allocation:
    id: int
    project_id: int
    start_date: Optional[date] = None


@dataclass(frozen=True)
class OpenstackRequest:
    """Provisioning request of an OpenStack allocation, joined to its project."""

    allocation_id: int
    project_id: int
    customer_key: Optional[str]
    project_title: str


def _none_if_nan(value):
    if value is None:
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


class PostgresDirectory(PostgresClient):
    """Directory lookups against the resource manager schema."""

    logger_name = "directory"

    def find_user(self, scheme: str, value: str) -> Optional[User]:
        """Look a user up by one identity claim.

        ``oidc_sub`` matches the external id exactly; email and username
        comparisons are case-insensitive. Unknown schemes never match.
        """
        if scheme == IdentityScheme.OIDC_SUB.value:
            condition = '"externalId"::text = %s'
        elif scheme == IdentityScheme.USER_EMAIL.value:
            condition = "LOWER(email) = LOWER(%s)"
        elif scheme == IdentityScheme.PERUN_USERNAME.value:
            condition = "LOWER(username) = LOWER(%s)"
        else:
            return None

        query = f"""
            SELECT id, "externalId"::text, email, username, name
            FROM {self.table('"user"')}
            WHERE {condition}
            ORDER BY id
            LIMIT 1
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, (value,))
            row = cursor.fetchone()
        return User(*row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        query = f"""
            SELECT id, "externalId"::text, email, username, name
            FROM {self.table('"user"')}
            WHERE id = %s
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, (user_id,))
            row = cursor.fetchone()
        return User(*row) if row else None

    def get_project(self, project_id: int) -> Optional[Project]:
        query = f"""
            SELECT id, title, "projectSlug", "piId", is_personal
            FROM {self.table('project')}
            WHERE id = %s
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, (project_id,))
            row = cursor.fetchone()
        return Project(*row) if row else None

    def personal_project(self, user_id: int) -> Optional[Project]:
        """The personal project whose PI is the given user, if any."""
        query = f"""
            SELECT id, title, "projectSlug", "piId", is_personal
            FROM {self.table('project')}
            WHERE "piId" = %s AND is_personal = true
            LIMIT 1
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, (user_id,))
            row = cursor.fetchone()
        return Project(*row) if row else None

    def list_projects(self) -> List[Project]:
        with PerformanceTimer("Fetch projects", self.logger):
            df = self.read_frame(f"""
                SELECT id, title, "projectSlug" AS project_slug, "piId" AS pi_id, is_personal
                FROM {self.table('project')}
            """)
        return [
            Project(
                id=int(row["id"]),
                title=row["title"],
                project_slug=_none_if_nan(row["project_slug"]),
                pi_id=to_number(_none_if_nan(row["pi_id"])),
                is_personal=bool(row["is_personal"]),
            )
            for row in df.to_dict("records")
        ]

    def latest_allocations(self, project_ids: Iterable[int]) -> Dict[int, Allocation]:
        """Most recently started allocation per project."""
        project_ids = sorted(set(project_ids))
        if not project_ids:
            return {}

        query = f"""
            SELECT DISTINCT ON ("projectId") id, "projectId", "startDate"
            FROM {self.table('allocation')}
            WHERE "projectId" = ANY(%s)
            ORDER BY "projectId", "startDate" DESC NULLS LAST, id DESC
        """
        with self.connection.cursor() as cursor:
            cursor.execute(query, (project_ids,))
            rows = cursor.fetchall()
        return {row[1]: Allocation(*row) for row in rows}

    def openstack_requests(self) -> List[OpenstackRequest]:
        with PerformanceTimer("Fetch OpenStack allocation requests", self.logger):
            df = self.read_frame(f"""
                SELECT r.allocation_id,
                       a."projectId" AS project_id,
                       r.payload->>'customerKey' AS customer_key,
                       p.title AS project_title
                FROM {self.table('allocation_openstack_request')} r
                JOIN {self.table('allocation')} a ON a.id = r.allocation_id
                JOIN {self.table('project')} p ON p.id = a."projectId"
            """)
        return [
            OpenstackRequest(
                allocation_id=int(row["allocation_id"]),
                project_id=int(row["project_id"]),
                customer_key=_none_if_nan(row["customer_key"]),
                project_title=row["project_title"],
            )
            for row in df.to_dict("records")
        ]
