"""
Unit tests for directory reads and the shared PostgreSQL client.
"""

from datetime import date
from unittest.mock import MagicMock, patch

import pandas as pd
import psycopg2
import psycopg2.extensions
import pytest

from usage_aggregator.db import PostgresClient
from usage_aggregator.directory import PostgresDirectory, User


@pytest.fixture
def cursor():
    return MagicMock()


@pytest.fixture
def connection(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    return conn


@pytest.fixture
def directory(standard_config, connection):
    return PostgresDirectory(standard_config, connection=connection)


def executed_sql(cursor):
    return " ".join(cursor.execute.call_args[0][0].split())


class TestPostgresDirectory:
    """Test directory lookups."""

    def test_find_user_by_email_is_case_insensitive(self, directory, cursor):
        cursor.fetchone.return_value = (1, "sub-alice", "alice@example.org", "alice", "Alice")

        user = directory.find_user("user_email", "ALICE@example.org")

        assert user == User(1, "sub-alice", "alice@example.org", "alice", "Alice")
        assert "LOWER(email) = LOWER(%s)" in executed_sql(cursor)
        assert 'FROM public."user"' in executed_sql(cursor)

    def test_find_user_by_subject_is_exact(self, directory, cursor):
        cursor.fetchone.return_value = None
        assert directory.find_user("oidc_sub", "sub-x") is None
        assert '"externalId"::text = %s' in executed_sql(cursor)

    def test_unknown_scheme_never_queries(self, directory, cursor):
        assert directory.find_user("github", "alice") is None
        cursor.execute.assert_not_called()

    def test_personal_project(self, directory, cursor):
        cursor.fetchone.return_value = (12, "Alice Personal", "alice-personal", 1, True)

        project = directory.personal_project(1)

        assert project.id == 12
        assert project.is_personal is True
        assert "is_personal = true" in executed_sql(cursor)

    def test_latest_allocations(self, directory, cursor):
        cursor.fetchall.return_value = [(101, 10, date(2025, 6, 1)), (110, 11, None)]

        allocations = directory.latest_allocations([11, 10, 10])

        assert allocations[10].id == 101
        assert allocations[11].start_date is None
        assert "DISTINCT ON" in executed_sql(cursor)
        assert cursor.execute.call_args[0][1] == ([10, 11],)

    def test_latest_allocations_empty(self, directory, cursor):
        assert directory.latest_allocations([]) == {}
        cursor.execute.assert_not_called()

    @patch("usage_aggregator.db.pd.read_sql")
    def test_list_projects(self, mock_read_sql, directory):
        mock_read_sql.return_value = pd.DataFrame(
            {
                "id": [10, 13],
                "title": ["Alpha Project", "Čistá Věda"],
                "project_slug": ["alpha-project", None],
                "pi_id": [1, None],
                "is_personal": [False, False],
            }
        )

        projects = directory.list_projects()

        assert [p.id for p in projects] == [10, 13]
        assert projects[0].pi_id == 1
        assert projects[1].project_slug is None
        assert projects[1].pi_id is None

    @patch("usage_aggregator.db.pd.read_sql")
    def test_openstack_requests(self, mock_read_sql, directory):
        mock_read_sql.return_value = pd.DataFrame(
            {
                "allocation_id": [200, 201],
                "project_id": [11, 10],
                "customer_key": ["cerit-sc", None],
                "project_title": ["Beta", "Alpha Project"],
            }
        )

        requests = directory.openstack_requests()

        assert requests[0].customer_key == "cerit-sc"
        assert requests[1].customer_key is None
        assert "payload->>'customerKey'" in mock_read_sql.call_args[0][0]


class TestPostgresClient:
    """Test connection and transaction handling."""

    def test_transaction_commits(self, standard_config, connection, cursor):
        client = PostgresClient(standard_config, connection=connection)
        with client.transaction() as tx_cursor:
            tx_cursor.execute("SELECT 1")
        connection.commit.assert_called_once()
        connection.rollback.assert_not_called()

    def test_transaction_rolls_back_and_reraises(self, standard_config, connection):
        client = PostgresClient(standard_config, connection=connection)
        with pytest.raises(ValueError):
            with client.transaction():
                raise ValueError("bad row")
        connection.rollback.assert_called_once()
        connection.commit.assert_not_called()

    def test_borrowed_connection_not_closed(self, standard_config, connection):
        client = PostgresClient(standard_config, connection=connection)
        client.disconnect()
        connection.close.assert_not_called()

    @patch("usage_aggregator.db.psycopg2.connect")
    def test_owned_connection_commits_pending_work_on_close(self, mock_connect, standard_config):
        conn = MagicMock()
        conn.status = psycopg2.extensions.STATUS_IN_TRANSACTION
        mock_connect.return_value = conn

        with PostgresClient(standard_config) as client:
            assert client.connection is conn

        conn.commit.assert_called_once()
        conn.close.assert_called_once()
        assert mock_connect.call_args[1]["database"] == "test_db"

    def test_connectivity(self, standard_config, connection, cursor):
        cursor.fetchone.return_value = (1,)
        assert PostgresClient(standard_config, connection=connection).test_connectivity() is True

        cursor.execute.side_effect = psycopg2.OperationalError("down")
        assert PostgresClient(standard_config, connection=connection).test_connectivity() is False
